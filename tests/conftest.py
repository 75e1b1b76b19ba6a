"""
Shared fixtures for the reconciliation tests.
"""

import itertools
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from statement_recon.config import Settings
from statement_recon.models import LedgerRecord, LineType
from statement_recon.service import ReconciliationService
from statement_recon.store import InMemoryLedger, InMemoryReconciliationStore

VENDOR = "VENDOR-1"
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def store():
    return InMemoryReconciliationStore()


@pytest.fixture
def service(store, ledger, settings):
    return ReconciliationService(store=store, ledger=ledger, settings=settings)


@pytest.fixture
def add_record(ledger):
    """Add a ledger record; creation order follows call order."""
    counter = itertools.count(1)

    def _add(document_number, amount, record_date=None, currency="USD", vendor_ref=VENDOR, **kwargs):
        n = next(counter)
        record = LedgerRecord(
            id=kwargs.pop("id", f"rec-{n}"),
            vendor_ref=vendor_ref,
            document_number=document_number,
            record_date=record_date,
            amount=Decimal(str(amount)),
            currency=currency,
            record_type=kwargs.pop("record_type", LineType.INVOICE),
            created_at=BASE_TIME + timedelta(seconds=n),
            **kwargs,
        )
        ledger.add(record)
        return record

    return _add


@pytest.fixture
def make_statement(service):
    """Register a statement and ingest its rows."""

    def _make(rows, opening_balance="0", vendor_ref=VENDOR):
        statement = service.register_statement(vendor_ref, opening_balance=opening_balance)
        lines = service.ingest_lines(statement.id, rows)
        return statement, lines

    return _make


@pytest.fixture
def jan():
    """Day-of-January helper."""
    return lambda day: date(2024, 1, day)

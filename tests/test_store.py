"""
Tests for the in-memory store and ledger.
"""

import pytest
from datetime import date
from decimal import Decimal

from statement_recon.errors import (
    ConcurrentModificationError,
    NotFoundError,
    ValidationError,
)
from statement_recon.models import (
    Acknowledgement,
    AcknowledgementType,
    LineStatus,
    LineType,
    Statement,
    StatementLine,
    StatementStatus,
)
from statement_recon.store import CandidateFilter, LineFilter


@pytest.fixture
def statement(store):
    return store.add_statement(Statement(vendor_ref="VENDOR-1"))


def make_ack(statement_id):
    return Acknowledgement(
        statement_id=statement_id,
        actor="controller",
        acknowledgement_type=AcknowledgementType.FULL,
        net_variance=Decimal("0.00"),
        total_lines=0,
        matched_lines=0,
        outstanding_lines=0,
    )


class TestReconciliationStore:

    def test_missing_entity(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            store.get_line("nope")
        assert exc_info.value.details == {"resource": "StatementLine", "id": "nope"}

    def test_empty_id_is_a_validation_error(self, store):
        with pytest.raises(ValidationError):
            store.get_statement("")

    def test_reads_are_copies(self, store, statement):
        fetched = store.get_statement(statement.id)
        fetched.status = StatementStatus.SIGNED_OFF

        assert store.get_statement(statement.id).status == StatementStatus.OPEN

    def test_compare_and_set_bumps_version(self, store, statement):
        updated = store.compare_and_set_statement(
            statement.id, 0, StatementStatus.OPEN, StatementStatus.RECONCILED,
        )

        assert updated.version == 1
        assert updated.status == StatementStatus.RECONCILED

    def test_compare_and_set_checks_status(self, store, statement):
        with pytest.raises(ConcurrentModificationError):
            store.compare_and_set_statement(
                statement.id, 0, StatementStatus.RECONCILED, StatementStatus.OPEN,
            )

    def test_lines_need_a_known_statement(self, store):
        line = StatementLine(statement_id="missing", line_number=1, amount=Decimal("1.00"))
        with pytest.raises(NotFoundError):
            store.add_lines([line])

    def test_line_filters_and_order(self, store, statement):
        store.add_lines([
            StatementLine(statement_id=statement.id, line_number=2, amount=Decimal("2.00")),
            StatementLine(
                statement_id=statement.id,
                line_number=1,
                amount=Decimal("-1.00"),
                line_type=LineType.PAYMENT,
            ),
        ])

        assert [l.line_number for l in store.find_lines(statement.id)] == [1, 2]
        payments = store.find_lines(statement.id, LineFilter(line_types=[LineType.PAYMENT]))
        assert [l.line_number for l in payments] == [1]
        assert store.find_lines(statement.id, LineFilter(statuses=[LineStatus.MATCHED])) == []

    def test_one_acknowledgement_per_statement(self, store, statement):
        store.add_acknowledgement(make_ack(statement.id))

        with pytest.raises(ConcurrentModificationError):
            store.add_acknowledgement(make_ack(statement.id))


class TestInMemoryLedger:

    def test_candidate_filters(self, ledger, add_record, jan):
        add_record("INV-1", "100.00", jan(5), company_ref="ACME")
        add_record("INV-1", "100.00", jan(6), company_ref="OTHER")
        add_record("INV-2", "100.00", None)
        add_record("INV-1", "100.00", jan(7), currency="EUR")

        found = ledger.find_candidates("VENDOR-1", CandidateFilter(
            company_ref="ACME",
            currency="USD",
            document_number=" inv-1 ",
        ))
        assert [r.id for r in found] == ["rec-1"]

        dated = ledger.find_candidates("VENDOR-1", CandidateFilter(
            date_from=date(2024, 1, 1),
            date_to=date(2024, 1, 6),
        ))
        assert [r.id for r in dated] == ["rec-1", "rec-2"]

    def test_records_without_company_match_any_company(self, ledger, add_record):
        add_record("INV-1", "100.00")

        found = ledger.find_candidates("VENDOR-1", CandidateFilter(company_ref="ACME"))

        assert [r.id for r in found] == ["rec-1"]

    def test_unknown_record(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.get_records(["rec-404"])

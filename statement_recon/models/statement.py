"""Statement, statement line and ledger record models."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any
from uuid import uuid4

from .enums import StatementStatus, LineStatus, LineType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


@dataclass
class Statement:
    """
    One reconciliation case: a vendor statement for a company and period.
    Amounts are signed Decimals in the statement currency.
    """
    id: str = field(default_factory=new_id)
    vendor_ref: str = ""
    company_ref: Optional[str] = None
    tenant_ref: Optional[str] = None

    period_start: Optional[date] = None
    period_end: Optional[date] = None

    currency: str = "USD"
    opening_balance: Decimal = Decimal("0.00")
    status: StatementStatus = StatementStatus.OPEN

    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_signed_off(self) -> bool:
        return self.status == StatementStatus.SIGNED_OFF

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor_ref": self.vendor_ref,
            "company_ref": self.company_ref,
            "tenant_ref": self.tenant_ref,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "currency": self.currency,
            "opening_balance": str(self.opening_balance),
            "status": self.status.value,
        }


@dataclass
class StatementLine:
    """
    One row of the vendor statement, already normalized.
    Debits are positive, credits (payments, credit notes) negative.
    """
    id: str = field(default_factory=new_id)
    statement_id: str = ""
    line_number: int = 0

    document_number: Optional[str] = None
    transaction_date: Optional[date] = None
    amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    line_type: LineType = LineType.INVOICE

    description: str = ""
    reference: Optional[str] = None

    status: LineStatus = LineStatus.EXTRACTED

    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    raw_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_outstanding(self) -> bool:
        """Lines that still count towards the variance."""
        return self.status in (LineStatus.EXTRACTED, LineStatus.DISPUTED)

    @property
    def is_matchable(self) -> bool:
        """Lines that recompute may still try to match."""
        return self.is_outstanding

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "statement_id": self.statement_id,
            "line_number": self.line_number,
            "document_number": self.document_number,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "amount": str(self.amount),
            "currency": self.currency,
            "line_type": self.line_type.value,
            "description": self.description,
            "reference": self.reference,
            "status": self.status.value,
        }


@dataclass
class LedgerRecord:
    """An internal invoice, payment or credit note. Read-only for the core."""
    id: str = field(default_factory=new_id)
    vendor_ref: str = ""
    company_ref: Optional[str] = None

    document_number: Optional[str] = None
    record_date: Optional[date] = None
    amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    record_type: LineType = LineType.INVOICE

    created_at: datetime = field(default_factory=utcnow)

    @property
    def sort_key(self):
        """Creation order, used as the last tie-breaker."""
        return (self.created_at, self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor_ref": self.vendor_ref,
            "company_ref": self.company_ref,
            "document_number": self.document_number,
            "record_date": self.record_date.isoformat() if self.record_date else None,
            "amount": str(self.amount),
            "currency": self.currency,
            "record_type": self.record_type.value,
        }

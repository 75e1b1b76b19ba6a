"""Enumerations for the statement reconciliation system."""

from enum import Enum
from typing import Type, TypeVar

from ..errors import ValidationError

E = TypeVar("E", bound=Enum)


class StatementStatus(str, Enum):
    """
    Status of a reconciliation case.

    OPEN: Variance outstanding or issues open
    RECONCILED: Variance zero and no open issues at the last recompute
    SIGNED_OFF: Acknowledged by an actor, terminal
    """
    OPEN = "open"
    RECONCILED = "reconciled"
    SIGNED_OFF = "signed_off"


class LineStatus(str, Enum):
    """Status of a statement line."""
    EXTRACTED = "extracted"
    MATCHED = "matched"
    DISPUTED = "disputed"
    RESOLVED = "resolved"


class LineType(str, Enum):
    """Kind of document a statement line refers to."""
    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"
    PAYMENT = "payment"
    ADJUSTMENT = "adjustment"


class MatchType(str, Enum):
    """How a match was found."""
    EXACT = "exact"
    AMOUNT_TOLERANT = "amount_tolerant"
    FUZZY_DATE = "fuzzy_date"
    SPLIT = "split"
    MANUAL = "manual"


class MatchStatus(str, Enum):
    """Lifecycle of a proposed match."""
    SUGGESTED = "suggested"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class MatchTier(int, Enum):
    """Candidate search passes, run in ascending order."""
    EXACT = 1              # Same document, same amount
    DOCUMENT_TOLERANT = 2  # Same document, amount within tolerance
    DATE_WINDOW = 3        # Amount within tolerance, date within window
    AGGREGATE = 4          # Several records summing to the line amount


class IssueType(str, Enum):
    """Kind of discrepancy raised on a line."""
    AMOUNT_MISMATCH = "amount_mismatch"
    MISSING_RECORD = "missing_record"
    CURRENCY_MISMATCH = "currency_mismatch"
    DUPLICATE = "duplicate"


class IssueStatus(str, Enum):
    """Status of an issue."""
    OPEN = "open"
    RESOLVED = "resolved"


class AcknowledgementType(str, Enum):
    """Scope of a sign-off."""
    FULL = "full"
    PARTIAL = "partial"


class MatchedBy(str, Enum):
    """Who created a match or detected an issue."""
    SYSTEM = "system"
    MANUAL = "manual"


class AuditAction(str, Enum):
    """Type of audit action."""
    LINE_INGESTED = "line_ingested"
    LINE_STATUS_CHANGED = "line_status_changed"
    MATCH_SUGGESTED = "match_suggested"
    MATCH_CONFIRMED = "match_confirmed"
    MATCH_REJECTED = "match_rejected"
    MATCH_SUPERSEDED = "match_superseded"
    ISSUE_OPENED = "issue_opened"
    ISSUE_RESOLVED = "issue_resolved"
    RECOMPUTE_COMPLETED = "recompute_completed"
    RECOMPUTE_LINE_FAILED = "recompute_line_failed"
    STATEMENT_STATUS_CHANGED = "statement_status_changed"
    SIGNED_OFF = "signed_off"
    SIGNOFF_REFUSED = "signoff_refused"


def parse_enum(enum_cls: Type[E], value, field: str) -> E:
    """
    Convert a raw value into a member of ``enum_cls``.

    Unknown values are rejected with ValidationError instead of being passed
    through as plain strings.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(str(m.value) for m in enum_cls)
        raise ValidationError(
            f"Unknown {field} '{value}' (expected one of: {allowed})",
            field=field,
        ) from None

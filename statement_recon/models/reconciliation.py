"""Reconciliation result models."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any

from .enums import (
    AcknowledgementType,
    AuditAction,
    IssueStatus,
    IssueType,
    MatchedBy,
    MatchStatus,
    MatchTier,
    MatchType,
)
from .statement import new_id, utcnow


@dataclass
class Match:
    """A proposed or confirmed link between statement line(s) and ledger record(s)."""
    id: str = field(default_factory=new_id)
    statement_id: str = ""

    line_ids: List[str] = field(default_factory=list)
    record_ids: List[str] = field(default_factory=list)

    match_type: MatchType = MatchType.EXACT
    tier: Optional[MatchTier] = None
    confidence: float = 0.0
    status: MatchStatus = MatchStatus.SUGGESTED

    # Reconciliation deltas (record total minus line amount)
    amount_delta: Decimal = Decimal("0.00")
    date_delta_days: Optional[int] = None

    # Audit
    matched_by: MatchedBy = MatchedBy.SYSTEM
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)
    confirmed_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    version: int = 0

    @property
    def cardinality(self) -> int:
        """Number of documents involved in this match."""
        return len(self.line_ids) + len(self.record_ids)

    def same_link(self, line_ids: List[str], record_ids: List[str]) -> bool:
        """Check whether this match links exactly the given lines and records."""
        return (
            sorted(self.line_ids) == sorted(line_ids)
            and sorted(self.record_ids) == sorted(record_ids)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "statement_id": self.statement_id,
            "line_ids": list(self.line_ids),
            "record_ids": list(self.record_ids),
            "match_type": self.match_type.value,
            "tier": self.tier.value if self.tier else None,
            "confidence": self.confidence,
            "status": self.status.value,
            "amount_delta": str(self.amount_delta),
            "date_delta_days": self.date_delta_days,
            "matched_by": self.matched_by.value,
            "created_by": self.created_by,
            "confirmed_by": self.confirmed_by,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "rejected_by": self.rejected_by,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "rejection_reason": self.rejection_reason,
        }


@dataclass
class Issue:
    """A tracked discrepancy on a statement line."""
    id: str = field(default_factory=new_id)
    statement_id: str = ""
    line_id: str = ""

    issue_type: IssueType = IssueType.MISSING_RECORD
    description: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    status: IssueStatus = IssueStatus.OPEN
    detected_by: MatchedBy = MatchedBy.SYSTEM
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)

    # Resolution
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.status == IssueStatus.OPEN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "statement_id": self.statement_id,
            "line_id": self.line_id,
            "issue_type": self.issue_type.value,
            "description": self.description,
            "details": dict(self.details),
            "status": self.status.value,
            "detected_by": self.detected_by.value,
            "created_by": self.created_by,
            "resolution_notes": self.resolution_notes,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass(frozen=True)
class Acknowledgement:
    """Immutable sign-off of a statement at a point in time."""
    statement_id: str
    actor: str
    acknowledgement_type: AcknowledgementType
    net_variance: Decimal
    total_lines: int
    matched_lines: int
    outstanding_lines: int
    notes: Optional[str] = None
    id: str = field(default_factory=new_id)
    acknowledged_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "statement_id": self.statement_id,
            "actor": self.actor,
            "acknowledgement_type": self.acknowledgement_type.value,
            "acknowledged_at": self.acknowledged_at.isoformat(),
            "net_variance": str(self.net_variance),
            "total_lines": self.total_lines,
            "matched_lines": self.matched_lines,
            "outstanding_lines": self.outstanding_lines,
            "notes": self.notes,
        }


@dataclass
class AuditEntry:
    """An entry in the audit log."""
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)

    # Action
    action: AuditAction = AuditAction.LINE_STATUS_CHANGED
    actor: str = "system"

    # Context
    statement_id: Optional[str] = None
    entity_ids: List[str] = field(default_factory=list)
    from_status: Optional[str] = None
    to_status: Optional[str] = None

    # Details
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "actor": self.actor,
            "statement_id": self.statement_id,
            "entity_ids": list(self.entity_ids),
            "from_status": self.from_status,
            "to_status": self.to_status,
            "message": self.message,
            "details": dict(self.details),
        }


@dataclass
class VarianceBreakdown:
    """Net variance of a statement and the totals it is built from."""
    statement_id: str
    opening_balance: Decimal = Decimal("0.00")
    total_matched: Decimal = Decimal("0.00")
    total_resolved: Decimal = Decimal("0.00")
    total_outstanding: Decimal = Decimal("0.00")
    net_variance: Decimal = Decimal("0.00")

    total_lines: int = 0
    matched_lines: int = 0
    resolved_lines: int = 0
    outstanding_lines: int = 0

    computed_at: datetime = field(default_factory=utcnow)

    def is_within(self, epsilon: Decimal) -> bool:
        return abs(self.net_variance) <= epsilon

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement_id": self.statement_id,
            "opening_balance": str(self.opening_balance),
            "total_matched": str(self.total_matched),
            "total_resolved": str(self.total_resolved),
            "total_outstanding": str(self.total_outstanding),
            "net_variance": str(self.net_variance),
            "total_lines": self.total_lines,
            "matched_lines": self.matched_lines,
            "resolved_lines": self.resolved_lines,
            "outstanding_lines": self.outstanding_lines,
        }


@dataclass
class LineFailure:
    """A line whose processing was aborted during a recompute pass."""
    line_id: str
    error_code: str
    message: str
    retryable: bool = False


@dataclass
class RecomputeResult:
    """Outcome of one recompute pass over a statement."""
    statement_id: str
    matches_created: int = 0
    issues_created: int = 0
    lines_processed: int = 0
    lines_skipped: int = 0
    auto_confirmed: int = 0
    suggestions_created: int = 0
    failures: List[LineFailure] = field(default_factory=list)
    variance: Optional[VarianceBreakdown] = None

    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def lines_failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement_id": self.statement_id,
            "matches_created": self.matches_created,
            "issues_created": self.issues_created,
            "lines_processed": self.lines_processed,
            "lines_skipped": self.lines_skipped,
            "lines_failed": self.lines_failed,
            "auto_confirmed": self.auto_confirmed,
            "suggestions_created": self.suggestions_created,
            "failures": [
                {
                    "line_id": f.line_id,
                    "error_code": f.error_code,
                    "message": f.message,
                    "retryable": f.retryable,
                }
                for f in self.failures
            ],
            "variance": self.variance.to_dict() if self.variance else None,
        }

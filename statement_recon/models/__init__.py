"""Data models for the statement reconciliation system."""

from .enums import (
    AcknowledgementType,
    AuditAction,
    IssueStatus,
    IssueType,
    LineStatus,
    LineType,
    MatchedBy,
    MatchStatus,
    MatchTier,
    MatchType,
    StatementStatus,
    parse_enum,
)
from .statement import (
    Statement,
    StatementLine,
    LedgerRecord,
)
from .reconciliation import (
    Match,
    Issue,
    Acknowledgement,
    AuditEntry,
    VarianceBreakdown,
    LineFailure,
    RecomputeResult,
)

__all__ = [
    # Enums
    "AcknowledgementType",
    "AuditAction",
    "IssueStatus",
    "IssueType",
    "LineStatus",
    "LineType",
    "MatchedBy",
    "MatchStatus",
    "MatchTier",
    "MatchType",
    "StatementStatus",
    "parse_enum",
    # Entities
    "Statement",
    "StatementLine",
    "LedgerRecord",
    # Reconciliation
    "Match",
    "Issue",
    "Acknowledgement",
    "AuditEntry",
    "VarianceBreakdown",
    "LineFailure",
    "RecomputeResult",
]

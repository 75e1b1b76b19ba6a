"""
Interfaces the reconciliation core consumes from its storage collaborators.

The core never talks to a storage engine directly: it reads lines through
LineQuery, reads ledger records through LedgerQuery and writes through
ReconciliationStore, whose compare-and-set methods are the only way a row's
status changes.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Set

from ..models import (
    Acknowledgement,
    AuditEntry,
    Issue,
    IssueStatus,
    LedgerRecord,
    LineStatus,
    LineType,
    Match,
    MatchStatus,
    Statement,
    StatementLine,
    StatementStatus,
)


@dataclass
class LineFilter:
    """Filter for statement line queries. Empty fields do not filter."""
    statuses: Sequence[LineStatus] = ()
    line_types: Sequence[LineType] = ()
    line_ids: Sequence[str] = ()


@dataclass
class CandidateFilter:
    """Filter for ledger record queries. Empty fields do not filter."""
    company_ref: Optional[str] = None
    currency: Optional[str] = None
    document_number: Optional[str] = None  # trimmed, case-insensitive equality
    exclude_document_number: Optional[str] = None
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    exclude_ids: Set[str] = field(default_factory=set)
    record_ids: Sequence[str] = ()


class LineQuery(ABC):
    """Read access to statement lines."""

    @abstractmethod
    def find_lines(
        self,
        statement_id: str,
        filters: Optional[LineFilter] = None,
    ) -> List[StatementLine]:
        """Lines of a statement in line order."""


class LedgerQuery(ABC):
    """Read-only access to internal ledger records."""

    @abstractmethod
    def find_candidates(
        self,
        vendor_ref: str,
        filters: Optional[CandidateFilter] = None,
    ) -> List[LedgerRecord]:
        """Records of a vendor in creation order."""

    @abstractmethod
    def get_records(self, record_ids: Sequence[str]) -> List[LedgerRecord]:
        """Fetch records by id; raises NotFoundError for unknown ids."""


class ReconciliationStore(LineQuery):
    """Transactional write interface for statements, lines, matches and issues."""

    @abstractmethod
    def transaction(self, statement_id: str) -> AbstractContextManager:
        """Exclusive, re-entrant scope for check-then-act on one statement."""

    # Statements

    @abstractmethod
    def add_statement(self, statement: Statement) -> Statement: ...

    @abstractmethod
    def get_statement(self, statement_id: str) -> Statement: ...

    @abstractmethod
    def compare_and_set_statement(
        self,
        statement_id: str,
        expected_version: int,
        expected_status: StatementStatus,
        status: StatementStatus,
    ) -> Statement: ...

    # Lines

    @abstractmethod
    def add_lines(self, lines: Iterable[StatementLine]) -> List[StatementLine]: ...

    @abstractmethod
    def get_line(self, line_id: str) -> StatementLine: ...

    @abstractmethod
    def compare_and_set_line(
        self,
        line_id: str,
        expected_version: int,
        expected_status: LineStatus,
        status: LineStatus,
    ) -> StatementLine: ...

    # Matches

    @abstractmethod
    def add_match(self, match: Match) -> Match: ...

    @abstractmethod
    def get_match(self, match_id: str) -> Match: ...

    @abstractmethod
    def find_matches(
        self,
        statement_id: Optional[str] = None,
        line_id: Optional[str] = None,
        statuses: Sequence[MatchStatus] = (),
    ) -> List[Match]: ...

    @abstractmethod
    def compare_and_set_match(
        self,
        match_id: str,
        expected_version: int,
        expected_status: MatchStatus,
        **changes,
    ) -> Match: ...

    @abstractmethod
    def confirmed_record_ids(self, vendor_ref: str) -> Set[str]:
        """Ledger records already consumed by a confirmed match for the vendor."""

    # Issues

    @abstractmethod
    def add_issue(self, issue: Issue) -> Issue: ...

    @abstractmethod
    def get_issue(self, issue_id: str) -> Issue: ...

    @abstractmethod
    def find_issues(
        self,
        statement_id: str,
        line_id: Optional[str] = None,
        statuses: Sequence[IssueStatus] = (),
    ) -> List[Issue]: ...

    @abstractmethod
    def compare_and_set_issue(
        self,
        issue_id: str,
        expected_version: int,
        expected_status: IssueStatus,
        **changes,
    ) -> Issue: ...

    # Acknowledgements and audit

    @abstractmethod
    def add_acknowledgement(self, acknowledgement: Acknowledgement) -> Acknowledgement: ...

    @abstractmethod
    def get_acknowledgement(self, statement_id: str) -> Optional[Acknowledgement]: ...

    @abstractmethod
    def append_audit(self, entry: AuditEntry) -> None: ...

    @abstractmethod
    def audit_entries(self, statement_id: Optional[str] = None) -> List[AuditEntry]: ...

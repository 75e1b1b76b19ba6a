"""
In-memory implementations of the store interfaces.

Tables are plain dicts guarded by one short-lived RLock; callers always get
copies, so a row can only change through the compare-and-set methods. Each
statement also has its own re-entrant transaction lock for check-then-act
sequences (confirming a match, signing off).
"""

import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set

import structlog

from ..errors import ConcurrentModificationError, NotFoundError, ValidationError
from ..ingestion.normalizer import canonical_document_number
from ..models import (
    Acknowledgement,
    AuditEntry,
    Issue,
    IssueStatus,
    LedgerRecord,
    LineStatus,
    Match,
    MatchStatus,
    Statement,
    StatementLine,
    StatementStatus,
)
from .base import (
    CandidateFilter,
    LedgerQuery,
    LineFilter,
    ReconciliationStore,
)

logger = structlog.get_logger()


def _line_order(line: StatementLine):
    return (line.line_number, line.created_at, line.id)


class InMemoryReconciliationStore(ReconciliationStore):
    """Thread-safe in-memory store for statements and their reconciliation state."""

    def __init__(self):
        self._lock = threading.RLock()
        self._statement_locks: Dict[str, threading.RLock] = {}

        self._statements: Dict[str, Statement] = {}
        self._lines: Dict[str, StatementLine] = {}
        self._matches: Dict[str, Match] = {}
        self._issues: Dict[str, Issue] = {}
        self._acknowledgements: Dict[str, Acknowledgement] = {}
        self._audit: List[AuditEntry] = []

    @contextmanager
    def transaction(self, statement_id: str):
        with self._lock:
            lock = self._statement_locks.setdefault(statement_id, threading.RLock())
        with lock:
            yield

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    def _get(self, table: Dict[str, object], resource: str, entity_id: str):
        if not entity_id:
            raise ValidationError(f"{resource} id is required", field=f"{resource.lower()}_id")
        with self._lock:
            entity = table.get(entity_id)
            if entity is None:
                raise NotFoundError(resource, entity_id)
            return copy.deepcopy(entity)

    def _insert(self, table: Dict[str, object], resource: str, entity):
        with self._lock:
            if entity.id in table:
                raise ValidationError(
                    f"{resource} already exists: {entity.id}",
                    field="id",
                )
            table[entity.id] = copy.deepcopy(entity)
            return copy.deepcopy(entity)

    def _compare_and_set(
        self,
        table: Dict[str, object],
        resource: str,
        entity_id: str,
        expected_version: int,
        expected_status,
        changes: Dict[str, object],
    ):
        """
        Apply ``changes`` only if the row still has the expected version and
        status. Bumps the version on success.
        """
        with self._lock:
            current = table.get(entity_id)
            if current is None:
                raise NotFoundError(resource, entity_id)

            if current.version != expected_version or current.status != expected_status:
                logger.debug(
                    "Compare-and-set conflict",
                    resource=resource,
                    id=entity_id,
                    expected_version=expected_version,
                    actual_version=current.version,
                    expected_status=expected_status.value,
                    actual_status=current.status.value,
                )
                raise ConcurrentModificationError(
                    f"{resource} {entity_id} was modified concurrently",
                    {
                        "resource": resource,
                        "id": entity_id,
                        "expected_version": expected_version,
                        "current_version": current.version,
                        "expected_status": expected_status.value,
                        "current_status": current.status.value,
                    },
                )

            updated = copy.deepcopy(current)
            for name, value in changes.items():
                if not hasattr(updated, name):
                    raise ValidationError(f"Unknown {resource} field: {name}", field=name)
                setattr(updated, name, value)
            updated.version = current.version + 1
            if hasattr(updated, "updated_at"):
                updated.updated_at = datetime.now(timezone.utc)

            table[entity_id] = updated
            return copy.deepcopy(updated)

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def add_statement(self, statement: Statement) -> Statement:
        return self._insert(self._statements, "Statement", statement)

    def get_statement(self, statement_id: str) -> Statement:
        return self._get(self._statements, "Statement", statement_id)

    def list_statements(self, vendor_ref: Optional[str] = None) -> List[Statement]:
        with self._lock:
            return [
                copy.deepcopy(s) for s in self._statements.values()
                if vendor_ref is None or s.vendor_ref == vendor_ref
            ]

    def compare_and_set_statement(
        self,
        statement_id: str,
        expected_version: int,
        expected_status: StatementStatus,
        status: StatementStatus,
    ) -> Statement:
        return self._compare_and_set(
            self._statements, "Statement", statement_id,
            expected_version, expected_status, {"status": status},
        )

    # ------------------------------------------------------------------
    # Lines
    # ------------------------------------------------------------------

    def add_lines(self, lines: Iterable[StatementLine]) -> List[StatementLine]:
        lines = list(lines)
        with self._lock:
            for line in lines:
                if line.statement_id not in self._statements:
                    raise NotFoundError("Statement", line.statement_id)
                if line.id in self._lines:
                    raise ValidationError(f"Line already exists: {line.id}", field="id")
            for line in lines:
                self._lines[line.id] = copy.deepcopy(line)
        return [copy.deepcopy(line) for line in lines]

    def get_line(self, line_id: str) -> StatementLine:
        return self._get(self._lines, "StatementLine", line_id)

    def find_lines(
        self,
        statement_id: str,
        filters: Optional[LineFilter] = None,
    ) -> List[StatementLine]:
        filters = filters or LineFilter()
        with self._lock:
            lines = [
                copy.deepcopy(line) for line in self._lines.values()
                if line.statement_id == statement_id
                and (not filters.statuses or line.status in filters.statuses)
                and (not filters.line_types or line.line_type in filters.line_types)
                and (not filters.line_ids or line.id in filters.line_ids)
            ]
        return sorted(lines, key=_line_order)

    def compare_and_set_line(
        self,
        line_id: str,
        expected_version: int,
        expected_status: LineStatus,
        status: LineStatus,
    ) -> StatementLine:
        return self._compare_and_set(
            self._lines, "StatementLine", line_id,
            expected_version, expected_status, {"status": status},
        )

    # ------------------------------------------------------------------
    # Matches
    # ------------------------------------------------------------------

    def add_match(self, match: Match) -> Match:
        return self._insert(self._matches, "Match", match)

    def get_match(self, match_id: str) -> Match:
        return self._get(self._matches, "Match", match_id)

    def find_matches(
        self,
        statement_id: Optional[str] = None,
        line_id: Optional[str] = None,
        statuses: Sequence[MatchStatus] = (),
    ) -> List[Match]:
        with self._lock:
            matches = [
                copy.deepcopy(m) for m in self._matches.values()
                if (statement_id is None or m.statement_id == statement_id)
                and (line_id is None or line_id in m.line_ids)
                and (not statuses or m.status in statuses)
            ]
        return sorted(matches, key=lambda m: (m.created_at, m.id))

    def compare_and_set_match(
        self,
        match_id: str,
        expected_version: int,
        expected_status: MatchStatus,
        **changes,
    ) -> Match:
        return self._compare_and_set(
            self._matches, "Match", match_id,
            expected_version, expected_status, changes,
        )

    def confirmed_record_ids(self, vendor_ref: str) -> Set[str]:
        with self._lock:
            statement_ids = {
                s.id for s in self._statements.values() if s.vendor_ref == vendor_ref
            }
            return {
                record_id
                for m in self._matches.values()
                if m.status == MatchStatus.CONFIRMED and m.statement_id in statement_ids
                for record_id in m.record_ids
            }

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def add_issue(self, issue: Issue) -> Issue:
        return self._insert(self._issues, "Issue", issue)

    def get_issue(self, issue_id: str) -> Issue:
        return self._get(self._issues, "Issue", issue_id)

    def find_issues(
        self,
        statement_id: str,
        line_id: Optional[str] = None,
        statuses: Sequence[IssueStatus] = (),
    ) -> List[Issue]:
        with self._lock:
            issues = [
                copy.deepcopy(i) for i in self._issues.values()
                if i.statement_id == statement_id
                and (line_id is None or i.line_id == line_id)
                and (not statuses or i.status in statuses)
            ]
        return sorted(issues, key=lambda i: (i.created_at, i.id))

    def compare_and_set_issue(
        self,
        issue_id: str,
        expected_version: int,
        expected_status: IssueStatus,
        **changes,
    ) -> Issue:
        return self._compare_and_set(
            self._issues, "Issue", issue_id,
            expected_version, expected_status, changes,
        )

    # ------------------------------------------------------------------
    # Acknowledgements and audit
    # ------------------------------------------------------------------

    def add_acknowledgement(self, acknowledgement: Acknowledgement) -> Acknowledgement:
        with self._lock:
            if acknowledgement.statement_id in self._acknowledgements:
                raise ConcurrentModificationError(
                    f"Statement {acknowledgement.statement_id} is already acknowledged",
                    {"statement_id": acknowledgement.statement_id},
                )
            self._acknowledgements[acknowledgement.statement_id] = copy.deepcopy(acknowledgement)
        return copy.deepcopy(acknowledgement)

    def get_acknowledgement(self, statement_id: str) -> Optional[Acknowledgement]:
        with self._lock:
            return copy.deepcopy(self._acknowledgements.get(statement_id))

    def append_audit(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(copy.deepcopy(entry))

    def audit_entries(self, statement_id: Optional[str] = None) -> List[AuditEntry]:
        with self._lock:
            return [
                copy.deepcopy(e) for e in self._audit
                if statement_id is None or e.statement_id == statement_id
            ]


class InMemoryLedger(LedgerQuery):
    """Read-only ledger of internal records, indexed by vendor."""

    def __init__(self, records: Iterable[LedgerRecord] = ()):
        self._lock = threading.RLock()
        self._records: Dict[str, LedgerRecord] = {}
        for record in records:
            self.add(record)

    def add(self, record: LedgerRecord) -> LedgerRecord:
        """Load a record into the ledger (collaborator side, not used by the core)."""
        with self._lock:
            self._records[record.id] = copy.deepcopy(record)
        return record

    def get_records(self, record_ids: Sequence[str]) -> List[LedgerRecord]:
        with self._lock:
            records = []
            for record_id in record_ids:
                record = self._records.get(record_id)
                if record is None:
                    raise NotFoundError("LedgerRecord", record_id)
                records.append(copy.deepcopy(record))
            return records

    def find_candidates(
        self,
        vendor_ref: str,
        filters: Optional[CandidateFilter] = None,
    ) -> List[LedgerRecord]:
        filters = filters or CandidateFilter()
        document = canonical_document_number(filters.document_number)
        excluded_document = canonical_document_number(filters.exclude_document_number)

        with self._lock:
            records = [copy.deepcopy(r) for r in self._records.values()]

        def accept(record: LedgerRecord) -> bool:
            if record.vendor_ref != vendor_ref:
                return False
            if record.id in filters.exclude_ids:
                return False
            if filters.record_ids and record.id not in filters.record_ids:
                return False
            if filters.company_ref and record.company_ref not in (None, filters.company_ref):
                return False
            if filters.currency and record.currency != filters.currency:
                return False
            record_document = canonical_document_number(record.document_number)
            if document and record_document != document:
                return False
            if excluded_document and record_document == excluded_document:
                return False
            if filters.amount_min is not None and record.amount < filters.amount_min:
                return False
            if filters.amount_max is not None and record.amount > filters.amount_max:
                return False
            if filters.date_from or filters.date_to:
                if record.record_date is None:
                    return False
                if filters.date_from and record.record_date < filters.date_from:
                    return False
                if filters.date_to and record.record_date > filters.date_to:
                    return False
            return True

        return sorted(filter(accept, records), key=lambda r: r.sort_key)

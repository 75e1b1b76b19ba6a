"""
Reconciliation service - the operations exposed to the request layer.

Wires the store, the ledger and the engine components together. Mutating
operations are retried on optimistic-lock conflicts; every other error is
raised to the caller unchanged.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import structlog
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings, get_settings
from .errors import ConcurrentModificationError, ValidationError
from .ingestion.normalizer import LineNormalizer, parse_amount, parse_date
from .models import (
    Acknowledgement,
    AcknowledgementType,
    AuditAction,
    AuditEntry,
    Issue,
    IssueStatus,
    IssueType,
    Match,
    MatchStatus,
    RecomputeResult,
    Statement,
    StatementLine,
    VarianceBreakdown,
    parse_enum,
)
from .reconciliation import (
    MatchingCapabilities,
    MatchingOrchestrator,
    SignOffGate,
)
from .store import InMemoryLedger, InMemoryReconciliationStore
from .store.base import LedgerQuery, ReconciliationStore
from .utils.audit_logger import AuditLogger

logger = structlog.get_logger()


def _log_retry(retry_state) -> None:
    logger.warning(
        "Retrying after concurrent modification",
        operation=getattr(retry_state.fn, "__name__", None),
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


class ReconciliationService:
    """
    Facade over the reconciliation core.

    Example:
        service = ReconciliationService(ledger=InMemoryLedger(records))
        statement = service.register_statement("VENDOR-1", opening_balance="0")
        service.ingest_lines(statement.id, rows)
        result = service.recompute(statement.id)
        service.sign_off(statement.id, actor="controller@example.com")
    """

    def __init__(
        self,
        store: Optional[ReconciliationStore] = None,
        ledger: Optional[LedgerQuery] = None,
        settings: Optional[Settings] = None,
        capabilities: Optional[MatchingCapabilities] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or InMemoryReconciliationStore()
        self.ledger = ledger or InMemoryLedger()

        self.audit = AuditLogger(self.store)
        self.orchestrator = MatchingOrchestrator(
            self.store,
            self.ledger,
            settings=self.settings,
            capabilities=capabilities,
            audit=self.audit,
        )
        self.state_machine = self.orchestrator.state_machine
        self.variance = self.orchestrator.variance
        self.gate = SignOffGate(self.store, self.settings, self.audit, self.variance)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.settings.retry_attempts),
            wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
            retry=retry_if_exception_type(ConcurrentModificationError),
            before_sleep=_log_retry,
            reraise=True,
        )

    def _run(self, operation, *args, **kwargs):
        return self._retrying()(operation, *args, **kwargs)

    # ------------------------------------------------------------------
    # Setup (collaborator side)
    # ------------------------------------------------------------------

    def register_statement(
        self,
        vendor_ref: str,
        company_ref: Optional[str] = None,
        tenant_ref: Optional[str] = None,
        period_start: Any = None,
        period_end: Any = None,
        opening_balance: Any = "0",
        currency: str = "USD",
    ) -> Statement:
        """Create a new open statement."""
        if not vendor_ref or not str(vendor_ref).strip():
            raise ValidationError("vendor_ref is required", field="vendor_ref")

        start = parse_date(period_start, "period_start")
        end = parse_date(period_end, "period_end")
        if start and end and end < start:
            raise ValidationError("period_end is before period_start", field="period_end")

        balance, _ = parse_amount(opening_balance, "opening_balance")
        statement = self.store.add_statement(Statement(
            vendor_ref=str(vendor_ref).strip(),
            company_ref=company_ref,
            tenant_ref=tenant_ref,
            period_start=start,
            period_end=end,
            currency=str(currency).strip().upper(),
            opening_balance=balance,
        ))

        logger.info(
            "Statement registered",
            statement_id=statement.id,
            vendor_ref=statement.vendor_ref,
            opening_balance=str(balance),
        )
        return statement

    def ingest_lines(
        self,
        statement_id: str,
        rows: Iterable[Mapping[str, Any]],
    ) -> List[StatementLine]:
        """
        Normalize extracted rows and attach them to a statement.

        Runs inside the statement transaction so a concurrent sign-off
        either sees the new lines or locks the statement first.
        """
        rows = list(rows)
        with self.store.transaction(statement_id):
            statement = self.state_machine.ensure_mutable(statement_id)
            normalizer = LineNormalizer(statement.currency)

            existing = self.store.find_lines(statement_id)
            next_number = max((line.line_number for line in existing), default=0) + 1

            lines = []
            for offset, row in enumerate(rows):
                lines.append(normalizer.normalize(row, statement_id, row.get("line_number") or next_number + offset))

            stored = self.store.add_lines(lines)
            self.audit.record(
                AuditAction.LINE_INGESTED,
                f"Ingested {len(stored)} statement lines",
                statement_id=statement_id,
                entity_ids=[line.id for line in stored],
            )
            self.variance.refresh_statement_status(statement_id)
        return stored

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def recompute(self, statement_id: str) -> RecomputeResult:
        return self.orchestrator.recompute(statement_id)

    def create_manual_match(
        self,
        line_id: str,
        record_ids: Sequence[str],
        actor: str,
    ) -> Match:
        return self._run(self.orchestrator.create_manual_match, line_id, record_ids, actor)

    def confirm_match(self, match_id: str, actor: str) -> Match:
        return self._run(self.state_machine.confirm_match, match_id, actor)

    def reject_match(
        self,
        match_id: str,
        reason: str,
        actor: str,
        issue_type: Any = None,
    ) -> Match:
        if issue_type is not None:
            issue_type = parse_enum(IssueType, issue_type, "issue_type")
        return self._run(self.orchestrator.reject_match, match_id, reason, actor, issue_type)

    def dispute_line(
        self,
        line_id: str,
        issue_type: Any,
        description: str,
        actor: str,
    ) -> Issue:
        issue_type = parse_enum(IssueType, issue_type, "issue_type")
        return self._run(self.state_machine.dispute_line, line_id, issue_type, description, actor)

    def resolve_issue(
        self,
        issue_id: str,
        notes: str,
        actor: str,
        close_line: bool = False,
    ) -> Issue:
        return self._run(self.state_machine.resolve_issue, issue_id, notes, actor, close_line)

    def compute_variance(self, statement_id: str) -> VarianceBreakdown:
        return self.variance.compute(statement_id)

    def sign_off(
        self,
        statement_id: str,
        actor: str,
        acknowledgement_type: Any = AcknowledgementType.FULL,
        notes: Optional[str] = None,
    ) -> Acknowledgement:
        acknowledgement_type = parse_enum(AcknowledgementType, acknowledgement_type, "acknowledgement_type")
        return self._run(self.gate.sign_off, statement_id, actor, acknowledgement_type, notes)

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def export_reconciliation(self, statement_id: str) -> Dict[str, Any]:
        """
        Read-only snapshot of a statement for downstream reporting.

        Returns:
            {"summary": {...}, "lines": [...]} where each line carries its
            active match, open suggestions and issues
        """
        statement = self.store.get_statement(statement_id)
        lines = self.store.find_lines(statement_id)
        matches = self.store.find_matches(statement_id=statement_id)
        issues = self.store.find_issues(statement_id)
        acknowledgement = self.store.get_acknowledgement(statement_id)
        variance = self.variance.compute(statement_id)

        exported_lines = []
        for line in lines:
            line_matches = [m for m in matches if line.id in m.line_ids]
            confirmed = next((m for m in line_matches if m.status == MatchStatus.CONFIRMED), None)
            exported_lines.append({
                **line.to_dict(),
                "match": confirmed.to_dict() if confirmed else None,
                "suggestions": [
                    m.to_dict() for m in line_matches if m.status == MatchStatus.SUGGESTED
                ],
                "issues": [i.to_dict() for i in issues if i.line_id == line.id],
            })

        return {
            "summary": {
                "statement": statement.to_dict(),
                "variance": variance.to_dict(),
                "matches": {
                    status.value: sum(1 for m in matches if m.status == status)
                    for status in MatchStatus
                },
                "issues": {
                    status.value: sum(1 for i in issues if i.status == status)
                    for status in IssueStatus
                },
                "acknowledgement": acknowledgement.to_dict() if acknowledgement else None,
                "audit": self.audit.summary(statement_id),
            },
            "lines": exported_lines,
        }

    def audit_trail(
        self,
        statement_id: str,
        action: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[AuditEntry]:
        self.store.get_statement(statement_id)
        return self.audit.get_entries(statement_id, action_filter=action, entity_id=entity_id)

    def get_statement(self, statement_id: str) -> Statement:
        return self.store.get_statement(statement_id)

    def list_statements(self, vendor_ref: Optional[str] = None) -> List[Statement]:
        return self.store.list_statements(vendor_ref)

    def get_line(self, line_id: str) -> StatementLine:
        return self.store.get_line(line_id)

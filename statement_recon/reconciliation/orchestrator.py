"""
Matching Orchestrator - multi-pass matching of a statement against the ledger.

For every outstanding line the candidate tiers run in order:
1. EXACT (document + amount)
2. DOCUMENT_TOLERANT (document + amount within tolerance)
3. DATE_WINDOW (amount within tolerance + date window)
4. AGGREGATE (split across several records)

The best candidate of the first tier that reaches the suggest threshold is
either auto-confirmed, kept as a suggestion, or, when no tier produced one,
the line is flagged with a missing-record issue.

Recompute is idempotent: a second run over unchanged data reuses existing
suggestions and issues and creates nothing new.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

import structlog

from ..config import Settings, get_settings
from ..errors import ReconciliationError, StatementLockedError, ValidationError
from ..models import (
    AuditAction,
    IssueStatus,
    IssueType,
    LedgerRecord,
    LineFailure,
    LineStatus,
    LineType,
    Match,
    MatchedBy,
    MatchStatus,
    MatchTier,
    MatchType,
    RecomputeResult,
    Statement,
    StatementLine,
    parse_enum,
)
from ..store.base import CandidateFilter, LedgerQuery, LineFilter, ReconciliationStore
from ..utils.audit_logger import AuditLogger
from .candidate_finder import CandidateFinder, SearchScope
from .scorer import MatchScorer, ScoredCandidate
from .state_machine import SUPERSEDED_REASON, DisputeStateMachine
from .variance import VarianceCalculator

logger = structlog.get_logger()

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class MatchingCapabilities:
    """Which line types recompute may match and which tiers it runs."""
    line_types: FrozenSet[LineType] = frozenset(LineType)
    tiers: Tuple[MatchTier, ...] = tuple(MatchTier)

    @classmethod
    def from_settings(cls, settings: Settings) -> "MatchingCapabilities":
        if not settings.matchable_line_types:
            return cls()
        return cls(line_types=frozenset(
            parse_enum(LineType, value, "matchable_line_types")
            for value in settings.matchable_line_types
        ))

    def allows(self, line: StatementLine) -> bool:
        return line.line_type in self.line_types


@dataclass
class _LineOutcome:
    """What recompute did for a single line."""
    auto_confirmed: bool = False
    suggestion_created: bool = False
    issue_created: bool = False


@dataclass
class _RunState:
    processed: Set[str] = field(default_factory=set)
    failed: Dict[str, LineFailure] = field(default_factory=dict)


class MatchingOrchestrator:
    """
    Runs the matching passes for a statement and commits their outcome.

    Each line is handled inside its own short statement transaction, so
    interactive operations interleave with a long recompute and the loser of
    a race sees a ConcurrentModificationError instead of a silent overwrite.
    """

    def __init__(
        self,
        store: ReconciliationStore,
        ledger: LedgerQuery,
        settings: Optional[Settings] = None,
        capabilities: Optional[MatchingCapabilities] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.ledger = ledger
        self.capabilities = capabilities or MatchingCapabilities.from_settings(self.settings)

        self.audit = audit or AuditLogger(store)
        self.variance = VarianceCalculator(store, self.audit)
        self.state_machine = DisputeStateMachine(store, self.audit, self.variance)
        self.finder = CandidateFinder(ledger, self.settings)
        self.scorer = MatchScorer(self.settings)

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def recompute(self, statement_id: str) -> RecomputeResult:
        """
        Run every matching pass over the outstanding lines of a statement.

        Lines are swept again whenever a sweep auto-confirmed something, since
        consumed ledger records change what the remaining lines can match.
        The final sweep therefore sees a stable candidate pool.

        Args:
            statement_id: Statement to reconcile

        Returns:
            RecomputeResult with counts, per-line failures and the variance
        """
        statement = self.store.get_statement(statement_id)
        if statement.is_signed_off:
            raise StatementLockedError(
                f"Statement {statement_id} is signed off",
                {"statement_id": statement_id, "status": statement.status.value},
            )

        result = RecomputeResult(statement_id=statement_id)
        run = _RunState()
        scope = SearchScope(statement.vendor_ref, statement.company_ref)

        logger.info("Recompute started", statement_id=statement_id, vendor_ref=statement.vendor_ref)

        while True:
            confirmed_before = result.auto_confirmed
            pending = [
                line for line in self.store.find_lines(
                    statement_id,
                    LineFilter(statuses=[LineStatus.EXTRACTED, LineStatus.DISPUTED]),
                )
                if self.capabilities.allows(line) and line.id not in run.failed
            ]

            for line in pending:
                run.processed.add(line.id)
                try:
                    outcome = self._process_line(statement, line.id, scope)
                except ReconciliationError as e:
                    logger.warning(
                        "Line processing failed",
                        statement_id=statement_id,
                        line_id=line.id,
                        code=e.code,
                        error=e.message,
                    )
                    run.failed[line.id] = LineFailure(line.id, e.code, e.message, e.retryable)
                    continue
                except Exception as e:
                    logger.exception("Line processing crashed", statement_id=statement_id, line_id=line.id)
                    run.failed[line.id] = LineFailure(line.id, "INTERNAL_ERROR", str(e))
                    continue

                if outcome.auto_confirmed:
                    result.auto_confirmed += 1
                    result.matches_created += 1
                if outcome.suggestion_created:
                    result.suggestions_created += 1
                    result.matches_created += 1
                if outcome.issue_created:
                    result.issues_created += 1

            if result.auto_confirmed == confirmed_before:
                break

        for failure in run.failed.values():
            self.audit.record(
                AuditAction.RECOMPUTE_LINE_FAILED,
                failure.message,
                statement_id=statement_id,
                entity_ids=[failure.line_id],
                error_code=failure.error_code,
                retryable=failure.retryable,
            )

        total_lines = len(self.store.find_lines(statement_id))
        result.lines_processed = len(run.processed)
        result.lines_skipped = total_lines - result.lines_processed
        result.failures = list(run.failed.values())
        result.variance = self.variance.refresh_statement_status(statement_id)
        result.completed_at = datetime.now(timezone.utc)

        self.audit.record(
            AuditAction.RECOMPUTE_COMPLETED,
            f"Recompute complete: {result.matches_created} matches, {result.issues_created} issues",
            statement_id=statement_id,
            entity_ids=[statement_id],
            lines_processed=result.lines_processed,
            lines_failed=result.lines_failed,
            net_variance=str(result.variance.net_variance),
        )
        return result

    def _process_line(self, statement: Statement, line_id: str, scope: SearchScope) -> _LineOutcome:
        outcome = _LineOutcome()

        with self.store.transaction(statement.id):
            self.state_machine.ensure_mutable(statement.id)
            line = self.store.get_line(line_id)
            if not line.is_matchable:
                return outcome

            excluded = self.store.confirmed_record_ids(statement.vendor_ref)
            best = self.best_candidate(line, scope, excluded)

            if best is None:
                outcome.issue_created = self._flag_exhausted(line, scope, excluded)
            elif (
                best.confidence >= self.settings.auto_confirm_threshold
                and not self._rejected_by_person(line, best.record_ids)
            ):
                self._auto_confirm(line, best)
                outcome.auto_confirmed = True
            else:
                outcome.suggestion_created = self._ensure_suggestion(line, best)

        return outcome

    def best_candidate(
        self,
        line: StatementLine,
        scope: SearchScope,
        excluded_record_ids: Set[str],
    ) -> Optional[ScoredCandidate]:
        """Best candidate of the first tier that reaches the suggest threshold."""
        for tier in self.capabilities.tiers:
            candidates = self.finder.find(line, scope, tier, excluded_record_ids)
            if not candidates:
                continue

            best = self.scorer.rank(line, candidates)[0]
            if best.confidence >= self.settings.suggest_threshold:
                return best

            logger.debug(
                "Tier below suggest threshold",
                line_id=line.id,
                tier=tier.name,
                confidence=best.confidence,
            )
        return None

    def _auto_confirm(self, line: StatementLine, best: ScoredCandidate) -> Match:
        match = self._build_match(line, best, MatchStatus.CONFIRMED)
        confirmed = self.state_machine.commit_confirmed(match, SYSTEM_ACTOR)
        self.state_machine.auto_resolve_system_issues(
            line.id, line.statement_id, f"Matched automatically ({best.match_type.value})",
        )
        return confirmed

    def _ensure_suggestion(self, line: StatementLine, best: ScoredCandidate) -> bool:
        """Keep exactly one suggestion for the best record set. True if created."""
        existing = self.store.find_matches(line_id=line.id, statuses=[MatchStatus.SUGGESTED])
        keep = next((m for m in existing if m.same_link([line.id], best.record_ids)), None)

        created = keep is None
        if created:
            keep = self.store.add_match(self._build_match(line, best, MatchStatus.SUGGESTED))
            self.audit.record(
                AuditAction.MATCH_SUGGESTED,
                f"Match suggested ({best.match_type.value})",
                statement_id=line.statement_id,
                entity_ids=[keep.id, line.id, *best.record_ids],
                to_status=MatchStatus.SUGGESTED,
                confidence=best.confidence,
            )

        self.state_machine.supersede_suggestions(line.id, SYSTEM_ACTOR, keep_id=keep.id)
        return created

    def _flag_exhausted(self, line: StatementLine, scope: SearchScope, excluded: Set[str]) -> bool:
        """Open a missing-record issue for a line no tier could explain. True if created."""
        self.state_machine.supersede_suggestions(line.id, SYSTEM_ACTOR)

        open_issues = self.store.find_issues(
            line.statement_id, line_id=line.id, statuses=[IssueStatus.OPEN],
        )
        created = not open_issues
        if created:
            self.state_machine.open_issue(
                line,
                IssueType.MISSING_RECORD,
                self._describe_missing(line),
                **self._diagnostic_hints(line, scope, excluded),
            )

        if self.settings.dispute_on_exhausted and line.status == LineStatus.EXTRACTED:
            self.state_machine.transition_line(
                self.store.get_line(line.id), LineStatus.DISPUTED, SYSTEM_ACTOR, "Matching exhausted",
            )
        return created

    def _describe_missing(self, line: StatementLine) -> str:
        document = line.document_number or "without document number"
        return f"No ledger record found for {document} ({line.amount} {line.currency})"

    def _diagnostic_hints(self, line: StatementLine, scope: SearchScope, excluded: Set[str]) -> dict:
        """Records with the same document but a different amount or currency."""
        if not line.document_number:
            return {}

        records = self.ledger.find_candidates(
            scope.vendor_ref,
            CandidateFilter(
                company_ref=scope.company_ref,
                document_number=line.document_number,
                exclude_ids=excluded,
            ),
        )
        if not records:
            return {}

        currency_mismatch = [r for r in records if r.currency != line.currency]
        hint = IssueType.CURRENCY_MISMATCH if currency_mismatch else IssueType.AMOUNT_MISMATCH
        return {
            "hint": hint.value,
            "record_ids": [r.id for r in records],
            "record_amounts": [str(r.amount) for r in records],
        }

    def _rejected_by_person(self, line: StatementLine, record_ids: Sequence[str]) -> bool:
        for match in self.store.find_matches(line_id=line.id, statuses=[MatchStatus.REJECTED]):
            if match.rejection_reason != SUPERSEDED_REASON and match.same_link([line.id], list(record_ids)):
                return True
        return False

    def _build_match(self, line: StatementLine, best: ScoredCandidate, status: MatchStatus) -> Match:
        return Match(
            statement_id=line.statement_id,
            line_ids=[line.id],
            record_ids=list(best.record_ids),
            match_type=best.match_type,
            tier=best.tier,
            confidence=best.confidence,
            status=status,
            amount_delta=best.amount_delta,
            date_delta_days=best.date_delta_days,
            matched_by=MatchedBy.SYSTEM,
            created_by=SYSTEM_ACTOR,
        )

    # ------------------------------------------------------------------
    # Manual actions
    # ------------------------------------------------------------------

    def create_manual_match(self, line_id: str, record_ids: Sequence[str], actor: str) -> Match:
        """
        Link a line to ledger records chosen by a person, bypassing scoring.

        Raises:
            ValidationError: empty or duplicate ids, foreign vendor or currency
            NotFoundError: unknown line or ledger record
            AlreadyMatchedError: line or records already in a confirmed match
        """
        if not actor or not str(actor).strip():
            raise ValidationError("actor is required", field="actor")
        record_ids = [str(r).strip() for r in (record_ids or [])]
        if not record_ids or not all(record_ids):
            raise ValidationError("At least one ledger record id is required", field="record_ids")
        if len(set(record_ids)) != len(record_ids):
            raise ValidationError("Ledger record ids must be unique", field="record_ids")

        line = self.store.get_line(line_id)

        with self.store.transaction(line.statement_id):
            statement = self.state_machine.ensure_mutable(line.statement_id)
            line = self.store.get_line(line_id)
            self.state_machine.ensure_unmatched(line)

            records = self.ledger.get_records(record_ids)
            self._validate_manual_records(statement, line, records)

            total = sum((r.amount for r in records), Decimal("0.00"))
            match = Match(
                statement_id=line.statement_id,
                line_ids=[line.id],
                record_ids=record_ids,
                match_type=MatchType.MANUAL,
                confidence=1.0,
                amount_delta=total - line.amount,
                date_delta_days=self.scorer.date_delta(line, records),
                matched_by=MatchedBy.MANUAL,
                created_by=actor,
            )
            confirmed = self.state_machine.commit_confirmed(match, actor)
            self.variance.refresh_statement_status(line.statement_id, actor)

        logger.info(
            "Manual match created",
            match_id=confirmed.id,
            line_id=line_id,
            record_ids=record_ids,
            actor=actor,
        )
        return confirmed

    def _validate_manual_records(
        self,
        statement: Statement,
        line: StatementLine,
        records: List[LedgerRecord],
    ) -> None:
        for record in records:
            if record.vendor_ref != statement.vendor_ref:
                raise ValidationError(
                    f"Ledger record {record.id} belongs to another vendor",
                    field="record_ids",
                    details={"record_id": record.id, "vendor_ref": record.vendor_ref},
                )
            if record.currency != line.currency:
                raise ValidationError(
                    f"Ledger record {record.id} is in {record.currency}, line is in {line.currency}",
                    field="record_ids",
                    details={"record_id": record.id, "line_id": line.id},
                )

    def reject_match(
        self,
        match_id: str,
        reason: str,
        actor: str,
        issue_type: Optional[IssueType] = None,
    ) -> Match:
        """Reject a match; the next recompute re-evaluates its lines."""
        return self.state_machine.reject_match(match_id, reason, actor, issue_type)

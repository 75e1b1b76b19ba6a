"""
Dispute & Resolution State Machine.

Owns the lifecycle of statement lines, matches and issues. Every status
change goes through the store's compare-and-set primitive inside the
statement's transaction scope, so two callers can never confirm competing
matches for the same line.

Line lifecycle:
    extracted -> matched | disputed
    disputed  -> matched | resolved
    matched   -> extracted | disputed   (confirmed match rejected)
    resolved  -> disputed               (re-dispute)

Line status and issue status are tracked independently: resolving an issue
records a business decision and leaves the line alone unless asked to close
it.
"""

from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional

import structlog

from ..errors import (
    AlreadyMatchedError,
    InvalidTransitionError,
    IssueNotOpenError,
    StatementLockedError,
    ValidationError,
)
from ..models import (
    AuditAction,
    Issue,
    IssueStatus,
    IssueType,
    LineStatus,
    Match,
    MatchedBy,
    MatchStatus,
    Statement,
    StatementLine,
)
from ..store.base import ReconciliationStore
from ..utils.audit_logger import AuditLogger
from .variance import VarianceCalculator

logger = structlog.get_logger()

LINE_TRANSITIONS: Dict[LineStatus, FrozenSet[LineStatus]] = {
    LineStatus.EXTRACTED: frozenset({LineStatus.MATCHED, LineStatus.DISPUTED}),
    LineStatus.DISPUTED: frozenset({LineStatus.MATCHED, LineStatus.RESOLVED}),
    LineStatus.MATCHED: frozenset({LineStatus.EXTRACTED, LineStatus.DISPUTED}),
    LineStatus.RESOLVED: frozenset({LineStatus.DISPUTED}),
}

SUPERSEDED_REASON = "superseded"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_actor(actor: str) -> str:
    if not actor or not str(actor).strip():
        raise ValidationError("actor is required", field="actor")
    return str(actor).strip()


class DisputeStateMachine:
    """Applies validated status transitions to lines, matches and issues."""

    def __init__(
        self,
        store: ReconciliationStore,
        audit: Optional[AuditLogger] = None,
        variance: Optional[VarianceCalculator] = None,
    ):
        self.store = store
        self.audit = audit or AuditLogger(store)
        self.variance = variance or VarianceCalculator(store, self.audit)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def ensure_mutable(self, statement_id: str) -> Statement:
        statement = self.store.get_statement(statement_id)
        if statement.is_signed_off:
            raise StatementLockedError(
                f"Statement {statement_id} is signed off",
                {"statement_id": statement_id, "status": statement.status.value},
            )
        return statement

    def confirmed_match_for(self, line_id: str) -> Optional[Match]:
        confirmed = self.store.find_matches(line_id=line_id, statuses=[MatchStatus.CONFIRMED])
        return confirmed[0] if confirmed else None

    def ensure_unmatched(self, line: StatementLine) -> None:
        existing = self.confirmed_match_for(line.id)
        if existing is not None or line.status == LineStatus.MATCHED:
            raise AlreadyMatchedError(
                f"Line {line.id} already has a confirmed match",
                {
                    "line_id": line.id,
                    "status": line.status.value,
                    "match_id": existing.id if existing else None,
                },
            )

    def ensure_records_free(self, statement: Statement, record_ids: List[str]) -> None:
        consumed = self.store.confirmed_record_ids(statement.vendor_ref) & set(record_ids)
        if consumed:
            raise AlreadyMatchedError(
                "Ledger records already belong to a confirmed match",
                {"statement_id": statement.id, "record_ids": sorted(consumed)},
            )

    # ------------------------------------------------------------------
    # Lines
    # ------------------------------------------------------------------

    def transition_line(
        self,
        line: StatementLine,
        target: LineStatus,
        actor: str,
        reason: str = "",
    ) -> StatementLine:
        """
        Move a line to ``target`` if the lifecycle allows it.

        ``line`` must be the caller's current view; a stale version raises
        ConcurrentModificationError.
        """
        if target == line.status:
            return line
        if target not in LINE_TRANSITIONS[line.status]:
            raise InvalidTransitionError(
                f"Line cannot move from {line.status.value} to {target.value}",
                {"line_id": line.id, "status": line.status.value, "target": target.value},
            )

        updated = self.store.compare_and_set_line(line.id, line.version, line.status, target)
        self.audit.record(
            AuditAction.LINE_STATUS_CHANGED,
            reason or f"Line {target.value}",
            statement_id=line.statement_id,
            entity_ids=[line.id],
            actor=actor,
            from_status=line.status,
            to_status=target,
        )
        return updated

    def dispute_line(
        self,
        line_id: str,
        issue_type: IssueType,
        description: str,
        actor: str,
    ) -> Issue:
        """Explicitly dispute a line, even when a suggestion exists."""
        actor = _require_actor(actor)
        line = self.store.get_line(line_id)

        with self.store.transaction(line.statement_id):
            self.ensure_mutable(line.statement_id)
            line = self.store.get_line(line_id)
            if line.status == LineStatus.MATCHED:
                self.ensure_unmatched(line)

            issue = self.open_issue(
                line,
                issue_type,
                description,
                actor=actor,
                detected_by=MatchedBy.MANUAL,
                reuse_open=False,
            )
            self.transition_line(line, LineStatus.DISPUTED, actor, "Line disputed")
            self.variance.refresh_statement_status(line.statement_id, actor)

        return issue

    # ------------------------------------------------------------------
    # Matches
    # ------------------------------------------------------------------

    def commit_confirmed(self, match: Match, actor: str) -> Match:
        """
        Persist a new match directly as confirmed and mark its lines matched.
        Must be called inside the statement transaction.
        """
        statement = self.store.get_statement(match.statement_id)
        lines = self._confirmable_lines(statement, match)

        match.status = MatchStatus.CONFIRMED
        match.confirmed_by = actor
        match.confirmed_at = _now()

        for line in lines:
            self.transition_line(line, LineStatus.MATCHED, actor, "Line matched")
        stored = self.store.add_match(match)

        self.audit.record(
            AuditAction.MATCH_CONFIRMED,
            f"Match confirmed ({match.match_type.value})",
            statement_id=match.statement_id,
            entity_ids=[match.id, *match.line_ids, *match.record_ids],
            actor=actor,
            to_status=MatchStatus.CONFIRMED,
            confidence=match.confidence,
        )
        self._supersede_competitors(match, actor)
        return stored

    def confirm_match(self, match_id: str, actor: str) -> Match:
        """Confirm a suggested match."""
        actor = _require_actor(actor)
        match = self.store.get_match(match_id)

        with self.store.transaction(match.statement_id):
            self.ensure_mutable(match.statement_id)
            match = self.store.get_match(match_id)
            if match.status != MatchStatus.SUGGESTED:
                raise InvalidTransitionError(
                    f"Match {match_id} is {match.status.value}, only suggestions can be confirmed",
                    {"match_id": match_id, "status": match.status.value},
                )

            statement = self.store.get_statement(match.statement_id)
            lines = self._confirmable_lines(statement, match)

            confirmed = self.store.compare_and_set_match(
                match.id,
                match.version,
                MatchStatus.SUGGESTED,
                status=MatchStatus.CONFIRMED,
                confirmed_by=actor,
                confirmed_at=_now(),
            )
            for line in lines:
                self.transition_line(line, LineStatus.MATCHED, actor, "Line matched")

            self.audit.record(
                AuditAction.MATCH_CONFIRMED,
                "Suggested match confirmed",
                statement_id=match.statement_id,
                entity_ids=[match.id, *match.line_ids],
                actor=actor,
                from_status=MatchStatus.SUGGESTED,
                to_status=MatchStatus.CONFIRMED,
            )
            self._supersede_competitors(match, actor)
            self.variance.refresh_statement_status(match.statement_id, actor)

        return confirmed

    def reject_match(
        self,
        match_id: str,
        reason: str,
        actor: str,
        issue_type: Optional[IssueType] = None,
    ) -> Match:
        """
        Reject a suggested or confirmed match.

        When a confirmed match is rejected and no other confirmed match covers
        the line, the line returns to extracted, or to disputed with a new
        issue when ``issue_type`` is given.
        """
        actor = _require_actor(actor)
        match = self.store.get_match(match_id)

        with self.store.transaction(match.statement_id):
            self.ensure_mutable(match.statement_id)
            match = self.store.get_match(match_id)
            if match.status == MatchStatus.REJECTED:
                raise InvalidTransitionError(
                    f"Match {match_id} is already rejected",
                    {"match_id": match_id, "status": match.status.value},
                )

            rejected = self._mark_rejected(match, reason, actor, AuditAction.MATCH_REJECTED)

            if match.status == MatchStatus.CONFIRMED:
                for line_id in match.line_ids:
                    if self.confirmed_match_for(line_id) is not None:
                        continue
                    line = self.store.get_line(line_id)
                    if issue_type is None:
                        self.transition_line(line, LineStatus.EXTRACTED, actor, "Confirmed match rejected")
                    else:
                        self.open_issue(
                            line,
                            issue_type,
                            reason or "Confirmed match rejected",
                            actor=actor,
                            detected_by=MatchedBy.MANUAL,
                            reuse_open=False,
                            match_id=match.id,
                        )
                        self.transition_line(line, LineStatus.DISPUTED, actor, "Confirmed match rejected")

            self.variance.refresh_statement_status(match.statement_id, actor)

        return rejected

    def supersede_suggestions(
        self,
        line_id: str,
        actor: str,
        keep_id: Optional[str] = None,
    ) -> List[Match]:
        """Reject every open suggestion for a line except ``keep_id``."""
        superseded = []
        for suggestion in self.store.find_matches(line_id=line_id, statuses=[MatchStatus.SUGGESTED]):
            if suggestion.id == keep_id:
                continue
            superseded.append(
                self._mark_rejected(suggestion, SUPERSEDED_REASON, actor, AuditAction.MATCH_SUPERSEDED)
            )
        return superseded

    def _confirmable_lines(self, statement: Statement, match: Match) -> List[StatementLine]:
        lines = [self.store.get_line(line_id) for line_id in match.line_ids]
        for line in lines:
            self.ensure_unmatched(line)
            self._ensure_can_match(line)
        self.ensure_records_free(statement, match.record_ids)
        return lines

    def _supersede_competitors(self, match: Match, actor: str) -> None:
        """Reject suggestions for the same lines or the now consumed records."""
        records = set(match.record_ids)
        for suggestion in self.store.find_matches(
            statement_id=match.statement_id, statuses=[MatchStatus.SUGGESTED],
        ):
            if suggestion.id == match.id:
                continue
            if set(suggestion.line_ids) & set(match.line_ids) or set(suggestion.record_ids) & records:
                self._mark_rejected(suggestion, SUPERSEDED_REASON, actor, AuditAction.MATCH_SUPERSEDED)

    def _mark_rejected(self, match: Match, reason: str, actor: str, action: AuditAction) -> Match:
        rejected = self.store.compare_and_set_match(
            match.id,
            match.version,
            match.status,
            status=MatchStatus.REJECTED,
            rejected_by=actor,
            rejected_at=_now(),
            rejection_reason=reason,
        )
        self.audit.record(
            action,
            f"Match rejected: {reason}" if reason else "Match rejected",
            statement_id=match.statement_id,
            entity_ids=[match.id, *match.line_ids],
            actor=actor,
            from_status=match.status,
            to_status=MatchStatus.REJECTED,
        )
        return rejected

    def _ensure_can_match(self, line: StatementLine) -> None:
        if LineStatus.MATCHED not in LINE_TRANSITIONS[line.status]:
            raise InvalidTransitionError(
                f"Line {line.id} is {line.status.value} and cannot be matched",
                {"line_id": line.id, "status": line.status.value},
            )

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def open_issue(
        self,
        line: StatementLine,
        issue_type: IssueType,
        description: str,
        actor: str = "system",
        detected_by: MatchedBy = MatchedBy.SYSTEM,
        reuse_open: bool = True,
        **details,
    ) -> Issue:
        """
        Open an issue for a line. With ``reuse_open`` an already open issue
        for the line is returned instead of creating a duplicate.
        """
        if reuse_open:
            existing = self.store.find_issues(
                line.statement_id, line_id=line.id, statuses=[IssueStatus.OPEN],
            )
            if existing:
                return existing[0]

        issue = self.store.add_issue(Issue(
            statement_id=line.statement_id,
            line_id=line.id,
            issue_type=issue_type,
            description=description,
            details=details,
            detected_by=detected_by,
            created_by=actor,
        ))
        self.audit.record(
            AuditAction.ISSUE_OPENED,
            f"Issue opened: {issue_type.value}",
            statement_id=line.statement_id,
            entity_ids=[issue.id, line.id],
            actor=actor,
            to_status=IssueStatus.OPEN,
        )
        return issue

    def resolve_issue(
        self,
        issue_id: str,
        resolution_notes: str,
        actor: str,
        close_line: bool = False,
    ) -> Issue:
        """
        Resolve an open issue.

        With ``close_line`` a disputed line without other open issues moves
        to resolved and stops counting towards the variance.
        """
        actor = _require_actor(actor)
        issue = self.store.get_issue(issue_id)

        with self.store.transaction(issue.statement_id):
            self.ensure_mutable(issue.statement_id)
            resolved = self._close_issue(self.store.get_issue(issue_id), resolution_notes, actor)

            if close_line:
                line = self.store.get_line(issue.line_id)
                others = self.store.find_issues(
                    issue.statement_id, line_id=line.id, statuses=[IssueStatus.OPEN],
                )
                if line.status == LineStatus.DISPUTED and not others:
                    self.transition_line(line, LineStatus.RESOLVED, actor, "Dispute resolved")

            self.variance.refresh_statement_status(issue.statement_id, actor)

        return resolved

    def auto_resolve_system_issues(self, line_id: str, statement_id: str, notes: str) -> List[Issue]:
        """Close open system-detected issues once the line has been matched."""
        resolved = []
        for issue in self.store.find_issues(statement_id, line_id=line_id, statuses=[IssueStatus.OPEN]):
            if issue.detected_by == MatchedBy.SYSTEM:
                resolved.append(self._close_issue(issue, notes, "system"))
        return resolved

    def _close_issue(self, issue: Issue, notes: str, actor: str) -> Issue:
        if not issue.is_open:
            raise IssueNotOpenError(
                f"Issue {issue.id} is {issue.status.value}",
                {"issue_id": issue.id, "status": issue.status.value, "line_id": issue.line_id},
            )

        resolved = self.store.compare_and_set_issue(
            issue.id,
            issue.version,
            IssueStatus.OPEN,
            status=IssueStatus.RESOLVED,
            resolution_notes=notes,
            resolved_by=actor,
            resolved_at=_now(),
        )
        self.audit.record(
            AuditAction.ISSUE_RESOLVED,
            "Issue resolved",
            statement_id=issue.statement_id,
            entity_ids=[issue.id, issue.line_id],
            actor=actor,
            from_status=IssueStatus.OPEN,
            to_status=IssueStatus.RESOLVED,
            notes=notes,
        )
        return resolved

"""
Sign-off Gate - records the immutable acknowledgement of a statement.

The variance and the open issues are re-validated inside the statement
transaction that writes the acknowledgement, so no line can change between
the check and the commit.
"""

from decimal import Decimal
from typing import Optional

import structlog

from ..config import Settings, get_settings
from ..errors import (
    OpenIssuesRemainError,
    ReconciliationError,
    StatementLockedError,
    ValidationError,
    VarianceNotZeroError,
)
from ..models import (
    Acknowledgement,
    AcknowledgementType,
    AuditAction,
    IssueStatus,
    StatementStatus,
    VarianceBreakdown,
)
from ..store.base import ReconciliationStore
from ..utils.audit_logger import AuditLogger
from .variance import VarianceCalculator

logger = structlog.get_logger()


class SignOffGate:
    """Validates sign-off preconditions and commits the acknowledgement."""

    def __init__(
        self,
        store: ReconciliationStore,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLogger] = None,
        variance: Optional[VarianceCalculator] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.audit = audit or AuditLogger(store)
        self.variance = variance or VarianceCalculator(store, self.audit)

    def sign_off(
        self,
        statement_id: str,
        actor: str,
        acknowledgement_type: AcknowledgementType = AcknowledgementType.FULL,
        notes: Optional[str] = None,
    ) -> Acknowledgement:
        """
        Sign off a statement.

        Args:
            statement_id: Statement to acknowledge
            actor: Person accepting the statement
            acknowledgement_type: FULL requires the variance within epsilon,
                PARTIAL only requires it within the partial limit when one is set
            notes: Free text stored with the acknowledgement

        Returns:
            The stored Acknowledgement

        Raises:
            StatementLockedError: already signed off
            OpenIssuesRemainError: at least one issue is open
            VarianceNotZeroError: variance outside the allowed limit
        """
        if not actor or not str(actor).strip():
            raise ValidationError("actor is required", field="actor")

        with self.store.transaction(statement_id):
            statement = self.store.get_statement(statement_id)
            if statement.is_signed_off:
                raise StatementLockedError(
                    f"Statement {statement_id} is already signed off",
                    {"statement_id": statement_id, "status": statement.status.value},
                )

            breakdown = self.variance.compute(statement_id)
            try:
                self._check_preconditions(statement_id, breakdown, acknowledgement_type)
            except ReconciliationError as e:
                self.audit.record(
                    AuditAction.SIGNOFF_REFUSED,
                    e.message,
                    statement_id=statement_id,
                    entity_ids=[statement_id],
                    actor=actor,
                    code=e.code,
                    net_variance=str(breakdown.net_variance),
                )
                raise

            acknowledgement = self.store.add_acknowledgement(Acknowledgement(
                statement_id=statement_id,
                actor=actor,
                acknowledgement_type=acknowledgement_type,
                net_variance=breakdown.net_variance,
                total_lines=breakdown.total_lines,
                matched_lines=breakdown.matched_lines,
                outstanding_lines=breakdown.outstanding_lines,
                notes=notes,
            ))
            self.store.compare_and_set_statement(
                statement_id, statement.version, statement.status, StatementStatus.SIGNED_OFF,
            )
            self.audit.record(
                AuditAction.SIGNED_OFF,
                f"Statement signed off ({acknowledgement_type.value})",
                statement_id=statement_id,
                entity_ids=[statement_id, acknowledgement.id],
                actor=actor,
                from_status=statement.status,
                to_status=StatementStatus.SIGNED_OFF,
                net_variance=str(breakdown.net_variance),
            )

        return acknowledgement

    def _check_preconditions(
        self,
        statement_id: str,
        breakdown: VarianceBreakdown,
        acknowledgement_type: AcknowledgementType,
    ) -> None:
        limit = self._variance_limit(acknowledgement_type)
        if limit is not None and not breakdown.is_within(limit):
            raise VarianceNotZeroError(
                f"Net variance {breakdown.net_variance} exceeds {limit}",
                {
                    "statement_id": statement_id,
                    "net_variance": str(breakdown.net_variance),
                    "limit": str(limit),
                    "acknowledgement_type": acknowledgement_type.value,
                },
            )

        open_issues = self.store.find_issues(statement_id, statuses=[IssueStatus.OPEN])
        if open_issues:
            raise OpenIssuesRemainError(
                f"{len(open_issues)} open issue(s) remain",
                {
                    "statement_id": statement_id,
                    "issue_ids": [i.id for i in open_issues],
                },
            )

    def _variance_limit(self, acknowledgement_type: AcknowledgementType) -> Optional[Decimal]:
        if acknowledgement_type == AcknowledgementType.FULL:
            return self.settings.signoff_epsilon
        return self.settings.partial_variance_limit

"""
Variance Calculator - residual monetary difference of a statement.

    net_variance = opening_balance + sum(amount of extracted/disputed lines)

Matched and resolved lines count as reconciled. The figure is computed from
the store on every call and never cached.
"""

from decimal import Decimal
from typing import Optional

import structlog

from ..models import (
    AuditAction,
    IssueStatus,
    LineStatus,
    StatementStatus,
    VarianceBreakdown,
)
from ..store.base import ReconciliationStore
from ..utils.audit_logger import AuditLogger

logger = structlog.get_logger()

ZERO = Decimal("0.00")


class VarianceCalculator:
    """Aggregates statement lines into a variance breakdown."""

    def __init__(self, store: ReconciliationStore, audit: Optional[AuditLogger] = None):
        self.store = store
        self.audit = audit or AuditLogger(store)

    def compute(self, statement_id: str) -> VarianceBreakdown:
        """
        Compute the variance breakdown of a statement.

        Takes no transaction lock, so readers are never blocked behind a
        running recompute.
        """
        statement = self.store.get_statement(statement_id)
        lines = self.store.find_lines(statement_id)

        breakdown = VarianceBreakdown(
            statement_id=statement_id,
            opening_balance=statement.opening_balance,
            total_lines=len(lines),
        )

        for line in lines:
            if line.status == LineStatus.MATCHED:
                breakdown.total_matched += line.amount
                breakdown.matched_lines += 1
            elif line.status == LineStatus.RESOLVED:
                breakdown.total_resolved += line.amount
                breakdown.resolved_lines += 1
            else:
                breakdown.total_outstanding += line.amount
                breakdown.outstanding_lines += 1

        breakdown.net_variance = statement.opening_balance + breakdown.total_outstanding
        return breakdown

    def refresh_statement_status(
        self,
        statement_id: str,
        actor: str = "system",
    ) -> VarianceBreakdown:
        """
        Recompute variance and move the statement between open and reconciled.

        A statement is reconciled when its variance is exactly zero and no
        issue is open. Signed-off statements are left untouched.
        """
        with self.store.transaction(statement_id):
            breakdown = self.compute(statement_id)
            statement = self.store.get_statement(statement_id)
            if statement.is_signed_off:
                return breakdown

            open_issues = self.store.find_issues(statement_id, statuses=[IssueStatus.OPEN])
            reconciled = breakdown.net_variance == ZERO and not open_issues
            target = StatementStatus.RECONCILED if reconciled else StatementStatus.OPEN

            if statement.status != target:
                self.store.compare_and_set_statement(
                    statement_id, statement.version, statement.status, target,
                )
                self.audit.record(
                    AuditAction.STATEMENT_STATUS_CHANGED,
                    f"Statement {target.value}",
                    statement_id=statement_id,
                    entity_ids=[statement_id],
                    actor=actor,
                    from_status=statement.status,
                    to_status=target,
                    net_variance=str(breakdown.net_variance),
                )

        return breakdown

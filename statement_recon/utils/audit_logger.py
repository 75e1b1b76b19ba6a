"""
Audit logging for reconciliation decisions.
"""

from collections import Counter
from typing import List, Optional

import structlog

from ..models import AuditAction, AuditEntry
from ..store.base import ReconciliationStore

logger = structlog.get_logger()


class AuditLogger:
    """
    Audit trail of state transitions and sign-offs.
    Entries are appended to the store and mirrored to structlog.
    """

    def __init__(self, store: ReconciliationStore):
        self.store = store

    def log(self, entry: AuditEntry) -> None:
        """Add an audit entry."""
        self.store.append_audit(entry)

        logger.info(
            entry.message,
            action=entry.action.value,
            actor=entry.actor,
            statement_id=entry.statement_id,
            entity_ids=entry.entity_ids,
            from_status=entry.from_status,
            to_status=entry.to_status,
        )

    def record(
        self,
        action: AuditAction,
        message: str,
        statement_id: Optional[str] = None,
        entity_ids: Optional[List[str]] = None,
        actor: str = "system",
        from_status=None,
        to_status=None,
        **details,
    ) -> AuditEntry:
        """Build and log an entry; enum statuses are stored by value."""
        entry = AuditEntry(
            action=action,
            actor=actor,
            statement_id=statement_id,
            entity_ids=list(entity_ids or []),
            from_status=getattr(from_status, "value", from_status),
            to_status=getattr(to_status, "value", to_status),
            message=message,
            details=details,
        )
        self.log(entry)
        return entry

    def get_entries(
        self,
        statement_id: Optional[str] = None,
        action_filter: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[AuditEntry]:
        """Get filtered audit entries."""
        entries = self.store.audit_entries(statement_id)

        if action_filter:
            entries = [e for e in entries if e.action.value == action_filter]

        if entity_id:
            entries = [e for e in entries if entity_id in e.entity_ids]

        return entries

    def summary(self, statement_id: Optional[str] = None) -> dict:
        """Get summary statistics of audit log."""
        entries = self.store.audit_entries(statement_id)
        action_counts = Counter(e.action.value for e in entries)
        actors = Counter(e.actor for e in entries)

        return {
            "total_entries": len(entries),
            "action_counts": dict(action_counts),
            "actor_counts": dict(actors),
        }

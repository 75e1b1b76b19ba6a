"""
Error taxonomy for the reconciliation core.

Every error carries a stable ``code`` and a ``details`` dict with the ids and
current status the caller needs to decide between retrying and surfacing the
failure to a user. Only ``ConcurrentModificationError`` is retryable as-is.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base class for all errors raised by the reconciliation core."""

    code = "RECONCILIATION_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a serializable payload."""
        payload = {
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.details:
            payload["details"] = self.details
        return {"error": payload}


class ValidationError(ReconciliationError):
    """Malformed identifiers or missing required fields. Never retried."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, {"field": field, **(details or {})})
        self.field = field


class NotFoundError(ReconciliationError):
    """Referenced statement, line, record, match or issue is absent."""

    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            f"{resource} not found: {resource_id}",
            {"resource": resource, "id": resource_id},
        )
        self.resource = resource
        self.resource_id = resource_id


class AlreadyMatchedError(ReconciliationError):
    """The line already has a confirmed match; reject it first."""

    code = "ALREADY_MATCHED"


class IssueNotOpenError(ReconciliationError):
    """The issue is not open and cannot be resolved again."""

    code = "ISSUE_NOT_OPEN"


class InvalidTransitionError(ReconciliationError):
    """A status transition that the lifecycle does not allow."""

    code = "INVALID_TRANSITION"


class StatementLockedError(ReconciliationError):
    """The statement is signed off and no longer accepts changes."""

    code = "STATEMENT_LOCKED"


class ConcurrentModificationError(ReconciliationError):
    """Optimistic-lock conflict. Safe to retry the whole operation."""

    code = "CONCURRENT_MODIFICATION"
    retryable = True


class VarianceNotZeroError(ReconciliationError):
    """Sign-off refused because the variance exceeds the allowed epsilon."""

    code = "VARIANCE_NOT_ZERO"


class OpenIssuesRemainError(ReconciliationError):
    """Sign-off refused because issues are still open."""

    code = "OPEN_ISSUES_REMAIN"

"""Storage interfaces and in-memory implementations."""

from .base import (
    CandidateFilter,
    LedgerQuery,
    LineFilter,
    LineQuery,
    ReconciliationStore,
)
from .memory import InMemoryLedger, InMemoryReconciliationStore

__all__ = [
    "CandidateFilter",
    "LedgerQuery",
    "LineFilter",
    "LineQuery",
    "ReconciliationStore",
    "InMemoryLedger",
    "InMemoryReconciliationStore",
]

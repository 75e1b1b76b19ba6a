"""Reconciliation engine components."""

from .candidate_finder import CandidateFinder, CandidateSet, SearchScope
from .scorer import MatchScorer, ScoredCandidate
from .variance import VarianceCalculator
from .state_machine import DisputeStateMachine, LINE_TRANSITIONS
from .orchestrator import MatchingCapabilities, MatchingOrchestrator
from .signoff import SignOffGate

__all__ = [
    "CandidateFinder",
    "CandidateSet",
    "SearchScope",
    "MatchScorer",
    "ScoredCandidate",
    "VarianceCalculator",
    "DisputeStateMachine",
    "LINE_TRANSITIONS",
    "MatchingCapabilities",
    "MatchingOrchestrator",
    "SignOffGate",
]

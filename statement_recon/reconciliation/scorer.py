"""
Match Scorer - ranks candidate sets for a statement line.

Confidence is a weighted blend of document-number similarity, amount delta
relative to the tolerance and date delta relative to the window, minus a
penalty for every extra record in a split match. Ranking is deterministic so
that repeated recomputes pick the same candidate.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

import structlog

from ..config import Settings, get_settings
from ..models import LedgerRecord, MatchTier, MatchType, StatementLine
from ..utils.text_similarity import DocumentSimilarity
from .candidate_finder import CandidateSet

logger = structlog.get_logger()

DOCUMENT_WEIGHT = 0.55
AMOUNT_WEIGHT = 0.35
DATE_WEIGHT = 0.10

# Applied when either side lacks a document number
NO_DOCUMENT_FACTOR = 0.8

TIER_MATCH_TYPES = {
    MatchTier.EXACT: MatchType.EXACT,
    MatchTier.DOCUMENT_TOLERANT: MatchType.AMOUNT_TOLERANT,
    MatchTier.DATE_WINDOW: MatchType.FUZZY_DATE,
    MatchTier.AGGREGATE: MatchType.SPLIT,
}


@dataclass
class ScoredCandidate:
    """A candidate set with its confidence and deltas."""
    candidate: CandidateSet
    confidence: float
    match_type: MatchType
    amount_delta: Decimal
    date_delta_days: Optional[int]
    document_score: Optional[float] = None
    amount_score: float = 0.0
    date_score: Optional[float] = None

    @property
    def records(self) -> List[LedgerRecord]:
        return self.candidate.records

    @property
    def record_ids(self) -> List[str]:
        return self.candidate.record_ids

    @property
    def tier(self) -> MatchTier:
        return self.candidate.tier

    def rank_key(self):
        """Highest confidence, then fewer records, smaller delta, older records."""
        return (
            -self.confidence,
            self.candidate.cardinality,
            abs(self.amount_delta),
            [r.sort_key for r in self.candidate.records],
        )


class MatchScorer:
    """Scores and ranks candidate sets from one tier."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.window_days = self.settings.date_window_days
        self.split_penalty = self.settings.split_penalty
        self.similarity = DocumentSimilarity()

    def rank(
        self,
        line: StatementLine,
        candidates: Sequence[CandidateSet],
    ) -> List[ScoredCandidate]:
        """
        Score every candidate set and sort best first.

        Args:
            line: Statement line being matched
            candidates: Non-empty candidate sets from a single tier

        Returns:
            ScoredCandidates, highest confidence first
        """
        if not candidates:
            raise ValueError("rank() requires at least one candidate set")

        scored = [self.score(line, candidate) for candidate in candidates]
        scored.sort(key=lambda s: s.rank_key())

        logger.debug(
            "Candidates ranked",
            line_id=line.id,
            tier=candidates[0].tier.name,
            best=scored[0].confidence,
            count=len(scored),
        )
        return scored

    def score(self, line: StatementLine, candidate: CandidateSet) -> ScoredCandidate:
        amount_delta = candidate.total - line.amount
        date_delta = self.date_delta(line, candidate.records)

        document_score = self.similarity.mean_similarity(
            line.document_number,
            [r.document_number for r in candidate.records],
        )
        amount_score = self._amount_score(amount_delta, line.amount)
        date_score = self._date_score(date_delta)

        # Unknown components are dropped and the remaining weights renormalized
        components = [
            (DOCUMENT_WEIGHT, document_score),
            (AMOUNT_WEIGHT, amount_score),
            (DATE_WEIGHT, date_score),
        ]
        known = [(w, s) for w, s in components if s is not None]
        base = sum(w * s for w, s in known) / sum(w for w, _ in known)
        if document_score is None:
            base *= NO_DOCUMENT_FACTOR

        base -= self.split_penalty * max(candidate.cardinality - 1, 0)
        confidence = round(min(max(base, 0.0), 1.0), 4)

        return ScoredCandidate(
            candidate=candidate,
            confidence=confidence,
            match_type=TIER_MATCH_TYPES[candidate.tier],
            amount_delta=amount_delta,
            date_delta_days=date_delta,
            document_score=document_score,
            amount_score=amount_score,
            date_score=date_score,
        )

    def _amount_score(self, delta: Decimal, amount: Decimal) -> float:
        delta = abs(delta)
        if delta == 0:
            return 1.0
        tolerance = self.settings.allowed_delta(amount)
        if tolerance <= 0 or delta > tolerance:
            return 0.0
        return 1.0 - 0.5 * float(delta / tolerance)

    def _date_score(self, days: Optional[int]) -> Optional[float]:
        if days is None:
            return None
        if self.window_days <= 0:
            return 1.0 if days == 0 else 0.0
        return max(0.0, 1.0 - days / (2 * self.window_days))

    def date_delta(self, line: StatementLine, records: Sequence[LedgerRecord]) -> Optional[int]:
        """Largest distance in days between the line and any dated record."""
        if line.transaction_date is None:
            return None
        deltas = [
            abs((line.transaction_date - r.record_date).days)
            for r in records
            if r.record_date is not None
        ]
        if not deltas:
            return None
        return max(deltas)

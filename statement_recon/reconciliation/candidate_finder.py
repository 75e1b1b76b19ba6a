"""
Candidate Finder - looks up ledger records that could explain a statement line.

Each tier is a progressively looser search:
1. EXACT: same document number, same amount, same currency
2. DOCUMENT_TOLERANT: same document number, amount within tolerance
3. DATE_WINDOW: any document, amount within tolerance, date within window
4. AGGREGATE: 2..N records whose amounts sum to the line amount

Finding nothing is an expected outcome and yields an empty list.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from itertools import combinations
from typing import List, Optional, Set

import structlog

from ..config import Settings, get_settings
from ..models import LedgerRecord, MatchTier, StatementLine
from ..store.base import CandidateFilter, LedgerQuery

logger = structlog.get_logger()


@dataclass
class SearchScope:
    """Vendor (and optionally company) whose ledger records may match."""
    vendor_ref: str
    company_ref: Optional[str] = None


@dataclass
class CandidateSet:
    """One or more ledger records proposed together for a line."""
    tier: MatchTier
    records: List[LedgerRecord] = field(default_factory=list)

    @property
    def record_ids(self) -> List[str]:
        return [r.id for r in self.records]

    @property
    def total(self) -> Decimal:
        return sum((r.amount for r in self.records), Decimal("0.00"))

    @property
    def cardinality(self) -> int:
        return len(self.records)


class CandidateFinder:
    """Runs one search tier at a time against the ledger."""

    def __init__(self, ledger: LedgerQuery, settings: Optional[Settings] = None):
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.window = timedelta(days=self.settings.date_window_days)
        self.max_split_size = self.settings.max_split_size
        self.max_pool = self.settings.max_aggregate_pool

    def find(
        self,
        line: StatementLine,
        scope: SearchScope,
        tier: MatchTier,
        excluded_record_ids: Optional[Set[str]] = None,
    ) -> List[CandidateSet]:
        """
        Find candidate sets for a line in a single tier.

        Args:
            line: Statement line to explain
            scope: Vendor/company to search
            tier: Which search strategy to run
            excluded_record_ids: Records already consumed by confirmed matches

        Returns:
            Candidate sets in ledger creation order (possibly empty)
        """
        excluded = set(excluded_record_ids or ())

        if tier == MatchTier.EXACT:
            candidates = self._find_exact(line, scope, excluded)
        elif tier == MatchTier.DOCUMENT_TOLERANT:
            candidates = self._find_document_tolerant(line, scope, excluded)
        elif tier == MatchTier.DATE_WINDOW:
            candidates = self._find_date_window(line, scope, excluded)
        else:
            candidates = self._find_aggregate(line, scope, excluded)

        logger.debug(
            "Candidate search",
            line_id=line.id,
            tier=tier.name,
            candidates=len(candidates),
        )
        return candidates

    def _base_filter(self, line: StatementLine, scope: SearchScope, excluded: Set[str]) -> CandidateFilter:
        return CandidateFilter(
            company_ref=scope.company_ref,
            currency=line.currency,
            exclude_ids=excluded,
        )

    def _find_exact(self, line, scope, excluded) -> List[CandidateSet]:
        if not line.document_number:
            return []

        filters = self._base_filter(line, scope, excluded)
        filters.document_number = line.document_number
        filters.amount_min = line.amount
        filters.amount_max = line.amount

        records = self.ledger.find_candidates(scope.vendor_ref, filters)
        return [CandidateSet(MatchTier.EXACT, [r]) for r in records]

    def _find_document_tolerant(self, line, scope, excluded) -> List[CandidateSet]:
        if not line.document_number:
            return []

        filters = self._base_filter(line, scope, excluded)
        filters.document_number = line.document_number
        tolerance = self.settings.allowed_delta(line.amount)
        filters.amount_min = line.amount - tolerance
        filters.amount_max = line.amount + tolerance

        records = self.ledger.find_candidates(scope.vendor_ref, filters)
        # Exact amounts belong to tier 1
        return [
            CandidateSet(MatchTier.DOCUMENT_TOLERANT, [r])
            for r in records
            if r.amount != line.amount
        ]

    def _find_date_window(self, line, scope, excluded) -> List[CandidateSet]:
        if line.transaction_date is None:
            return []

        filters = self._base_filter(line, scope, excluded)
        filters.exclude_document_number = line.document_number
        tolerance = self.settings.allowed_delta(line.amount)
        filters.amount_min = line.amount - tolerance
        filters.amount_max = line.amount + tolerance
        filters.date_from = line.transaction_date - self.window
        filters.date_to = line.transaction_date + self.window

        records = self.ledger.find_candidates(scope.vendor_ref, filters)
        return [CandidateSet(MatchTier.DATE_WINDOW, [r]) for r in records]

    def _find_aggregate(self, line, scope, excluded) -> List[CandidateSet]:
        if line.amount == 0 or self.max_split_size < 2:
            return []

        filters = self._base_filter(line, scope, excluded)
        if line.transaction_date is not None:
            filters.date_from = line.transaction_date - self.window
            filters.date_to = line.transaction_date + self.window

        positive = line.amount > 0
        ceiling = abs(line.amount) + self.settings.allowed_delta(line.amount)

        pool = [
            r for r in self.ledger.find_candidates(scope.vendor_ref, filters)
            if r.amount != 0
            and (r.amount > 0) == positive
            and abs(r.amount) <= ceiling
        ]
        pool.sort(key=lambda r: (self._days_apart(line, r), r.sort_key))
        pool = pool[: self.max_pool]

        if len(pool) < 2:
            return []

        candidates = []
        max_size = min(self.max_split_size, len(pool))
        for size in range(2, max_size + 1):
            for combo in combinations(pool, size):
                total = sum((r.amount for r in combo), Decimal("0.00"))
                if self.settings.amount_within_tolerance(total - line.amount, line.amount):
                    records = sorted(combo, key=lambda r: r.sort_key)
                    candidates.append(CandidateSet(MatchTier.AGGREGATE, records))

        return candidates

    def _days_apart(self, line: StatementLine, record: LedgerRecord) -> int:
        if line.transaction_date is None or record.record_date is None:
            return 0
        return abs((line.transaction_date - record.record_date).days)

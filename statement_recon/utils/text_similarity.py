"""
Document-number similarity using rapidfuzz.
"""

from typing import Optional, Sequence

from rapidfuzz.distance import Levenshtein

from ..ingestion.normalizer import canonical_document_number, normalize_document_number


class DocumentSimilarity:
    """
    Similarity between vendor and internal document numbers.

    Exact (trimmed, case-insensitive) equality scores 1.0; anything else is
    the normalized Levenshtein similarity of the punctuation-free forms, so
    "INV 100" and "INV-100" compare as equal.
    """

    def similarity(self, left: Optional[str], right: Optional[str]) -> Optional[float]:
        """
        Score two document numbers in [0, 1].

        Returns None when either side has no document number, so callers can
        drop the component instead of treating it as a mismatch.
        """
        a = canonical_document_number(left)
        b = canonical_document_number(right)
        if not a or not b:
            return None
        if a == b:
            return 1.0
        loose_a = normalize_document_number(a) or a
        loose_b = normalize_document_number(b) or b
        return float(Levenshtein.normalized_similarity(loose_a, loose_b))

    def mean_similarity(
        self,
        document: Optional[str],
        others: Sequence[Optional[str]],
    ) -> Optional[float]:
        """Average similarity against several documents, ignoring blanks."""
        scores = [
            s for s in (self.similarity(document, other) for other in others)
            if s is not None
        ]
        if not scores:
            return None
        return sum(scores) / len(scores)

"""Normalization of extracted statement rows."""

from .normalizer import (
    LineNormalizer,
    normalize_line,
    normalize_document_number,
    canonical_document_number,
)

__all__ = [
    "LineNormalizer",
    "normalize_line",
    "normalize_document_number",
    "canonical_document_number",
]

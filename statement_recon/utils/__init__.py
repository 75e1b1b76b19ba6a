"""Utility modules."""

from .text_similarity import DocumentSimilarity
from .audit_logger import AuditLogger

__all__ = ["DocumentSimilarity", "AuditLogger"]

"""Vendor statement of account reconciliation."""

__version__ = "0.1.0"

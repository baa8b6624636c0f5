"""Plaid transaction ingestion pipeline and demo proxy."""

__version__ = "0.1.0"

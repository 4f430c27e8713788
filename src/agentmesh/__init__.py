"""Ingest AI coding tool session transcripts into one canonical, searchable store."""

__version__ = "0.1.0"

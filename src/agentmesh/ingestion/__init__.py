"""Transcript ingestion: adapters, validation, persistence and orchestration."""

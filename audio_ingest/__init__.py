"""Resilient audio ingestion: compression, transcription and transcript chat."""

__version__ = "0.1.0"

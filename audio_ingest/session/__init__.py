"""Caller-facing ingestion session."""

from audio_ingest.session.session import ChatMessage, IngestionSession, UploadSession

__all__ = ["ChatMessage", "IngestionSession", "UploadSession"]

"""Remote inference endpoints and the resilient call wrapper."""

from audio_ingest.remote.caller import CallAttempt, CallOutcome, ResilientCaller
from audio_ingest.remote.registry import get_chat_endpoint, get_transcription_endpoint

__all__ = [
    "CallAttempt",
    "CallOutcome",
    "ResilientCaller",
    "get_chat_endpoint",
    "get_transcription_endpoint",
]

"""Environment-driven configuration for the ingestion pipeline.

Reads the same AZURE_OPENAI_* variables the hosted deployment uses, plus
INGEST_* overrides. The remote upload ceiling differs between deployment
targets, so it is configuration rather than a constant.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

MEGABYTE = 1024 * 1024

DEFAULT_PROVIDER = "azure-openai"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_AZURE_API_VERSION = "2024-02-15-preview"
DEFAULT_MAX_UPLOAD_MB = 25
DEFAULT_MAX_INPUT_MB = 500
DEFAULT_TRANSCRIPTION_TIMEOUT_SECONDS = 30.0
DEFAULT_CHAT_TIMEOUT_SECONDS = 10.0


@dataclass
class IngestionConfig:
    """Settings shared by the session façade, orchestrator and callers."""

    provider: str = DEFAULT_PROVIDER
    api_key: str = ""
    endpoint: str = ""
    transcription_model: str = "whisper-1"
    chat_model: str = "gpt-4o-mini"
    api_version: str = DEFAULT_AZURE_API_VERSION
    language: str = "en"
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_MB * MEGABYTE
    max_input_bytes: int = DEFAULT_MAX_INPUT_MB * MEGABYTE
    transcription_timeout: float = DEFAULT_TRANSCRIPTION_TIMEOUT_SECONDS
    chat_timeout: float = DEFAULT_CHAT_TIMEOUT_SECONDS
    engine_provider: str = "ffmpeg"
    engine_locator: str = "ffmpeg"

    def __post_init__(self) -> None:
        if self.max_upload_bytes <= 0:
            raise ValueError("max_upload_bytes must be positive")
        if self.max_input_bytes < self.max_upload_bytes:
            raise ValueError("max_input_bytes must not be below max_upload_bytes")
        if self.transcription_timeout <= 0 or self.chat_timeout <= 0:
            raise ValueError("call timeouts must be positive")

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> IngestionConfig:
        """Build a config from environment variables.

        Args:
            env: Mapping to read instead of os.environ (used by tests).

        Returns:
            Populated IngestionConfig.
        """
        env = dict(os.environ) if env is None else env
        provider = env.get("INGEST_PROVIDER", DEFAULT_PROVIDER)

        if provider == "azure-openai":
            api_key = env.get("AZURE_OPENAI_API_KEY", "")
            endpoint = env.get("AZURE_OPENAI_ENDPOINT", "")
            transcription_model = env.get(
                "AZURE_OPENAI_WHISPER_DEPLOYMENT", "whisper-1"
            )
            chat_model = env.get("AZURE_OPENAI_GPT_DEPLOYMENT", "gpt-4o-mini")
        else:
            api_key = env.get("OPENAI_API_KEY", "")
            endpoint = env.get("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL)
            transcription_model = env.get("INGEST_TRANSCRIPTION_MODEL", "whisper-1")
            chat_model = env.get("INGEST_CHAT_MODEL", "gpt-4o-mini")

        return cls(
            provider=provider,
            api_key=api_key,
            endpoint=endpoint,
            transcription_model=transcription_model,
            chat_model=chat_model,
            api_version=env.get("AZURE_OPENAI_API_VERSION", DEFAULT_AZURE_API_VERSION),
            language=env.get("INGEST_LANGUAGE", "en"),
            max_upload_bytes=int(
                float(env.get("INGEST_MAX_UPLOAD_MB", DEFAULT_MAX_UPLOAD_MB)) * MEGABYTE
            ),
            max_input_bytes=int(
                float(env.get("INGEST_MAX_INPUT_MB", DEFAULT_MAX_INPUT_MB)) * MEGABYTE
            ),
            transcription_timeout=float(
                env.get(
                    "INGEST_TRANSCRIPTION_TIMEOUT",
                    DEFAULT_TRANSCRIPTION_TIMEOUT_SECONDS,
                )
            ),
            chat_timeout=float(
                env.get("INGEST_CHAT_TIMEOUT", DEFAULT_CHAT_TIMEOUT_SECONDS)
            ),
            engine_provider=env.get("TRANSCODE_ENGINE", "ffmpeg"),
            engine_locator=env.get("FFMPEG_PATH", "ffmpeg"),
        )

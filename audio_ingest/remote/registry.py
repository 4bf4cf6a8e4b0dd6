"""Remote endpoint registry with configuration-driven provider selection.

Maps provider names to endpoint classes. Both OpenAI flavours share the
same classes and differ only in their OpenAIConnection.
"""

import httpx

from audio_ingest.config import IngestionConfig
from audio_ingest.remote.interface import ChatRequest, RemoteEndpoint, TranscriptionRequest
from audio_ingest.remote.openai import (
    OpenAIChatEndpoint,
    OpenAIConnection,
    OpenAITranscriptionEndpoint,
)

TRANSCRIPTION_ENDPOINTS: dict[str, type[OpenAITranscriptionEndpoint]] = {
    "openai": OpenAITranscriptionEndpoint,
    "azure-openai": OpenAITranscriptionEndpoint,
}

CHAT_ENDPOINTS: dict[str, type[OpenAIChatEndpoint]] = {
    "openai": OpenAIChatEndpoint,
    "azure-openai": OpenAIChatEndpoint,
}


def _connection(config: IngestionConfig) -> OpenAIConnection:
    return OpenAIConnection(
        provider=config.provider,
        api_key=config.api_key,
        base_url=config.endpoint,
        api_version=config.api_version,
    )


def _lookup(registry: dict, provider: str) -> type:
    endpoint_cls = registry.get(provider)
    if not endpoint_cls:
        available = ", ".join(sorted(registry.keys()))
        raise ValueError(f"Unknown remote provider: '{provider}'. Available: {available}")
    return endpoint_cls


def get_transcription_endpoint(
    config: IngestionConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> RemoteEndpoint[TranscriptionRequest]:
    """Create the transcription endpoint for the configured provider.

    Raises:
        ValueError: If the provider is unknown or credentials are missing.
    """
    endpoint_cls = _lookup(TRANSCRIPTION_ENDPOINTS, config.provider)
    return endpoint_cls(_connection(config), config.transcription_model, transport)


def get_chat_endpoint(
    config: IngestionConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> RemoteEndpoint[ChatRequest]:
    """Create the chat endpoint for the configured provider.

    Raises:
        ValueError: If the provider is unknown or credentials are missing.
    """
    endpoint_cls = _lookup(CHAT_ENDPOINTS, config.provider)
    return endpoint_cls(_connection(config), config.chat_model, transport)

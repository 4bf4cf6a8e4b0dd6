"""OpenAI and Azure OpenAI endpoint implementations.

Both flavours share the same request bodies and differ only in how the URL
and credentials are formed:

- openai: `{base_url}/{path}` with a bearer token.
- azure-openai: `{endpoint}/openai/deployments/{deployment}/{path}` with an
  `api-key` header and an `api-version` query parameter. The model name is
  the deployment name.
"""

import logging
from dataclasses import dataclass

import httpx

from audio_ingest.remote.interface import (
    ChatRequest,
    RemoteEndpoint,
    TranscriptionRequest,
)
from audio_ingest.utils.errors import RemoteServiceError

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_AZURE_API_VERSION = "2024-02-15-preview"
# Client-side ceiling; ResilientCaller enforces the real per-attempt deadline
HTTP_TIMEOUT_SECONDS = 120.0
ERROR_BODY_CHARS = 500

CHAT_TEMPERATURE = 0.7
CHAT_MAX_TOKENS = 1000
CHAT_TOP_P = 0.9

SYSTEM_PROMPT_TEMPLATE = """\
You are a helpful assistant that can answer questions about audio transcripts.
The user has uploaded an audio file that has been transcribed. You should answer their questions based on the content of the transcript.

Transcript:
{transcript}

Instructions:
- Answer questions based on the transcript content
- If the question cannot be answered from the transcript, politely explain that the information is not available in the audio
- Be helpful and conversational
- Provide specific details from the transcript when relevant
- If asked to summarize, provide a clear and concise summary"""


def build_system_prompt(transcript: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(transcript=transcript)


@dataclass(frozen=True)
class OpenAIConnection:
    """Where and how to reach an OpenAI-compatible service.

    Args:
        provider: "openai" or "azure-openai".
        api_key: API key for the service.
        base_url: OpenAI base URL, or the Azure resource endpoint.
        api_version: Azure API version (ignored for openai).
    """

    provider: str
    api_key: str
    base_url: str
    api_version: str | None = None

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ValueError("api_key is required")
        if not self.base_url:
            raise ValueError("base_url is required")

    @property
    def is_azure(self) -> bool:
        return self.provider == "azure-openai"

    def url(self, model: str, path: str) -> str:
        base = self.base_url.rstrip("/")
        if self.is_azure:
            return f"{base}/openai/deployments/{model}/{path}"
        return f"{base}/{path}"

    def headers(self) -> dict[str, str]:
        if self.is_azure:
            return {"api-key": self.api_key}
        return {"Authorization": f"Bearer {self.api_key}"}

    def params(self) -> dict[str, str]:
        if self.is_azure:
            return {"api-version": self.api_version or DEFAULT_AZURE_API_VERSION}
        return {}


class _OpenAIEndpoint:
    """Shared HTTP plumbing for the OpenAI-compatible endpoints."""

    def __init__(
        self,
        connection: OpenAIConnection,
        model: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not model:
            raise ValueError("model is required")
        self._connection = connection
        self._model = model
        self._transport = transport

    @property
    def name(self) -> str:
        return self._connection.provider

    async def _post(self, path: str, **kwargs: object) -> httpx.Response:
        url = self._connection.url(self._model, path)
        async with httpx.AsyncClient(
            transport=self._transport, timeout=HTTP_TIMEOUT_SECONDS
        ) as client:
            response = await client.post(
                url,
                headers=self._connection.headers(),
                params=self._connection.params(),
                **kwargs,
            )

        if response.is_success:
            return response

        body = response.text[:ERROR_BODY_CHARS]
        logger.warning(
            "%s %s returned %d: %s",
            self.name,
            path,
            response.status_code,
            body,
        )
        raise RemoteServiceError(
            f"{self.name} {path} failed with status {response.status_code}: {body}",
            status_code=response.status_code,
            provider=self.name,
        )


class OpenAITranscriptionEndpoint(_OpenAIEndpoint, RemoteEndpoint[TranscriptionRequest]):
    """Whisper-style `audio/transcriptions` endpoint returning plain text."""

    async def send(self, request: TranscriptionRequest) -> str:
        files = {
            "file": (
                request.filename,
                request.data,
                request.content_type or "application/octet-stream",
            )
        }
        data = {
            "model": self._model,
            "response_format": "text",
            "language": request.language,
            "temperature": "0",
        }
        response = await self._post("audio/transcriptions", files=files, data=data)
        return response.text

    def extract_text(self, payload: str) -> str | None:
        text = (payload or "").strip()
        return text or None


class OpenAIChatEndpoint(_OpenAIEndpoint, RemoteEndpoint[ChatRequest]):
    """`chat/completions` endpoint answering one question about a transcript."""

    async def send(self, request: ChatRequest) -> dict:
        body = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": build_system_prompt(request.transcript)},
                {"role": "user", "content": request.message},
            ],
            "temperature": CHAT_TEMPERATURE,
            "max_tokens": CHAT_MAX_TOKENS,
            "top_p": CHAT_TOP_P,
            "frequency_penalty": 0.0,
            "presence_penalty": 0.0,
        }
        response = await self._post("chat/completions", json=body)
        return response.json()

    def extract_text(self, payload: dict) -> str | None:
        if not isinstance(payload, dict):
            return None
        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None
        content = (choices[0].get("message") or {}).get("content")
        if not isinstance(content, str) or not content.strip():
            return None
        return content

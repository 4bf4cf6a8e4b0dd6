"""Abstract remote inference endpoint interface.

A RemoteEndpoint turns one request object into one HTTP exchange and knows
where the generated text lives in the response. Retry, timeout and error
classification are not its concern; ResilientCaller wraps every endpoint
the same way.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar


@dataclass(frozen=True)
class TranscriptionRequest:
    """Audio to transcribe."""

    filename: str
    content_type: str
    data: bytes = field(repr=False)
    language: str = "en"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ChatRequest:
    """One user question asked against a transcript."""

    transcript: str
    message: str

    @property
    def size(self) -> int:
        return len(self.transcript.encode()) + len(self.message.encode())


RequestT = TypeVar("RequestT", TranscriptionRequest, ChatRequest)


class RemoteEndpoint(ABC, Generic[RequestT]):
    """Abstract base class for remote inference endpoints.

    Subclasses implement send() and extract_text().
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name used in logs and errors."""

    @abstractmethod
    async def send(self, request: RequestT) -> Any:
        """Perform one HTTP exchange and return the decoded payload.

        Raises:
            RemoteServiceError: If the service answers with a non-2xx status.
            httpx.HTTPError: On transport failures.
        """

    @abstractmethod
    def extract_text(self, payload: Any) -> str | None:
        """Return the generated text from a payload, or None if absent."""

    def request_size(self, request: RequestT) -> int:
        """Size in bytes used for the pre-send ceiling check."""
        return request.size

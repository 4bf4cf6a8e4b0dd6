"""Custom exception hierarchy for the audio ingestion pipeline.

All exceptions inherit from IngestionError so the session façade can catch
them at its boundary and hand them to the classifier. Nothing in this
module is surfaced to callers directly: classify() turns every failure
into a ClassifiedError first.
"""


class IngestionError(Exception):
    """Base exception for all audio ingestion errors."""

    def __init__(self, message: str, session_id: str | None = None) -> None:
        self.session_id = session_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.session_id:
            return f"[session={self.session_id}] {super().__str__()}"
        return super().__str__()


class FileValidationError(IngestionError):
    """Raised when an upload fails the type or size checks."""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        filename: str | None = None,
    ) -> None:
        self.filename = filename
        super().__init__(message, session_id)


class TranscodeError(IngestionError):
    """Raised when the transcoding engine fails to produce output."""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        self.detail = detail
        super().__init__(message, session_id)


class EngineInitError(TranscodeError):
    """Raised when the transcoding engine cannot be loaded."""


class TranscodeCancelledError(TranscodeError):
    """Raised by the adapter when a running job was cancelled on request."""


class ArtifactTooLargeError(IngestionError):
    """Raised when a compressed artifact still exceeds the upload ceiling."""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        size_bytes: int | None = None,
        limit_bytes: int | None = None,
    ) -> None:
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(message, session_id)


class RemoteServiceError(IngestionError):
    """Raised when a remote inference endpoint returns an error response."""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        status_code: int | None = None,
        provider: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.provider = provider
        super().__init__(message, session_id)


class CallTimeoutError(IngestionError):
    """Raised when a remote call or request build exceeds its deadline."""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(message, session_id)


class EmptyResponseError(IngestionError):
    """Raised when a remote response lacks the expected generated text."""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        provider: str | None = None,
    ) -> None:
        self.provider = provider
        super().__init__(message, session_id)


class SessionStateError(IngestionError):
    """Raised when an operation is invalid in the current pipeline state."""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        state: str | None = None,
    ) -> None:
        self.state = state
        super().__init__(message, session_id)

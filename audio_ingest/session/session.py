"""Ingestion session façade.

Sequences one upload through validation, compression, transcription and
chat, and is the only surface the UI/API layer drives. Compression and
remote failures leave this module as ClassifiedErrors; raw exceptions stay
in the logs. Calling an operation in the wrong state (a second transcribe
while one is in flight, a retry without an error) raises SessionStateError.

Selecting a new file or calling reset() discards the upload session,
its compression state, transcript, artifact and message log.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime

from audio_ingest.audio.adapter import EngineLoader, TranscodeEngineAdapter
from audio_ingest.audio.compression import (
    Artifact,
    CompressionJob,
    CompressionOrchestrator,
    CompressionStatus,
)
from audio_ingest.audio.engine.registry import get_transcode_engine
from audio_ingest.config import IngestionConfig
from audio_ingest.models import UploadFile, needs_compression
from audio_ingest.observability.metrics import (
    SessionMetrics,
    StageTimer,
    log_session_metrics,
)
from audio_ingest.remote.caller import CallOutcome, ResilientCaller
from audio_ingest.remote.interface import (
    ChatRequest,
    RemoteEndpoint,
    TranscriptionRequest,
)
from audio_ingest.remote.registry import get_chat_endpoint, get_transcription_endpoint
from audio_ingest.session.validation import validate_chat_request, validate_upload
from audio_ingest.utils.classifier import ClassifiedError, ErrorKind
from audio_ingest.utils.errors import FileValidationError, SessionStateError
from audio_ingest.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    """One user-initiated ingestion attempt."""

    file: UploadFile
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    compressed_at: datetime | None = None
    transcribed_at: datetime | None = None


@dataclass(frozen=True)
class ChatMessage:
    """One entry of the append-only conversation log."""

    role: str
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


def create_engine_loader(config: IngestionConfig) -> EngineLoader:
    """Build the engine loader that every session in a process should share."""
    engine = get_transcode_engine(config.engine_provider)
    return EngineLoader(engine, config.engine_locator)


class IngestionSession:
    """Drives validation, compression, transcription and chat for one user.

    Args:
        config: Pipeline configuration.
        loader: Shared engine loader (default: a new one built from config).
        transcription_endpoint: Override for the configured endpoint.
        chat_endpoint: Override for the configured endpoint.
        policy: Retry policy for both remote call sites.
        sleep: Awaitable sleep used between retries.

    Raises:
        ValueError: If the remote provider is unknown or lacks credentials.
    """

    def __init__(
        self,
        config: IngestionConfig,
        loader: EngineLoader | None = None,
        transcription_endpoint: RemoteEndpoint[TranscriptionRequest] | None = None,
        chat_endpoint: RemoteEndpoint[ChatRequest] | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._loader = loader or create_engine_loader(config)
        self._transcription_endpoint = (
            transcription_endpoint or get_transcription_endpoint(config)
        )
        self._chat_endpoint = chat_endpoint or get_chat_endpoint(config)
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

        self.upload: UploadSession | None = None
        self.transcript: str | None = None
        self._orchestrator: CompressionOrchestrator | None = None
        self._artifact: Artifact | None = None
        self._messages: list[ChatMessage] = []
        self._calls_in_flight: set[str] = set()
        self.metrics = SessionMetrics(session_id="")

    @property
    def session_id(self) -> str | None:
        return self.upload.session_id if self.upload else None

    @property
    def artifact(self) -> Artifact | None:
        return self._artifact

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def compression_status(self) -> CompressionStatus:
        if self._orchestrator is None:
            return CompressionStatus.IDLE
        return self._orchestrator.status

    def validate(self, file: UploadFile) -> ClassifiedError | None:
        """Check a file's type and size. Never touches the engine or network."""
        error = validate_upload(file, self.config.max_input_bytes)
        if error is not None:
            logger.info(
                "Rejected upload %s: %s",
                file.name,
                error.detail,
                extra={"error_kind": error.kind.value},
            )
        return error

    async def begin_compression(self, file: UploadFile) -> AsyncIterator[CompressionJob]:
        """Start compressing a new file and stream CompressionJob snapshots.

        Selecting the file discards any previous upload session. The stream
        ends after the job reaches a terminal state or is cancelled.

        Raises:
            FileValidationError: If the file fails validation.
        """
        self._select(self._require_valid(file))
        async for job in self._compress_selected():
            yield job

    async def retry(self) -> AsyncIterator[CompressionJob]:
        """Re-run a failed compression with the same file.

        Raises:
            SessionStateError: If compression is not in the error state.
        """
        orchestrator = self._orchestrator
        if orchestrator is None or orchestrator.status is not CompressionStatus.ERROR:
            raise SessionStateError(
                "Retry is only valid after a compression error",
                session_id=self.session_id,
                state=self.compression_status.value,
            )
        async for job in self._stream(orchestrator, orchestrator.retry):
            yield job

    def cancel(self) -> bool:
        """Cancel a running compression. No-op in any other state."""
        if self._orchestrator is None:
            return False
        return self._orchestrator.cancel()

    def skip_compression(self, file: UploadFile | None = None) -> Artifact:
        """Use the original file as the artifact.

        Args:
            file: A new file to select, or None to skip for the current one.

        Raises:
            FileValidationError: If a new file fails validation.
            SessionStateError: If there is no file, or compression is running
                or already complete.
        """
        if file is not None:
            self._select(self._require_valid(file))
        if self.upload is None or self._orchestrator is None:
            raise SessionStateError("No file selected", state="idle")
        return self._skip_selected()

    async def transcribe(
        self, source: Artifact | UploadFile | None = None
    ) -> CallOutcome[str]:
        """Transcribe an artifact (default: the current session's artifact).

        A raw UploadFile is validated and sent uncompressed. The stored
        transcript is replaced only on success.
        """
        if isinstance(source, UploadFile):
            error = self.validate(source)
            if error is not None:
                return CallOutcome.failure(error)
            source = Artifact.passthrough(source)
        artifact = source or self._artifact
        if artifact is None:
            return CallOutcome.failure(
                ClassifiedError.of(
                    ErrorKind.VALIDATION_FAILED,
                    "No audio ready for transcription. Compress or skip compression first.",
                )
            )

        request = TranscriptionRequest(
            filename=artifact.filename,
            content_type=artifact.content_type,
            data=artifact.data,
            language=self.config.language,
        )
        caller = self._caller(
            self._transcription_endpoint,
            self.config.transcription_timeout,
            self.config.max_upload_bytes,
        )
        timer = StageTimer("transcription")
        with self._in_flight("transcription"), timer:
            outcome = await caller.execute(lambda: request)
        self.metrics.record_stage(timer)
        self.metrics.transcription_attempts += len(outcome.attempts)

        if outcome.ok:
            self.transcript = outcome.value
            self.metrics.status = "success"
            self.metrics.error_stage = None
            self.metrics.error_kind = None
            if self.upload is not None:
                self.upload.transcribed_at = datetime.now(UTC)
            logger.info(
                "Transcribed %s (%d characters)",
                artifact.filename,
                len(outcome.value),
                extra={"session_id": self.session_id, "stage": "transcription"},
            )
        else:
            self._record_failure("transcription", outcome.error)
        return outcome

    async def ask(self, message: str, transcript: str | None = None) -> CallOutcome[str]:
        """Ask one question about the transcript.

        On success the user message and the answer are appended to the
        message log, in that order.
        """
        transcript = self.transcript if transcript is None else transcript
        error = validate_chat_request(transcript, message)
        if error is not None:
            return CallOutcome.failure(error)

        caller = self._caller(self._chat_endpoint, self.config.chat_timeout, None)
        request = ChatRequest(transcript=transcript, message=message.strip())
        timer = StageTimer("chat")
        with self._in_flight("chat"), timer:
            outcome = await caller.execute(lambda: request)
        self.metrics.record_stage(timer)

        if outcome.ok:
            self._messages.append(ChatMessage(role="user", content=request.message))
            self._messages.append(ChatMessage(role="assistant", content=outcome.value))
            self.metrics.chat_turns += 1
        else:
            self._record_failure("chat", outcome.error)
        return outcome

    async def run(self, file: UploadFile) -> CallOutcome[str]:
        """Validate, compress and transcribe a file in one call.

        A file already within the upload ceiling is sent as-is.
        """
        error = self.validate(file)
        if error is not None:
            return CallOutcome.failure(error)

        self._select(file)
        if not needs_compression(file.size, self.config.max_upload_bytes):
            self._skip_selected()
            return await self.transcribe()

        job: CompressionJob | None = None
        async for job in self._compress_selected():
            pass
        if job is None or job.status is not CompressionStatus.COMPLETE:
            error = job.error if job is not None else None
            return CallOutcome.failure(
                error or ClassifiedError.of(ErrorKind.UNKNOWN, "Compression did not complete.")
            )
        return await self.transcribe()

    def reset(self) -> None:
        """Discard the upload session, transcript and message log."""
        if self._orchestrator is not None:
            self._orchestrator.reset()
        self.upload = None
        self.transcript = None
        self._orchestrator = None
        self._artifact = None
        self._messages = []
        self.metrics = SessionMetrics(session_id="")

    def finish(self) -> SessionMetrics:
        """Emit the session metrics line and return the metrics."""
        if self.metrics.status == "pending":
            self.metrics.status = "success" if self.transcript else "incomplete"
        log_session_metrics(self.metrics)
        return self.metrics

    def _require_valid(self, file: UploadFile) -> UploadFile:
        error = self.validate(file)
        if error is not None:
            raise FileValidationError(error.detail, filename=file.name)
        return file

    def _select(self, file: UploadFile) -> None:
        self.reset()
        self.upload = UploadSession(file=file)
        adapter = TranscodeEngineAdapter(self._loader)
        self._orchestrator = CompressionOrchestrator(
            adapter,
            self.config.max_upload_bytes,
            session_id=self.upload.session_id,
        )
        self.metrics = SessionMetrics(
            session_id=self.upload.session_id,
            original_size_bytes=file.size,
        )
        logger.info(
            "Selected %s (%d bytes, %s)",
            file.name,
            file.size,
            file.content_type or "unknown type",
            extra={"session_id": self.upload.session_id},
        )

    def _skip_selected(self) -> Artifact:
        job = self._orchestrator.skip(self.upload.file)
        self._artifact = job.artifact
        self.metrics.compression_skipped = True
        self.metrics.artifact_size_bytes = self.upload.file.size
        logger.info(
            "Compression skipped for %s",
            self.upload.file.name,
            extra={"session_id": self.session_id},
        )
        return job.artifact

    async def _compress_selected(self) -> AsyncIterator[CompressionJob]:
        orchestrator = self._orchestrator
        file = self.upload.file
        async for job in self._stream(orchestrator, lambda: orchestrator.start(file)):
            yield job

    async def _stream(
        self,
        orchestrator: CompressionOrchestrator,
        start: Callable[[], Awaitable[CompressionJob]],
    ) -> AsyncIterator[CompressionJob]:
        """Run a compression job and yield its snapshots as they publish."""
        queue: asyncio.Queue[CompressionJob | None] = asyncio.Queue()
        unsubscribe = orchestrator.subscribe(queue.put_nowait)
        task = asyncio.ensure_future(self._compress(orchestrator, start))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while (job := await queue.get()) is not None:
                yield job
            await task
        finally:
            unsubscribe()
            if not task.done():
                orchestrator.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _compress(
        self,
        orchestrator: CompressionOrchestrator,
        start: Callable[[], Awaitable[CompressionJob]],
    ) -> CompressionJob:
        timer = StageTimer("compression")
        with timer:
            job = await start()
        if orchestrator is not self._orchestrator:
            return job

        self.metrics.record_stage(timer)
        if job.settings is not None:
            self.metrics.compression_bitrate_kbps = job.settings.bitrate_kbps
        if job.status is CompressionStatus.COMPLETE and job.artifact is not None:
            self._artifact = job.artifact
            self.upload.compressed_at = datetime.now(UTC)
            self.metrics.artifact_size_bytes = job.artifact.size_bytes
            self.metrics.compression_ratio = job.artifact.compression_ratio
        elif job.status is CompressionStatus.ERROR:
            self._record_failure("compression", job.error)
        return job

    @contextlib.contextmanager
    def _in_flight(self, call: str) -> Iterator[None]:
        """Guard one remote call site; calls never overlap compression."""
        if call in self._calls_in_flight:
            raise SessionStateError(
                f"A {call} call is already in flight",
                session_id=self.session_id,
                state=call,
            )
        if self.compression_status is CompressionStatus.COMPRESSING:
            raise SessionStateError(
                f"Cannot start {call} while compression is running",
                session_id=self.session_id,
                state=CompressionStatus.COMPRESSING.value,
            )
        self._calls_in_flight.add(call)
        try:
            yield
        finally:
            self._calls_in_flight.discard(call)

    def _caller(
        self, endpoint: RemoteEndpoint, timeout: float, max_request_bytes: int | None
    ) -> ResilientCaller:
        return ResilientCaller(
            endpoint,
            timeout,
            max_request_bytes=max_request_bytes,
            policy=self._policy,
            sleep=self._sleep,
            session_id=self.session_id,
        )

    def _record_failure(self, stage: str, error: ClassifiedError | None) -> None:
        if error is None:
            return
        self.metrics.status = "failed"
        self.metrics.error_stage = stage
        self.metrics.error_kind = error.kind.value
        logger.warning(
            "%s failed: %s (%s)",
            stage.capitalize(),
            error.message,
            error.detail,
            extra={"session_id": self.session_id, "stage": stage, "error_kind": error.kind.value},
        )

"""Compression state machine for one upload session.

States: idle -> compressing -> {complete, error}; error -> compressing on
retry; idle/error -> skipped when the caller opts out. Each start() creates
a fresh CompressionJob tagged with a generation number. Every mutation
goes through _apply(), which drops updates whose generation is no longer
current, so late callbacks from a cancelled or superseded job never touch
the job that replaced it.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from audio_ingest.audio.adapter import TranscodeEngineAdapter
from audio_ingest.audio.engine.interface import EncodeArgs, EngineOutput
from audio_ingest.models import UploadFile, compression_suggestions, format_file_size
from audio_ingest.utils.classifier import ClassifiedError, classify
from audio_ingest.utils.errors import (
    ArtifactTooLargeError,
    FileValidationError,
    SessionStateError,
    TranscodeCancelledError,
)

logger = logging.getLogger(__name__)

MEGABYTE = 1024 * 1024
AGGRESSIVE_THRESHOLD_BYTES = 150 * MEGABYTE

TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1
DEFAULT_BITRATE_KBPS = 48
AGGRESSIVE_BITRATE_KBPS = 32
OUTPUT_FORMAT = "ogg"
OUTPUT_CODEC = "libopus"  # speech-optimized
OUTPUT_CONTENT_TYPE = "audio/ogg"

# Stage percentages. The engine gives no feedback while loading.
LOADING_PERCENT = 5
PROCESSING_START_PERCENT = 10
PROCESSING_END_PERCENT = 90
FINALIZING_PERCENT = 95

# Rough uplink throughput used for the upload-time-saved estimate
ASSUMED_UPLOAD_BYTES_PER_SECOND = 500_000


class CompressionStatus(str, Enum):
    IDLE = "idle"
    COMPRESSING = "compressing"
    COMPLETE = "complete"
    ERROR = "error"
    SKIPPED = "skipped"


class CompressionStage(str, Enum):
    LOADING = "loading"
    PROCESSING = "processing"
    FINALIZING = "finalizing"


STAGE_MESSAGES: dict[CompressionStage, str] = {
    CompressionStage.LOADING: "Loading audio engine...",
    CompressionStage.PROCESSING: "Compressing audio...",
    CompressionStage.FINALIZING: "Finalizing...",
}


@dataclass(frozen=True)
class CompressionSettings:
    """Encode settings chosen once per session from the input size."""

    sample_rate: int
    bitrate_kbps: int
    channels: int
    output_format: str
    codec: str

    def to_encode_args(self) -> EncodeArgs:
        return EncodeArgs(
            sample_rate=self.sample_rate,
            channels=self.channels,
            bitrate_kbps=self.bitrate_kbps,
            output_format=self.output_format,
            codec=self.codec,
        )


def select_compression_settings(size_bytes: int) -> CompressionSettings:
    """Pick encode settings: 48 kbps up to 150 MB, 32 kbps above."""
    bitrate = (
        AGGRESSIVE_BITRATE_KBPS
        if size_bytes > AGGRESSIVE_THRESHOLD_BYTES
        else DEFAULT_BITRATE_KBPS
    )
    return CompressionSettings(
        sample_rate=TARGET_SAMPLE_RATE,
        bitrate_kbps=bitrate,
        channels=TARGET_CHANNELS,
        output_format=OUTPUT_FORMAT,
        codec=OUTPUT_CODEC,
    )


def compute_compression_ratio(original_size: int, compressed_size: int) -> int:
    """Percentage saved, e.g. 10_000_000 -> 2_000_000 bytes gives 80."""
    if original_size <= 0:
        return 0
    return round((1 - compressed_size / original_size) * 100)


def estimate_upload_time_saved(original_size: int, compressed_size: int) -> float:
    """Seconds of upload time saved, proportional to the bytes saved."""
    saved = max(0, original_size - compressed_size)
    return round(saved / ASSUMED_UPLOAD_BYTES_PER_SECOND, 1)


@dataclass(frozen=True)
class Artifact:
    """Audio handed to the transcription endpoint. Never mutated once built."""

    filename: str
    content_type: str
    format: str
    data: bytes = field(repr=False)
    original_size_bytes: int
    duration_seconds: float | None = None
    compressed: bool = True

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def compression_ratio(self) -> int:
        return compute_compression_ratio(self.original_size_bytes, self.size_bytes)

    @property
    def upload_time_saved_seconds(self) -> float:
        return estimate_upload_time_saved(self.original_size_bytes, self.size_bytes)

    @classmethod
    def passthrough(cls, file: UploadFile) -> Artifact:
        """Wrap an uncompressed upload (compression skipped)."""
        return cls(
            filename=file.name,
            content_type=file.content_type,
            format=file.extension.lstrip(".") or "unknown",
            data=file.data,
            original_size_bytes=file.size,
            compressed=False,
        )


@dataclass
class CompressionJob:
    """Observable state of one compression attempt."""

    generation: int
    status: CompressionStatus
    stage: CompressionStage | None = None
    percentage: int = 0
    estimated_seconds_remaining: int | None = None
    settings: CompressionSettings | None = None
    artifact: Artifact | None = None
    error: ClassifiedError | None = None
    cause: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def message(self) -> str:
        if self.stage is None:
            return ""
        return STAGE_MESSAGES[self.stage]

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def snapshot(self) -> CompressionJob:
        return dataclasses.replace(self)


JobListener = Callable[[CompressionJob], None]


class CompressionOrchestrator:
    """Drives the transcode engine for one session and publishes progress.

    Args:
        adapter: Per-session engine adapter.
        max_upload_bytes: Hard size ceiling of the transcription endpoint.
        session_id: Used for log context only.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        adapter: TranscodeEngineAdapter,
        max_upload_bytes: int,
        session_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapter = adapter
        self._max_upload_bytes = max_upload_bytes
        self._session_id = session_id
        self._clock = clock
        self._generation = 0
        self._job = CompressionJob(generation=0, status=CompressionStatus.IDLE)
        self._file: UploadFile | None = None
        self._listeners: list[JobListener] = []
        self._processing_started = 0.0

    @property
    def job(self) -> CompressionJob:
        """Snapshot of the current job."""
        return self._job.snapshot()

    @property
    def status(self) -> CompressionStatus:
        return self._job.status

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """Register a listener for job snapshots; returns an unsubscribe hook."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def start(self, file: UploadFile) -> CompressionJob:
        """Compress a file and return the terminal job snapshot.

        Raises:
            FileValidationError: If the file is empty.
            SessionStateError: If a job is running or already finished.
        """
        if file.size <= 0:
            raise FileValidationError(
                "Cannot compress an empty file",
                session_id=self._session_id,
                filename=file.name,
            )
        if self._job.status not in (CompressionStatus.IDLE, CompressionStatus.ERROR):
            raise SessionStateError(
                f"Cannot start compression while {self._job.status.value}",
                session_id=self._session_id,
                state=self._job.status.value,
            )

        self._generation += 1
        generation = self._generation
        job_id = self._adapter.begin_job()
        self._file = file
        settings = select_compression_settings(file.size)
        self._job = CompressionJob(
            generation=generation,
            status=CompressionStatus.COMPRESSING,
            stage=CompressionStage.LOADING,
            percentage=LOADING_PERCENT,
            settings=settings,
            started_at=datetime.now(UTC),
        )
        logger.info(
            "Compression started for %s (%s) at %d kbps",
            file.name,
            format_file_size(file.size),
            settings.bitrate_kbps,
            extra={
                "session_id": self._session_id,
                "stage": "loading",
                "job_generation": generation,
            },
        )
        self._publish()

        try:
            await self._adapter.ensure_loaded()
            if generation != self._generation:
                logger.debug(
                    "Compression job %d superseded while loading",
                    generation,
                    extra={"session_id": self._session_id, "job_generation": generation},
                )
                return self.job
            self._processing_started = self._clock()
            self._apply(
                generation,
                stage=CompressionStage.PROCESSING,
                percentage=PROCESSING_START_PERCENT,
            )
            output = await self._adapter.run(
                f"input{file.extension}",
                file.data,
                settings.to_encode_args(),
                lambda fraction: self._on_native_progress(generation, fraction),
                job_id=job_id,
            )
            self._apply(
                generation,
                stage=CompressionStage.FINALIZING,
                percentage=FINALIZING_PERCENT,
                estimated_seconds_remaining=0,
            )
            artifact = self._package(file, output, settings)
        except TranscodeCancelledError:
            logger.info(
                "Compression job %d cancelled",
                generation,
                extra={"session_id": self._session_id, "job_generation": generation},
            )
            return self.job
        except asyncio.CancelledError:
            if generation == self._generation:
                self._discard()
            raise
        except Exception as exc:
            error = classify(exc)
            logger.warning(
                "Compression job %d failed: %s",
                generation,
                error.kind.value,
                exc_info=True,
                extra={
                    "session_id": self._session_id,
                    "job_generation": generation,
                    "error": str(exc),
                },
            )
            self._apply(
                generation,
                status=CompressionStatus.ERROR,
                error=error,
                cause=_describe_cause(exc),
                estimated_seconds_remaining=None,
                finished_at=datetime.now(UTC),
            )
            return self.job

        if self._apply(
            generation,
            status=CompressionStatus.COMPLETE,
            percentage=100,
            artifact=artifact,
            finished_at=datetime.now(UTC),
        ):
            logger.info(
                "Compression complete: %s -> %s (%d%% smaller)",
                format_file_size(artifact.original_size_bytes),
                format_file_size(artifact.size_bytes),
                artifact.compression_ratio,
                extra={
                    "session_id": self._session_id,
                    "stage": "finalizing",
                    "job_generation": generation,
                },
            )
        return self.job

    async def retry(self) -> CompressionJob:
        """Restart compression with the same file after a failure.

        Raises:
            SessionStateError: If the current job is not in the error state.
        """
        if self._job.status is not CompressionStatus.ERROR or self._file is None:
            raise SessionStateError(
                f"Retry is only valid after an error, not while {self._job.status.value}",
                session_id=self._session_id,
                state=self._job.status.value,
            )
        return await self.start(self._file)

    def cancel(self) -> bool:
        """Abort a running job and return to idle. No-op in any other state."""
        if self._job.status is not CompressionStatus.COMPRESSING:
            return False
        self._adapter.cancel()
        self._discard()
        logger.info("Compression cancelled", extra={"session_id": self._session_id})
        return True

    def skip(self, file: UploadFile) -> CompressionJob:
        """Opt out of compression and use the original file as the artifact.

        Raises:
            SessionStateError: If a job is running or already complete.
        """
        if self._job.status not in (CompressionStatus.IDLE, CompressionStatus.ERROR):
            raise SessionStateError(
                f"Cannot skip compression while {self._job.status.value}",
                session_id=self._session_id,
                state=self._job.status.value,
            )
        self._generation += 1
        self._file = file
        self._job = CompressionJob(
            generation=self._generation,
            status=CompressionStatus.SKIPPED,
            artifact=Artifact.passthrough(file),
        )
        self._publish()
        return self.job

    def reset(self) -> None:
        """Forget the current file and job (new file selected or user reset)."""
        if self._job.status is CompressionStatus.COMPRESSING:
            self._adapter.cancel()
        self._file = None
        self._discard()

    def _discard(self) -> None:
        self._generation += 1
        self._job = CompressionJob(
            generation=self._generation, status=CompressionStatus.IDLE
        )
        self._publish()

    def _on_native_progress(self, generation: int, fraction: float) -> None:
        fraction = max(0.0, min(1.0, fraction))
        span = PROCESSING_END_PERCENT - PROCESSING_START_PERCENT
        percentage = PROCESSING_START_PERCENT + int(fraction * span)
        eta: int | None = None
        if 0 < fraction < 1:
            elapsed = self._clock() - self._processing_started
            eta = max(0, round(elapsed / fraction * (1 - fraction)))
        self._apply(
            generation,
            stage=CompressionStage.PROCESSING,
            percentage=percentage,
            estimated_seconds_remaining=eta,
        )

    def _apply(self, generation: int, **changes: object) -> bool:
        """Single mutation point for the current job.

        Returns False (and changes nothing) if the update belongs to a
        superseded job or the job is no longer compressing.
        """
        if (
            generation != self._generation
            or self._job.status is not CompressionStatus.COMPRESSING
        ):
            logger.debug(
                "Dropped stale update for compression job %d",
                generation,
                extra={"session_id": self._session_id, "job_generation": generation},
            )
            return False
        if "percentage" in changes:
            changes["percentage"] = max(self._job.percentage, changes["percentage"])
        self._job = dataclasses.replace(self._job, **changes)
        self._publish()
        return True

    def _publish(self) -> None:
        snapshot = self._job.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.error("Compression listener failed", exc_info=True)

    def _package(
        self, file: UploadFile, output: EngineOutput, settings: CompressionSettings
    ) -> Artifact:
        artifact = Artifact(
            filename=f"{file.stem}.{settings.output_format}",
            content_type=OUTPUT_CONTENT_TYPE,
            format=settings.output_format,
            data=output.data,
            original_size_bytes=file.size,
            duration_seconds=output.duration_seconds,
        )
        if artifact.size_bytes > self._max_upload_bytes:
            suggestions = compression_suggestions(
                artifact.size_bytes, self._max_upload_bytes
            )
            raise ArtifactTooLargeError(
                f"Compressed file is {format_file_size(artifact.size_bytes)}, "
                f"above the {format_file_size(self._max_upload_bytes)} upload limit. "
                f"Try: {'; '.join(suggestions)}",
                session_id=self._session_id,
                size_bytes=artifact.size_bytes,
                limit_bytes=self._max_upload_bytes,
            )
        return artifact


def _describe_cause(exc: BaseException) -> str:
    detail = getattr(exc, "detail", None)
    return f"{exc}: {detail}" if detail else str(exc)


__all__ = [
    "Artifact",
    "CompressionJob",
    "CompressionOrchestrator",
    "CompressionSettings",
    "CompressionStage",
    "CompressionStatus",
    "compute_compression_ratio",
    "estimate_upload_time_saved",
    "select_compression_settings",
]

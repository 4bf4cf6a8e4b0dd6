"""Lifecycle wrapper around the transcoding engine.

EngineLoader owns the load-once latch: the first caller starts engine
initialization, concurrent callers await the same in-flight load, and a
failed load stays failed for the loader's lifetime. One loader is shared
by every session in the process; after loading it only hands out a
read-only EngineHandle.

TranscodeEngineAdapter is per session. It submits one job at a time,
stages input/output in a temporary workspace that is removed on every
exit path, and supports cooperative cancellation.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile

from audio_ingest.audio.engine.interface import (
    EncodeArgs,
    EngineHandle,
    EngineOutput,
    NativeProgressCallback,
    TranscodeEngine,
)
from audio_ingest.utils.errors import (
    EngineInitError,
    TranscodeCancelledError,
    TranscodeError,
)

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "audio-ingest-"


class EngineLoader:
    """Lazily initialized, shared transcoding engine handle.

    Args:
        engine: Unloaded engine instance.
        locator: Core asset locator passed to engine.load().
    """

    def __init__(self, engine: TranscodeEngine, locator: str) -> None:
        self.engine = engine
        self.locator = locator
        self._load_future: asyncio.Future[EngineHandle] | None = None

    @property
    def loaded(self) -> bool:
        future = self._load_future
        return (
            future is not None
            and future.done()
            and not future.cancelled()
            and future.exception() is None
        )

    async def ensure_loaded(self) -> EngineHandle:
        """Return the engine handle, initializing it on first use.

        Raises:
            EngineInitError: If initialization failed, now or earlier.
        """
        if self._load_future is None:
            self._load_future = asyncio.ensure_future(self._load())
        # Shielded so one cancelled caller does not abort the shared load
        return await asyncio.shield(self._load_future)

    async def _load(self) -> EngineHandle:
        logger.info(
            "Initializing transcode engine '%s' from %s",
            self.engine.provider_name,
            self.locator,
        )
        try:
            return await self.engine.load(self.locator)
        except EngineInitError:
            logger.error("Transcode engine initialization failed", exc_info=True)
            raise
        except Exception as exc:
            logger.error("Transcode engine initialization failed", exc_info=True)
            raise EngineInitError(
                f"Transcode engine failed to initialize: {exc}", detail=str(exc)
            ) from exc


class TranscodeEngineAdapter:
    """Submits transcode jobs to a shared engine and manages their lifetime."""

    def __init__(self, loader: EngineLoader) -> None:
        self._loader = loader
        self._run_task: asyncio.Task[EngineOutput] | None = None
        self._job_id = 0
        self._run_job_id = 0
        self._cancelled_job_id = 0

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    async def ensure_loaded(self) -> EngineHandle:
        return await self._loader.ensure_loaded()

    def begin_job(self) -> int:
        """Reserve a job id. Any earlier job id becomes stale."""
        self._job_id += 1
        return self._job_id

    def _is_cancelled(self, job_id: int) -> bool:
        return job_id != self._job_id or job_id == self._cancelled_job_id

    async def run(
        self,
        input_name: str,
        input_bytes: bytes,
        args: EncodeArgs,
        on_native_progress: NativeProgressCallback,
        job_id: int | None = None,
    ) -> EngineOutput:
        """Run one transcode job to completion.

        Args:
            input_name: Filename for the staged input.
            input_bytes: Raw bytes of the uploaded audio.
            args: Encode parameters.
            on_native_progress: Receives engine progress fractions in [0, 1].
            job_id: Id from begin_job(); a new one is reserved when omitted.

        Returns:
            EngineOutput with the encoded bytes.

        Raises:
            EngineInitError: If the engine could not be loaded.
            TranscodeCancelledError: If the job was cancelled or superseded.
            TranscodeError: If the engine failed.
        """
        previous = self._run_task
        if previous is not None and not previous.done():
            if self._run_job_id != self._cancelled_job_id:
                raise TranscodeError("A transcode job is already running")
            # A cancelled run still unwinding; its workspace must go first
            await asyncio.wait({previous})
        if job_id is None:
            job_id = self.begin_job()

        handle = await self.ensure_loaded()
        if self._is_cancelled(job_id):
            raise TranscodeCancelledError("Transcode cancelled before start")

        with tempfile.TemporaryDirectory(prefix=WORKSPACE_PREFIX) as workspace:
            task = asyncio.ensure_future(
                self._loader.engine.run(
                    handle,
                    workspace,
                    input_name,
                    input_bytes,
                    args,
                    on_native_progress,
                )
            )
            self._run_task = task
            self._run_job_id = job_id
            try:
                return await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if self._is_cancelled(job_id) and not (current and current.cancelling()):
                    raise TranscodeCancelledError("Transcode cancelled") from None
                raise
            finally:
                if self._run_task is task:
                    self._run_task = None
                logger.debug("Released transcode workspace %s", workspace)

    def cancel(self) -> bool:
        """Request cancellation of the current job.

        Returns:
            True if a running job was signalled.
        """
        self._cancelled_job_id = self._job_id
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
            return True
        return False

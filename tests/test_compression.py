"""Tests for the compression state machine."""

import asyncio
import itertools
import logging

import pytest

from audio_ingest.audio.adapter import EngineLoader, TranscodeEngineAdapter
from audio_ingest.audio.compression import (
    AGGRESSIVE_THRESHOLD_BYTES,
    CompressionJob,
    CompressionOrchestrator,
    CompressionStage,
    CompressionStatus,
    compute_compression_ratio,
    estimate_upload_time_saved,
    select_compression_settings,
)
from audio_ingest.models import UploadFile
from audio_ingest.utils.classifier import ErrorKind
from audio_ingest.utils.errors import (
    EngineInitError,
    FileValidationError,
    SessionStateError,
    TranscodeError,
)
from tests.fakes import FakeEngine

MB = 1024 * 1024


def _upload(size: int = 10_000, name: str = "call.mp3") -> UploadFile:
    return UploadFile(name=name, content_type="audio/mpeg", data=b"\x01" * size)


def _orchestrator(
    engine: FakeEngine, max_upload_bytes: int = 25 * MB, clock=None
) -> CompressionOrchestrator:
    adapter = TranscodeEngineAdapter(EngineLoader(engine, "fake-core"))
    kwargs = {"clock": clock} if clock is not None else {}
    return CompressionOrchestrator(adapter, max_upload_bytes, session_id="s-1", **kwargs)


def _collect(orchestrator: CompressionOrchestrator) -> list[CompressionJob]:
    snapshots: list[CompressionJob] = []
    orchestrator.subscribe(snapshots.append)
    return snapshots


class TestSettingsSelection:
    """Tests for the two bitrate tiers."""

    @pytest.mark.parametrize(
        ("size", "bitrate"),
        [
            (1, 48),
            (30 * MB, 48),
            (AGGRESSIVE_THRESHOLD_BYTES, 48),
            (AGGRESSIVE_THRESHOLD_BYTES + 1, 32),
            (400 * MB, 32),
        ],
    )
    def test_bitrate_tiers(self, size: int, bitrate: int) -> None:
        settings = select_compression_settings(size)
        assert settings.bitrate_kbps == bitrate
        assert settings.sample_rate == 16000
        assert settings.channels == 1

    def test_speech_codec(self) -> None:
        args = select_compression_settings(MB).to_encode_args()
        assert (args.codec, args.output_format) == ("libopus", "ogg")


class TestRatios:
    """Tests for compression ratio and upload-time heuristics."""

    def test_compression_ratio(self) -> None:
        assert compute_compression_ratio(10_000_000, 2_000_000) == 80

    def test_ratio_rounds(self) -> None:
        assert compute_compression_ratio(3, 2) == 33

    def test_ratio_of_empty_original(self) -> None:
        assert compute_compression_ratio(0, 10) == 0

    def test_upload_time_saved_is_proportional(self) -> None:
        assert estimate_upload_time_saved(10_000_000, 2_000_000) == 16.0
        assert estimate_upload_time_saved(1_000, 2_000) == 0.0


class TestStart:
    """Tests for a successful compression run."""

    async def test_completes_with_artifact(self) -> None:
        engine = FakeEngine(output=b"\x00" * 1_000)
        orchestrator = _orchestrator(engine)

        job = await orchestrator.start(_upload(10_000))

        assert job.status is CompressionStatus.COMPLETE
        assert job.percentage == 100
        assert job.error is None
        artifact = job.artifact
        assert artifact.filename == "call.ogg"
        assert artifact.content_type == "audio/ogg"
        assert artifact.size_bytes == 1_000
        assert artifact.original_size_bytes == 10_000
        assert artifact.compression_ratio == 90
        assert artifact.duration_seconds == 12.5
        assert engine.last_args.bitrate_kbps == 48
        assert job.duration_seconds is not None

    async def test_logs_carry_job_generation(self, caplog: pytest.LogCaptureFixture) -> None:
        orchestrator = _orchestrator(FakeEngine())

        with caplog.at_level(logging.INFO, logger="audio_ingest.audio.compression"):
            job = await orchestrator.start(_upload())

        records = [r for r in caplog.records if r.name == "audio_ingest.audio.compression"]
        assert len(records) == 2
        assert all(r.job_generation == job.generation for r in records)

    async def test_publishes_stages_in_order(self) -> None:
        orchestrator = _orchestrator(FakeEngine())
        snapshots = _collect(orchestrator)

        await orchestrator.start(_upload())

        stages = [s.stage for s in snapshots if s.stage is not None]
        first_seen = list(dict.fromkeys(stages))
        assert first_seen == [
            CompressionStage.LOADING,
            CompressionStage.PROCESSING,
            CompressionStage.FINALIZING,
        ]
        assert snapshots[0].percentage == 5
        assert snapshots[0].message == "Loading audio engine..."
        assert snapshots[-1].status is CompressionStatus.COMPLETE

    async def test_percentage_never_decreases(self) -> None:
        engine = FakeEngine(progress=(0.5, 0.2, 0.9, 0.4, 1.0))
        orchestrator = _orchestrator(engine)
        snapshots = _collect(orchestrator)

        await orchestrator.start(_upload())

        percentages = [s.percentage for s in snapshots]
        assert percentages == sorted(percentages)
        assert 26 not in percentages
        assert 82 in percentages

    async def test_estimates_time_remaining(self) -> None:
        ticks = itertools.count()
        orchestrator = _orchestrator(FakeEngine(), clock=lambda: next(ticks))
        snapshots = _collect(orchestrator)

        await orchestrator.start(_upload())

        estimates = [
            s.estimated_seconds_remaining
            for s in snapshots
            if s.stage is CompressionStage.PROCESSING
        ]
        # One clock tick per progress update: 1/0.25*0.75, 2/0.5*0.5, 3/0.75*0.25
        assert estimates[1:4] == [3, 2, 1]

    async def test_snapshots_are_copies(self) -> None:
        orchestrator = _orchestrator(FakeEngine())
        snapshots = _collect(orchestrator)

        await orchestrator.start(_upload())

        assert snapshots[0].status is CompressionStatus.COMPRESSING
        assert snapshots[0] is not snapshots[-1]

    async def test_failing_listener_does_not_break_job(self) -> None:
        orchestrator = _orchestrator(FakeEngine())

        def broken(job: CompressionJob) -> None:
            raise RuntimeError("listener bug")

        orchestrator.subscribe(broken)
        job = await orchestrator.start(_upload())

        assert job.status is CompressionStatus.COMPLETE

    async def test_unsubscribe(self) -> None:
        orchestrator = _orchestrator(FakeEngine())
        snapshots: list[CompressionJob] = []
        unsubscribe = orchestrator.subscribe(snapshots.append)
        unsubscribe()

        await orchestrator.start(_upload())

        assert snapshots == []

    async def test_rejects_empty_file(self) -> None:
        orchestrator = _orchestrator(FakeEngine())

        with pytest.raises(FileValidationError):
            await orchestrator.start(_upload(0))

        assert orchestrator.status is CompressionStatus.IDLE

    async def test_rejects_start_after_complete(self) -> None:
        orchestrator = _orchestrator(FakeEngine())
        await orchestrator.start(_upload())

        with pytest.raises(SessionStateError):
            await orchestrator.start(_upload())


class TestFailures:
    """Tests for classified terminal failures."""

    async def test_artifact_over_ceiling_is_request_too_large(self) -> None:
        engine = FakeEngine(output=b"\x00" * 2_000)
        orchestrator = _orchestrator(engine, max_upload_bytes=1_000)

        job = await orchestrator.start(_upload(50_000))

        assert job.status is CompressionStatus.ERROR
        assert job.error.kind is ErrorKind.REQUEST_TOO_LARGE
        assert job.artifact is None
        assert "upload limit" in job.cause

    async def test_engine_failure_keeps_raw_cause(self) -> None:
        engine = FakeEngine(
            run_error=TranscodeError("ffmpeg failed", detail="Invalid data found")
        )
        orchestrator = _orchestrator(engine)

        job = await orchestrator.start(_upload())

        assert job.status is CompressionStatus.ERROR
        assert job.error.kind is ErrorKind.UNKNOWN
        assert "Invalid data found" in job.cause
        assert job.finished_at is not None

    async def test_engine_init_failure(self) -> None:
        engine = FakeEngine(load_error=EngineInitError("ffmpeg binary not found"))
        orchestrator = _orchestrator(engine)

        job = await orchestrator.start(_upload())

        assert job.status is CompressionStatus.ERROR
        assert job.error.kind is ErrorKind.ENGINE_INIT_FAILED
        assert job.stage is CompressionStage.LOADING

    async def test_retry_after_error_creates_new_job(self) -> None:
        engine = FakeEngine(run_error=TranscodeError("transient"))
        orchestrator = _orchestrator(engine)
        failed = await orchestrator.start(_upload())

        engine.run_error = None
        job = await orchestrator.retry()

        assert job.status is CompressionStatus.COMPLETE
        assert job.generation == failed.generation + 1
        assert job.error is None
        assert engine.run_calls == 2

    async def test_retry_only_from_error(self) -> None:
        orchestrator = _orchestrator(FakeEngine())

        with pytest.raises(SessionStateError):
            await orchestrator.retry()

        await orchestrator.start(_upload())
        with pytest.raises(SessionStateError):
            await orchestrator.retry()


class TestCancel:
    """Tests for cancellation and stale-callback suppression."""

    async def test_cancel_running_job_returns_to_idle(self) -> None:
        engine = FakeEngine()
        engine.hold = asyncio.Event()
        orchestrator = _orchestrator(engine)
        snapshots = _collect(orchestrator)

        task = asyncio.ensure_future(orchestrator.start(_upload()))
        await engine.started.wait()

        assert orchestrator.cancel() is True
        job = await task

        assert job.status is CompressionStatus.IDLE
        assert orchestrator.status is CompressionStatus.IDLE
        assert snapshots[-1].status is CompressionStatus.IDLE
        assert job.artifact is None

    async def test_cancel_while_loading_then_restart(self) -> None:
        engine = FakeEngine(load_delay=0.05)
        orchestrator = _orchestrator(engine)

        first = asyncio.ensure_future(orchestrator.start(_upload()))
        while engine.load_calls < 1:
            await asyncio.sleep(0)
        assert orchestrator.job.stage is CompressionStage.LOADING

        assert orchestrator.cancel() is True
        second = asyncio.ensure_future(orchestrator.start(_upload()))
        await first
        job = await second

        assert job.status is CompressionStatus.COMPLETE
        assert job.generation == orchestrator.generation
        assert engine.run_calls == 1

    async def test_cancel_while_loading_never_runs_engine(self) -> None:
        engine = FakeEngine(load_delay=0.02)
        orchestrator = _orchestrator(engine)

        task = asyncio.ensure_future(orchestrator.start(_upload()))
        while engine.load_calls < 1:
            await asyncio.sleep(0)
        orchestrator.cancel()
        await task

        assert orchestrator.status is CompressionStatus.IDLE
        assert engine.run_calls == 0

    async def test_restart_immediately_after_cancelling_running_job(self) -> None:
        engine = FakeEngine()
        engine.hold = asyncio.Event()
        orchestrator = _orchestrator(engine)

        first = asyncio.ensure_future(orchestrator.start(_upload()))
        await engine.started.wait()
        orchestrator.cancel()
        engine.hold = None
        second = asyncio.ensure_future(orchestrator.start(_upload()))

        await first
        job = await second

        assert job.status is CompressionStatus.COMPLETE
        assert engine.run_calls == 2

    async def test_cancel_is_noop_after_complete(self) -> None:
        orchestrator = _orchestrator(FakeEngine())
        await orchestrator.start(_upload())
        before = orchestrator.job

        assert orchestrator.cancel() is False
        assert orchestrator.cancel() is False
        assert orchestrator.job == before

    async def test_cancel_is_noop_after_error(self) -> None:
        orchestrator = _orchestrator(FakeEngine(run_error=TranscodeError("boom")))
        await orchestrator.start(_upload())
        before = orchestrator.job

        assert orchestrator.cancel() is False
        assert orchestrator.job == before
        assert orchestrator.status is CompressionStatus.ERROR

    async def test_stale_callback_does_not_touch_new_job(self) -> None:
        engine = FakeEngine(progress=(0.1,))
        engine.hold = asyncio.Event()
        orchestrator = _orchestrator(engine)

        first = asyncio.ensure_future(orchestrator.start(_upload()))
        await engine.started.wait()
        orchestrator.cancel()
        await first

        engine.progress = ()
        engine.hold = asyncio.Event()
        second = asyncio.ensure_future(orchestrator.start(_upload()))
        while engine.run_calls < 2:
            await asyncio.sleep(0)
        current = orchestrator.job

        stale_callback = engine.callbacks[0]
        stale_callback(0.99)

        assert orchestrator.job == current
        assert orchestrator.job.percentage == 10

        engine.hold.set()
        job = await second
        assert job.status is CompressionStatus.COMPLETE

    async def test_stale_callback_after_cancel_keeps_idle(self) -> None:
        engine = FakeEngine(progress=())
        engine.hold = asyncio.Event()
        orchestrator = _orchestrator(engine)

        task = asyncio.ensure_future(orchestrator.start(_upload()))
        await engine.started.wait()
        orchestrator.cancel()
        await task

        engine.callbacks[0](0.5)

        assert orchestrator.status is CompressionStatus.IDLE
        assert orchestrator.job.percentage == 0


class TestSkipAndReset:
    """Tests for opting out of compression and resetting."""

    def test_skip_uses_original_file(self) -> None:
        orchestrator = _orchestrator(FakeEngine())

        job = orchestrator.skip(_upload(4_000, name="memo.wav"))

        assert job.status is CompressionStatus.SKIPPED
        assert job.artifact.compressed is False
        assert job.artifact.filename == "memo.wav"
        assert job.artifact.format == "wav"
        assert job.artifact.compression_ratio == 0

    async def test_skip_after_error(self) -> None:
        orchestrator = _orchestrator(FakeEngine(run_error=TranscodeError("boom")))
        await orchestrator.start(_upload())

        job = orchestrator.skip(_upload())

        assert job.status is CompressionStatus.SKIPPED

    async def test_skip_after_complete_rejected(self) -> None:
        orchestrator = _orchestrator(FakeEngine())
        await orchestrator.start(_upload())

        with pytest.raises(SessionStateError):
            orchestrator.skip(_upload())

    async def test_reset_returns_to_idle(self) -> None:
        orchestrator = _orchestrator(FakeEngine())
        await orchestrator.start(_upload())

        orchestrator.reset()

        assert orchestrator.status is CompressionStatus.IDLE
        assert orchestrator.job.artifact is None
        job = await orchestrator.start(_upload())
        assert job.status is CompressionStatus.COMPLETE

"""Tests for audio_ingest.observability.metrics module."""

from __future__ import annotations

import json
import time
from dataclasses import asdict

import pytest

from audio_ingest.observability.metrics import (
    SessionMetrics,
    StageTimer,
    log_session_metrics,
)


def _make_session_metrics(**overrides) -> SessionMetrics:
    """Create a SessionMetrics with sensible defaults, applying any overrides."""
    defaults = {
        "session_id": "a1b2c3d4e5f6",
        "status": "success",
        "original_size_bytes": 30_000_000,
        "artifact_size_bytes": 6_000_000,
        "compression_ratio": 80,
        "compression_bitrate_kbps": 48,
        "transcription_attempts": 1,
        "chat_turns": 2,
    }
    defaults.update(overrides)
    return SessionMetrics(**defaults)


class TestSessionMetrics:
    """Tests for SessionMetrics dataclass."""

    def test_defaults(self):
        metrics = SessionMetrics(session_id="s1")

        assert metrics.status == "pending"
        assert metrics.stage_durations == {}
        assert metrics.compression_skipped is False
        assert metrics.error_kind is None

    def test_serializes_all_fields_to_dict(self):
        d = asdict(_make_session_metrics())

        assert d["session_id"] == "a1b2c3d4e5f6"
        assert d["original_size_bytes"] == 30_000_000
        assert d["artifact_size_bytes"] == 6_000_000
        assert d["compression_ratio"] == 80
        assert d["compression_bitrate_kbps"] == 48
        assert d["chat_turns"] == 2
        assert d["error_stage"] is None

    def test_record_stage_rounds_duration(self):
        metrics = SessionMetrics(session_id="s1")
        timer = StageTimer("transcription")
        timer.duration_seconds = 1.23456

        metrics.record_stage(timer)

        assert metrics.stage_durations == {"transcription": 1.235}

    def test_stage_durations_not_shared(self):
        first = SessionMetrics(session_id="s1")
        second = SessionMetrics(session_id="s2")
        first.stage_durations["chat"] = 1.0

        assert second.stage_durations == {}


class TestStageTimer:
    """Tests for StageTimer context manager."""

    def test_measures_elapsed_time(self):
        timer = StageTimer("compression")
        with timer:
            time.sleep(0.05)

        assert timer.stage_name == "compression"
        assert timer.duration_seconds >= 0.04
        assert timer.start_time is not None
        assert timer.end_time >= timer.start_time

    def test_records_duration_when_body_raises(self):
        timer = StageTimer("chat")
        with pytest.raises(RuntimeError):
            with timer:
                raise RuntimeError("boom")

        assert timer.end_time is not None


class TestLogSessionMetrics:
    """Tests for log_session_metrics() output."""

    def test_emits_single_json_line(self, capsys):
        log_session_metrics(_make_session_metrics())

        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 1
        parsed = json.loads(lines[0])
        assert parsed["metric_type"] == "ingestion_session"
        assert parsed["severity"] == "INFO"
        assert parsed["session_id"] == "a1b2c3d4e5f6"
        assert parsed["compression_ratio"] == 80
        assert "timestamp" in parsed

    def test_failure_fields_serialize(self, capsys):
        log_session_metrics(
            _make_session_metrics(
                status="failed", error_stage="transcription", error_kind="auth_failed"
            )
        )

        parsed = json.loads(capsys.readouterr().out)
        assert parsed["status"] == "failed"
        assert parsed["error_stage"] == "transcription"
        assert parsed["error_kind"] == "auth_failed"

"""Ingestion session metrics collection and reporting.

Provides SessionMetrics for structured observability data, StageTimer for
measuring stage durations, and log_session_metrics() for emitting one
JSON line per finished session to stdout.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime


@dataclass
class SessionMetrics:
    """Metrics collected for a single ingestion session."""

    session_id: str
    status: str = "pending"
    original_size_bytes: int = 0
    artifact_size_bytes: int = 0
    compression_ratio: int = 0
    compression_skipped: bool = False
    compression_bitrate_kbps: int | None = None
    stage_durations: dict[str, float] = field(default_factory=dict)
    transcription_attempts: int = 0
    chat_turns: int = 0
    error_stage: str | None = None
    error_kind: str | None = None

    def record_stage(self, timer: StageTimer) -> None:
        self.stage_durations[timer.stage_name] = round(timer.duration_seconds, 3)


class StageTimer:
    """Context manager that records wall-clock duration of a pipeline stage.

    Usage:
        timer = StageTimer("compression")
        with timer:
            await do_work()
        print(timer.duration_seconds)
    """

    def __init__(self, stage_name: str) -> None:
        self.stage_name = stage_name
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.duration_seconds: float = 0.0
        self._mono_start: float = 0.0

    def __enter__(self) -> StageTimer:
        self.start_time = datetime.now(UTC)
        self._mono_start = time.monotonic()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.duration_seconds = time.monotonic() - self._mono_start
        self.end_time = datetime.now(UTC)


def log_session_metrics(metrics: SessionMetrics) -> None:
    """Emit session metrics as a single structured JSON line to stdout.

    Args:
        metrics: Populated SessionMetrics.
    """
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO",
        "metric_type": "ingestion_session",
        **asdict(metrics),
    }
    print(json.dumps(entry))

"""Pluggable transcoding engines.

Public API:
    TranscodeEngine        Abstract base class for engine implementations.
    EncodeArgs             Encode parameters for one run.
    EngineHandle           Capability returned by TranscodeEngine.load().
    EngineOutput           Bytes produced by one run.
    FFmpegEngine           ffmpeg/ffprobe subprocess engine.
    get_transcode_engine   Factory to create engines by provider name.
"""

from audio_ingest.audio.engine.ffmpeg import FFmpegEngine
from audio_ingest.audio.engine.interface import (
    EncodeArgs,
    EngineHandle,
    EngineOutput,
    TranscodeEngine,
)
from audio_ingest.audio.engine.registry import get_transcode_engine

__all__ = [
    "TranscodeEngine",
    "EncodeArgs",
    "EngineHandle",
    "EngineOutput",
    "FFmpegEngine",
    "get_transcode_engine",
]

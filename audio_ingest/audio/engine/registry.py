"""Transcoding engine registry with configuration-driven provider selection.

Maps provider name strings to engine classes. Use get_transcode_engine()
to instantiate an engine by name with engine-specific configuration.
"""

from audio_ingest.audio.engine.ffmpeg import FFmpegEngine
from audio_ingest.audio.engine.interface import TranscodeEngine
from audio_ingest.utils.errors import EngineInitError

TRANSCODE_ENGINES: dict[str, type[TranscodeEngine]] = {
    "ffmpeg": FFmpegEngine,
}


def get_transcode_engine(provider: str, **kwargs: object) -> TranscodeEngine:
    """Create a transcoding engine instance by provider name.

    Args:
        provider: Provider name (e.g., "ffmpeg").
        **kwargs: Engine-specific configuration passed to the constructor.

    Returns:
        An unloaded TranscodeEngine instance.

    Raises:
        EngineInitError: If the provider name is not registered.
    """
    engine_cls = TRANSCODE_ENGINES.get(provider)
    if not engine_cls:
        available = ", ".join(sorted(TRANSCODE_ENGINES.keys()))
        raise EngineInitError(
            f"Unknown transcode engine: '{provider}'. Available: {available}"
        )
    return engine_cls(**kwargs)

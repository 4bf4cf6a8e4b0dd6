"""Abstract transcoding engine interface and data models.

The engine is a black box that is loaded once, then accepts input bytes
plus encode parameters and produces output bytes while reporting
fractional progress. Concrete implementations (e.g., FFmpegEngine)
subclass TranscodeEngine.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

NativeProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class EncodeArgs:
    """Encode parameters handed to the engine for one run."""

    sample_rate: int
    channels: int
    bitrate_kbps: int
    output_format: str
    codec: str


@dataclass(frozen=True)
class EngineHandle:
    """Read-only capability returned by a successful load."""

    provider: str
    binary_path: str
    version: str
    probe_path: str | None = None


@dataclass
class EngineOutput:
    """Bytes produced by one engine run."""

    data: bytes
    duration_seconds: float | None = None


class TranscodeEngine(ABC):
    """Abstract base class for transcoding engine implementations.

    Subclasses must implement load() and run().
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier (e.g., 'ffmpeg')."""

    @abstractmethod
    async def load(self, locator: str) -> EngineHandle:
        """Initialize the engine from its core asset locator.

        Args:
            locator: Engine-specific asset locator (binary name or path).

        Returns:
            EngineHandle used for every subsequent run.

        Raises:
            EngineInitError: If the engine cannot be initialized.
        """

    @abstractmethod
    async def run(
        self,
        handle: EngineHandle,
        workspace: str,
        input_name: str,
        input_bytes: bytes,
        args: EncodeArgs,
        on_progress: NativeProgressCallback,
    ) -> EngineOutput:
        """Transcode input bytes into the requested output format.

        Args:
            handle: Handle returned by load().
            workspace: Directory for staged input/output files. The caller
                owns it and removes it after the run.
            input_name: Filename for the staged input (keeps the extension).
            input_bytes: Raw bytes of the uploaded audio.
            args: Encode parameters.
            on_progress: Called with fractional completion in [0, 1].

        Returns:
            EngineOutput with the encoded bytes.

        Raises:
            TranscodeError: If the engine fails to produce output.
        """

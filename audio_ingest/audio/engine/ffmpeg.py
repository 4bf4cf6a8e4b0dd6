"""ffmpeg-backed transcoding engine.

Loads by resolving the ffmpeg binary (and its ffprobe sibling) and checking
`ffmpeg -version`. Each run stages the input in the caller's workspace,
probes its duration, and encodes with `-progress pipe:1` so that
out_time_us updates can be reported as fractional progress.
"""

import asyncio
import logging
import os
import shutil

from audio_ingest.audio.engine.interface import (
    EncodeArgs,
    EngineHandle,
    EngineOutput,
    NativeProgressCallback,
    TranscodeEngine,
)
from audio_ingest.utils.errors import EngineInitError, TranscodeError

logger = logging.getLogger(__name__)

FFPROBE_TIMEOUT_SECONDS = 10
VERSION_TIMEOUT_SECONDS = 10
STDERR_TAIL_CHARS = 500


def build_ffmpeg_command(
    ffmpeg_path: str, input_path: str, output_path: str, args: EncodeArgs
) -> list[str]:
    """Build the ffmpeg argument vector for one encode."""
    return [
        ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-i",
        input_path,
        "-vn",
        "-ar",
        str(args.sample_rate),
        "-ac",
        str(args.channels),
        "-c:a",
        args.codec,
        "-b:a",
        f"{args.bitrate_kbps}k",
        "-f",
        args.output_format,
        "-progress",
        "pipe:1",
        "-nostats",
        output_path,
    ]


def parse_progress_line(line: str, duration_seconds: float | None) -> float | None:
    """Convert one `-progress` key=value line into a fraction in [0, 1].

    Returns None for lines that carry no positional information.
    """
    key, _, value = line.strip().partition("=")
    if key == "progress" and value == "end":
        return 1.0
    # ffmpeg reports out_time_ms in microseconds too
    if key not in ("out_time_us", "out_time_ms"):
        return None
    if not duration_seconds or duration_seconds <= 0:
        return None
    try:
        micros = int(value)
    except ValueError:
        return None
    fraction = micros / (duration_seconds * 1_000_000)
    return max(0.0, min(1.0, fraction))


class FFmpegEngine(TranscodeEngine):
    """Transcoding engine driving the ffmpeg CLI as a subprocess."""

    @property
    def provider_name(self) -> str:
        return "ffmpeg"

    async def load(self, locator: str) -> EngineHandle:
        """Resolve and verify the ffmpeg binary.

        Args:
            locator: Binary name on PATH or absolute path to ffmpeg.

        Returns:
            EngineHandle with the resolved binary paths and version string.

        Raises:
            EngineInitError: If ffmpeg is missing or fails its version check.
        """
        ffmpeg_path = shutil.which(locator)
        if ffmpeg_path is None:
            raise EngineInitError(f"ffmpeg binary not found: {locator}")

        probe_path = shutil.which(
            os.path.join(os.path.dirname(ffmpeg_path), "ffprobe")
        ) or shutil.which("ffprobe")

        try:
            process = await asyncio.create_subprocess_exec(
                ffmpeg_path,
                "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), VERSION_TIMEOUT_SECONDS
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise EngineInitError(
                f"ffmpeg version check failed: {exc}", detail=str(exc)
            ) from exc

        if process.returncode != 0:
            raise EngineInitError(
                f"ffmpeg version check exited with {process.returncode}",
                detail=stderr.decode(errors="replace").strip(),
            )

        lines = stdout.decode(errors="replace").splitlines()
        version = lines[0] if lines else "unknown"
        logger.info("Loaded transcode engine: %s", version)
        return EngineHandle(
            provider=self.provider_name,
            binary_path=ffmpeg_path,
            version=version,
            probe_path=probe_path,
        )

    async def run(
        self,
        handle: EngineHandle,
        workspace: str,
        input_name: str,
        input_bytes: bytes,
        args: EncodeArgs,
        on_progress: NativeProgressCallback,
    ) -> EngineOutput:
        """Encode staged input with ffmpeg, streaming progress.

        Raises:
            TranscodeError: If the input is unreadable or ffmpeg fails.
        """
        input_path = os.path.join(workspace, input_name)
        output_path = os.path.join(workspace, f"output.{args.output_format}")
        with open(input_path, "wb") as f:
            f.write(input_bytes)

        duration = await self._probe_duration(handle, input_path)

        cmd = build_ffmpeg_command(handle.binary_path, input_path, output_path, args)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TranscodeError(
                f"Failed to start ffmpeg: {exc}", detail=str(exc)
            ) from exc

        try:
            _, stderr = await asyncio.gather(
                self._pump_progress(process.stdout, duration, on_progress),
                process.stderr.read(),
            )
            returncode = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            logger.info("ffmpeg process killed after cancellation")
            raise

        if returncode != 0:
            stderr_text = stderr.decode(errors="replace").strip()
            raise TranscodeError(
                f"ffmpeg transcode failed with exit code {returncode}",
                detail=stderr_text[-STDERR_TAIL_CHARS:],
            )

        if not os.path.exists(output_path):
            raise TranscodeError(f"ffmpeg produced no output file: {output_path}")

        with open(output_path, "rb") as f:
            data = f.read()
        return EngineOutput(data=data, duration_seconds=duration)

    async def _pump_progress(
        self,
        stream: asyncio.StreamReader,
        duration: float | None,
        on_progress: NativeProgressCallback,
    ) -> None:
        """Forward `-progress` updates from stdout as fractions."""
        while True:
            raw = await stream.readline()
            if not raw:
                return
            fraction = parse_progress_line(raw.decode(errors="replace"), duration)
            if fraction is not None:
                on_progress(fraction)

    async def _probe_duration(
        self, handle: EngineHandle, input_path: str
    ) -> float | None:
        """Read the input duration with ffprobe, failing fast on corrupt audio.

        Returns None when ffprobe is unavailable or reports no duration;
        progress is then only reported at completion.

        Raises:
            TranscodeError: If ffprobe rejects the file or times out.
        """
        if handle.probe_path is None:
            return None

        try:
            process = await asyncio.create_subprocess_exec(
                handle.probe_path,
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                input_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TranscodeError(
                f"Failed to start ffprobe: {exc}", detail=str(exc)
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), FFPROBE_TIMEOUT_SECONDS
            )
        except (asyncio.TimeoutError, asyncio.CancelledError) as exc:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if isinstance(exc, asyncio.CancelledError):
                raise
            raise TranscodeError(
                f"ffprobe timed out after {FFPROBE_TIMEOUT_SECONDS}s, "
                "file may be corrupt"
            ) from exc

        if process.returncode != 0:
            stderr_text = stderr.decode(errors="replace").strip() or "unknown error"
            raise TranscodeError(
                "Audio file is corrupt or unreadable (ffprobe)",
                detail=stderr_text,
            )

        try:
            return float(stdout.decode().strip())
        except ValueError:
            return None

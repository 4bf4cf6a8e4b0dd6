"""Upload data model shared by validation, compression and the session."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

_SIZE_UNITS = ("Bytes", "KB", "MB", "GB")


@dataclass(frozen=True)
class UploadFile:
    """An uploaded audio file as received from the UI layer."""

    name: str
    content_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        """Lowercase extension including the dot, or "" if there is none."""
        return os.path.splitext(self.name)[1].lower()

    @property
    def stem(self) -> str:
        return os.path.splitext(os.path.basename(self.name))[0] or "audio"

    @classmethod
    def from_path(cls, path: str, content_type: str = "") -> UploadFile:
        """Read a file from disk into an UploadFile."""
        with open(path, "rb") as f:
            data = f.read()
        return cls(name=os.path.basename(path), content_type=content_type, data=data)


def format_file_size(size_bytes: int) -> str:
    """Format a byte count for display, e.g. 26214400 -> "25 MB"."""
    if size_bytes <= 0:
        return "0 Bytes"
    value = float(size_bytes)
    index = 0
    while value >= 1024 and index < len(_SIZE_UNITS) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {_SIZE_UNITS[index]}"


def compression_suggestions(size_bytes: int, limit_bytes: int) -> list[str]:
    """Suggestions for shrinking a recording that exceeds a size limit.

    Returns an empty list when the file is within the limit.
    """
    if size_bytes <= limit_bytes:
        return []
    return [
        "Reduce audio quality (lower bitrate)",
        "Convert to MP3 format with lower bitrate (128kbps or lower)",
        "Split long recordings into smaller segments",
        "Use an audio editor such as Audacity to compress the file",
    ]


def needs_compression(size_bytes: int, max_upload_bytes: int) -> bool:
    """True when a file is too large to send to the transcription endpoint as-is."""
    return size_bytes > max_upload_bytes

"""Upload and chat request validation.

Runs before any compression or network activity. A file is accepted when
either its declared MIME type or its extension is on the allow-list, since
browsers report unreliable types for some audio containers.
"""

from audio_ingest.models import UploadFile, compression_suggestions, format_file_size
from audio_ingest.utils.classifier import ClassifiedError, ErrorKind

ALLOWED_AUDIO_TYPES: tuple[str, ...] = (
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/mp4",
    "audio/m4a",
    "audio/ogg",
    "audio/webm",
)

ALLOWED_EXTENSIONS: tuple[str, ...] = (".mp3", ".wav", ".m4a", ".mp4", ".ogg", ".webm")


def is_allowed_type(file: UploadFile) -> bool:
    content_type = file.content_type.split(";", 1)[0].strip().lower()
    return content_type in ALLOWED_AUDIO_TYPES or file.extension in ALLOWED_EXTENSIONS


def validate_upload(file: UploadFile, max_input_bytes: int) -> ClassifiedError | None:
    """Check an upload's type and size.

    Args:
        file: The uploaded file.
        max_input_bytes: Largest file accepted for compression.

    Returns:
        None if the file is acceptable, otherwise a ValidationFailed error.
    """
    if file.size <= 0:
        return ClassifiedError.of(
            ErrorKind.VALIDATION_FAILED, f"File '{file.name}' is empty."
        )

    if not is_allowed_type(file):
        return ClassifiedError.of(
            ErrorKind.VALIDATION_FAILED,
            f"File type '{file.content_type or 'unknown'}' and extension "
            f"'{file.extension or 'none'}' not supported. "
            f"Supported formats: {', '.join(ALLOWED_AUDIO_TYPES)}",
        )

    if file.size > max_input_bytes:
        suggestions = "; ".join(compression_suggestions(file.size, max_input_bytes))
        return ClassifiedError.of(
            ErrorKind.VALIDATION_FAILED,
            f"File size ({format_file_size(file.size)}) exceeds the maximum "
            f"of {format_file_size(max_input_bytes)}. Try: {suggestions}",
        )
    return None


def validate_chat_request(transcript: str | None, message: str) -> ClassifiedError | None:
    """Check a chat turn before it is sent.

    Returns:
        None if the turn can be sent, otherwise a ValidationFailed error.
    """
    if not message or not message.strip():
        return ClassifiedError.of(
            ErrorKind.VALIDATION_FAILED, "Message cannot be empty"
        )
    if not transcript or not transcript.strip():
        return ClassifiedError.of(
            ErrorKind.VALIDATION_FAILED,
            "No transcript available. Please upload and transcribe an audio file first",
        )
    return None

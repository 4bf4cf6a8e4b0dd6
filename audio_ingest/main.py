"""Command-line entry point for the audio ingestion pipeline.

Compresses an audio file, transcribes it, and answers questions about the
transcript. Progress and results go to stdout, JSON logs to stderr.
SIGINT during compression cancels the job.

Usage:
    audio-ingest recording.wav --ask "Summarize the call" --ask "Who spoke?"
"""

import argparse
import asyncio
import logging
import mimetypes
import signal
import sys

from audio_ingest.audio.compression import CompressionJob, CompressionStatus
from audio_ingest.config import IngestionConfig
from audio_ingest.models import UploadFile, format_file_size
from audio_ingest.observability.logger import configure_logging
from audio_ingest.session.session import IngestionSession
from audio_ingest.utils.classifier import ClassifiedError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audio-ingest",
        description="Compress, transcribe and question an audio recording.",
    )
    parser.add_argument("audio_file", help="Path to the audio file to ingest.")
    parser.add_argument(
        "--ask",
        action="append",
        default=[],
        metavar="QUESTION",
        help="Question to ask about the transcript (repeatable).",
    )
    parser.add_argument(
        "--skip-compression",
        action="store_true",
        help="Send the original file without compressing it.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Emit debug logs.",
    )
    return parser


def format_progress(job: CompressionJob) -> str:
    """One progress line for a compression snapshot."""
    line = f"[{job.percentage:3d}%] {job.message}"
    if job.estimated_seconds_remaining:
        line += f" (~{job.estimated_seconds_remaining}s remaining)"
    return line


def _print_error(error: ClassifiedError) -> None:
    print(f"Error: {error.message}. {error.detail}", file=sys.stderr)


async def _compress(session: IngestionSession, upload: UploadFile) -> bool:
    """Stream compression progress. Returns True once an artifact is ready."""
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, session.cancel)
    job: CompressionJob | None = None
    try:
        async for job in session.begin_compression(upload):
            if job.status is CompressionStatus.COMPRESSING:
                print(format_progress(job))
    finally:
        loop.remove_signal_handler(signal.SIGINT)

    if job is None or job.status is CompressionStatus.IDLE:
        print("Compression cancelled.", file=sys.stderr)
        return False
    if job.status is CompressionStatus.ERROR:
        _print_error(job.error)
        return False

    artifact = job.artifact
    print(
        f"Compressed {format_file_size(artifact.original_size_bytes)} -> "
        f"{format_file_size(artifact.size_bytes)} "
        f"({artifact.compression_ratio}% smaller, "
        f"~{artifact.upload_time_saved_seconds}s upload time saved)"
    )
    return True


async def run(args: argparse.Namespace, session: IngestionSession) -> int:
    """Drive one ingestion session from parsed arguments.

    Returns:
        Process exit code: 0 on success, 1 on any failure.
    """
    content_type = mimetypes.guess_type(args.audio_file)[0] or ""
    try:
        upload = UploadFile.from_path(args.audio_file, content_type=content_type)
    except OSError as exc:
        print(f"Error: cannot read {args.audio_file}: {exc}", file=sys.stderr)
        return 1

    error = session.validate(upload)
    if error is not None:
        _print_error(error)
        return 1

    try:
        if args.skip_compression:
            session.skip_compression(upload)
        elif not await _compress(session, upload):
            return 1

        outcome = await session.transcribe()
        if not outcome.ok:
            _print_error(outcome.error)
            return 1
        print("\nTranscript:\n" + outcome.value)

        for question in args.ask:
            answer = await session.ask(question)
            if not answer.ok:
                _print_error(answer.error)
                return 1
            print(f"\nQ: {question}\nA: {answer.value}")
        return 0
    finally:
        session.finish()


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, configure logging and run the pipeline."""
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        session = IngestionSession(IngestionConfig.from_env())
    except ValueError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        return 1

    return asyncio.run(run(args, session))


if __name__ == "__main__":
    raise SystemExit(main())

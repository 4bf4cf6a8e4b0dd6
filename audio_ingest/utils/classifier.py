"""Failure classification for transcoding and remote inference calls.

Maps any exception raised inside the pipeline to a ClassifiedError: a
stable (kind, message, status) triple that is the only failure
representation surfaced past the session façade. Matching is driven by
an ordered rule table so that specific categories (quota, auth) win over
generic fallbacks (timeout, unknown).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import httpx

from audio_ingest.utils.errors import (
    ArtifactTooLargeError,
    CallTimeoutError,
    EmptyResponseError,
    EngineInitError,
    FileValidationError,
    TranscodeError,
)

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Stable failure categories surfaced to callers."""

    VALIDATION_FAILED = "validation_failed"
    QUOTA_EXCEEDED = "quota_exceeded"
    AUTH_FAILED = "auth_failed"
    SERVICE_UNAVAILABLE = "service_unavailable"
    REQUEST_TOO_LARGE = "request_too_large"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    TIMEOUT = "timeout"
    EMPTY_RESPONSE = "empty_response"
    ENGINE_INIT_FAILED = "engine_init_failed"
    UNKNOWN = "unknown"


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.SERVICE_UNAVAILABLE, ErrorKind.TIMEOUT, ErrorKind.UNKNOWN}
)

# kind -> (suggested status, user-facing message, default detail)
_KIND_DEFAULTS: dict[ErrorKind, tuple[int, str, str]] = {
    ErrorKind.VALIDATION_FAILED: (
        400,
        "Invalid file",
        "The uploaded file could not be accepted.",
    ),
    ErrorKind.QUOTA_EXCEEDED: (
        429,
        "Service quota exceeded",
        "Please try again later or contact support.",
    ),
    ErrorKind.AUTH_FAILED: (
        401,
        "Authentication failed",
        "Invalid API credentials.",
    ),
    ErrorKind.SERVICE_UNAVAILABLE: (
        503,
        "Service not available",
        "The remote service is currently unavailable.",
    ),
    ErrorKind.REQUEST_TOO_LARGE: (
        400,
        "Request too long",
        "The transcript or message is too long. Please try with shorter content.",
    ),
    ErrorKind.PAYLOAD_TOO_LARGE: (
        413,
        "File too large for processing",
        "Please compress your audio file or use a shorter recording.",
    ),
    ErrorKind.TIMEOUT: (
        408,
        "Request timed out",
        "The service did not respond in time. Please try again.",
    ),
    ErrorKind.EMPTY_RESPONSE: (
        500,
        "No response generated",
        "The AI model did not generate a response.",
    ),
    ErrorKind.ENGINE_INIT_FAILED: (
        500,
        "Audio compression unavailable",
        "The transcoding engine could not be loaded.",
    ),
    ErrorKind.UNKNOWN: (
        500,
        "Request failed",
        "An unexpected error occurred. Please try again.",
    ),
}


@dataclass(frozen=True)
class ClassifiedError:
    """A classified failure: kind, user-facing message and suggested status."""

    kind: ErrorKind
    message: str
    status_code: int
    detail: str

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @classmethod
    def of(cls, kind: ErrorKind, detail: str | None = None) -> ClassifiedError:
        """Build a ClassifiedError with the kind's default message and status."""
        status_code, message, default_detail = _KIND_DEFAULTS[kind]
        return cls(
            kind=kind,
            message=message,
            status_code=status_code,
            detail=detail or default_detail,
        )


@dataclass(frozen=True)
class Evidence:
    """Normalized view of a raw failure that rule predicates match against."""

    error: BaseException
    text: str
    status_code: int | None


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the rule table: first matching predicate wins."""

    name: str
    kind: ErrorKind
    matches: Callable[[Evidence], bool]
    # Typed errors carry a useful message of their own
    keep_detail: bool = False
    detail: str | None = None


def _text_has(*needles: str) -> Callable[[Evidence], bool]:
    return lambda ev: any(needle in ev.text for needle in needles)


def _status_in(*codes: int) -> Callable[[Evidence], bool]:
    return lambda ev: ev.status_code in codes


def _any(*predicates: Callable[[Evidence], bool]) -> Callable[[Evidence], bool]:
    return lambda ev: any(predicate(ev) for predicate in predicates)


def _is_instance(*types: type[BaseException]) -> Callable[[Evidence], bool]:
    return lambda ev: isinstance(ev.error, types)


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "validation",
        ErrorKind.VALIDATION_FAILED,
        _is_instance(FileValidationError),
        keep_detail=True,
    ),
    ClassificationRule(
        "engine_init",
        ErrorKind.ENGINE_INIT_FAILED,
        _is_instance(EngineInitError),
        keep_detail=True,
    ),
    ClassificationRule(
        "transcode",
        ErrorKind.UNKNOWN,
        _is_instance(TranscodeError),
        detail="Audio compression failed. Please retry or skip compression.",
    ),
    ClassificationRule(
        "artifact_too_large",
        ErrorKind.REQUEST_TOO_LARGE,
        _is_instance(ArtifactTooLargeError),
        keep_detail=True,
    ),
    ClassificationRule(
        "empty_response",
        ErrorKind.EMPTY_RESPONSE,
        _is_instance(EmptyResponseError),
    ),
    ClassificationRule(
        "quota",
        ErrorKind.QUOTA_EXCEEDED,
        _any(
            _status_in(429),
            _text_has("quota", "rate limit", "ratelimit", "too many requests"),
        ),
    ),
    ClassificationRule(
        "auth",
        ErrorKind.AUTH_FAILED,
        _any(
            _status_in(401, 403),
            _text_has(
                "unauthorized",
                "authentication",
                "invalid api key",
                "incorrect api key",
                "access denied",
                "credential",
            ),
        ),
    ),
    ClassificationRule(
        "not_found",
        ErrorKind.SERVICE_UNAVAILABLE,
        _any(
            _status_in(404, 503),
            _text_has("not found", "deploymentnotfound", "service unavailable"),
        ),
    ),
    ClassificationRule(
        "token_limit",
        ErrorKind.REQUEST_TOO_LARGE,
        _text_has(
            "maximum context",
            "context length",
            "context_length",
            "max_tokens",
            "tokens exceed",
            "too many tokens",
            "token limit",
            "too long",
        ),
    ),
    ClassificationRule(
        "payload_too_large",
        ErrorKind.PAYLOAD_TOO_LARGE,
        _any(
            _status_in(413),
            _text_has(
                "request entity too large",
                "entity too large",
                "function_payload_too_large",
                "payload too large",
            ),
        ),
    ),
    ClassificationRule(
        "timeout",
        ErrorKind.TIMEOUT,
        _any(
            _is_instance(CallTimeoutError, TimeoutError, asyncio.TimeoutError),
            _is_instance(httpx.TimeoutException),
            _text_has("timed out", "timeout"),
        ),
    ),
    ClassificationRule(
        "transport",
        ErrorKind.SERVICE_UNAVAILABLE,
        _is_instance(httpx.TransportError),
    ),
)


def classify(error: BaseException) -> ClassifiedError:
    """Classify a raw failure into a ClassifiedError.

    Never raises: anything that cannot be matched (or that breaks a
    predicate) becomes ErrorKind.UNKNOWN.

    Args:
        error: The exception raised by the transcoder or a remote call.

    Returns:
        ClassifiedError with kind, user-facing message and status code.
    """
    try:
        evidence = _gather_evidence(error)
        for rule in CLASSIFICATION_RULES:
            if rule.matches(evidence):
                detail = _primary_message(error) if rule.keep_detail else rule.detail
                return ClassifiedError.of(rule.kind, detail)
    except Exception:
        logger.error("Error classification failed", exc_info=True)
    return ClassifiedError.of(ErrorKind.UNKNOWN)


def _gather_evidence(error: BaseException) -> Evidence:
    """Collect lowercase text and an HTTP status from an error and its causes."""
    parts: list[str] = []
    status_code: int | None = None
    current: BaseException | None = error
    seen: set[int] = set()
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        parts.append(type(current).__name__)
        # Primary message only; IngestionError.__str__ adds a session prefix
        message = _primary_message(current)
        parts.append(message if message is not None else str(current))
        if status_code is None:
            status_code = extract_http_status_code(current)
        current = current.__cause__ or current.__context__
    return Evidence(
        error=error,
        text=" ".join(parts).lower(),
        status_code=status_code,
    )


def extract_http_status_code(error: BaseException) -> int | None:
    """Return the HTTP status carried by an exception, if any."""
    for field_name in ("status_code", "status", "http_status"):
        parsed = _to_int_or_none(getattr(error, field_name, None))
        if parsed is not None:
            return parsed

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code

    response = getattr(error, "response", None)
    if response is not None:
        return _to_int_or_none(getattr(response, "status_code", None))
    return None


def _primary_message(error: BaseException) -> str | None:
    if error.args and isinstance(error.args[0], str):
        return error.args[0]
    return None


def _to_int_or_none(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return None

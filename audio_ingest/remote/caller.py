"""Retry, timeout and classification wrapper for remote endpoint calls.

ResilientCaller is used unchanged for both the transcription and the chat
endpoint. One execute() call runs:

1. Request construction, raced against a deadline. Overrunning it is a
   Timeout and consumes no network attempt.
2. A size precheck against the configured remote ceiling.
3. Up to RetryPolicy.max_attempts sends, each raced against the
   per-attempt timeout. Failures are classified; only retryable kinds
   are retried, after the policy's backoff delay.
4. Payload validation: a response without generated text is a terminal
   EmptyResponse.

execute() never raises for remote failures. It returns a CallOutcome
holding either the text or a ClassifiedError, plus the attempt records.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

from audio_ingest.models import format_file_size
from audio_ingest.remote.interface import RemoteEndpoint
from audio_ingest.utils.classifier import ClassifiedError, ErrorKind, classify
from audio_ingest.utils.errors import CallTimeoutError, EmptyResponseError
from audio_ingest.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

RequestT = TypeVar("RequestT")
ValueT = TypeVar("ValueT")

RequestBuilder = Callable[[], object]


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass(frozen=True)
class CallAttempt:
    """Record of one outbound try."""

    index: int
    elapsed_seconds: float
    outcome: AttemptOutcome
    error: ClassifiedError | None = None


@dataclass
class CallOutcome(Generic[ValueT]):
    """Result of a resilient call: a value or a classified error, never both."""

    value: ValueT | None = None
    error: ClassifiedError | None = None
    attempts: list[CallAttempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(
        cls, error: ClassifiedError, attempts: list[CallAttempt] | None = None
    ) -> CallOutcome:
        return cls(error=error, attempts=attempts or [])


class ResilientCaller(Generic[RequestT]):
    """Executes remote calls with precheck, hard timeouts and bounded retries.

    Args:
        endpoint: Remote endpoint to call.
        timeout: Per-attempt wall-clock limit in seconds; also the default
            deadline for request construction.
        max_request_bytes: Remote size ceiling, or None for no precheck.
        policy: Retry policy (default: 3 attempts, 1s base delay).
        sleep: Awaitable sleep, injectable for tests.
        clock: Monotonic clock used for attempt timing.
        session_id: Used for log context only.
    """

    def __init__(
        self,
        endpoint: RemoteEndpoint,
        timeout: float,
        max_request_bytes: int | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        session_id: str | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_request_bytes = max_request_bytes
        self.policy = policy or RetryPolicy()
        self.session_id = session_id
        self._sleep = sleep
        self._clock = clock

    async def execute(
        self,
        build_request: RequestBuilder,
        deadline: float | None = None,
    ) -> CallOutcome[str]:
        """Build a request and send it with retries.

        Args:
            build_request: Returns the request, or an awaitable of it.
            deadline: Seconds allowed for request construction
                (default: the per-attempt timeout).

        Returns:
            CallOutcome with the generated text or a ClassifiedError.
        """
        deadline = self.timeout if deadline is None else deadline
        try:
            request = await asyncio.wait_for(_resolve(build_request), deadline)
        except asyncio.TimeoutError:
            error = classify(
                CallTimeoutError(
                    f"Request preparation timed out after {deadline}s",
                    session_id=self.session_id,
                    timeout_seconds=deadline,
                )
            )
            logger.warning(
                "Request preparation for %s exceeded %ss",
                self.endpoint.name,
                deadline,
                extra={"session_id": self.session_id, "error_kind": error.kind.value},
            )
            return CallOutcome.failure(error)
        except Exception as exc:
            error = classify(exc)
            logger.warning(
                "Request preparation for %s failed: %s",
                self.endpoint.name,
                error.kind.value,
                exc_info=True,
                extra={"session_id": self.session_id, "error_kind": error.kind.value},
            )
            return CallOutcome.failure(error)

        precheck = self._precheck(request)
        if precheck is not None:
            return CallOutcome.failure(precheck)

        attempts: list[CallAttempt] = []
        attempt_index = 0
        while True:
            started = self._clock()
            text, error = await self._attempt(request, attempt_index)
            elapsed = self._clock() - started

            if error is None:
                attempts.append(
                    CallAttempt(attempt_index, elapsed, AttemptOutcome.SUCCESS)
                )
                logger.info(
                    "%s call succeeded on attempt %d",
                    self.endpoint.name,
                    attempt_index + 1,
                    extra={
                        "session_id": self.session_id,
                        "attempt": attempt_index + 1,
                        "duration_seconds": round(elapsed, 3),
                    },
                )
                return CallOutcome(value=text, attempts=attempts)

            delay = self.policy.delay_for(error, attempt_index)
            outcome = (
                AttemptOutcome.TERMINAL_FAILURE
                if delay is None
                else AttemptOutcome.RETRYABLE_FAILURE
            )
            attempts.append(CallAttempt(attempt_index, elapsed, outcome, error))
            if delay is None:
                return CallOutcome.failure(error, attempts)

            logger.warning(
                "%s call attempt %d failed (%s), retrying in %.1fs",
                self.endpoint.name,
                attempt_index + 1,
                error.kind.value,
                delay,
                extra={
                    "session_id": self.session_id,
                    "attempt": attempt_index + 1,
                    "error_kind": error.kind.value,
                },
            )
            await self._sleep(delay)
            attempt_index += 1

    async def _attempt(
        self, request: RequestT, attempt_index: int
    ) -> tuple[str | None, ClassifiedError | None]:
        """Send once. Returns (text, None) on success or (None, error)."""
        try:
            payload = await asyncio.wait_for(
                self.endpoint.send(request), self.timeout
            )
        except asyncio.TimeoutError:
            return None, classify(
                CallTimeoutError(
                    f"{self.endpoint.name} call timed out after {self.timeout}s",
                    session_id=self.session_id,
                    timeout_seconds=self.timeout,
                )
            )
        except Exception as exc:
            error = classify(exc)
            logger.warning(
                "%s call attempt %d raised %s",
                self.endpoint.name,
                attempt_index + 1,
                type(exc).__name__,
                exc_info=True,
                extra={
                    "session_id": self.session_id,
                    "attempt": attempt_index + 1,
                    "error_kind": error.kind.value,
                    "error": str(exc),
                },
            )
            return None, error

        try:
            text = self.endpoint.extract_text(payload)
        except Exception:
            logger.error(
                "Could not read %s response payload",
                self.endpoint.name,
                exc_info=True,
                extra={"session_id": self.session_id},
            )
            text = None

        if not text:
            return None, classify(
                EmptyResponseError(
                    f"{self.endpoint.name} response contained no text",
                    session_id=self.session_id,
                    provider=self.endpoint.name,
                )
            )
        return text, None

    def _precheck(self, request: RequestT) -> ClassifiedError | None:
        if self.max_request_bytes is None:
            return None
        size = self.endpoint.request_size(request)
        if size <= self.max_request_bytes:
            return None
        logger.warning(
            "Rejected %s request of %d bytes before sending (limit %d)",
            self.endpoint.name,
            size,
            self.max_request_bytes,
            extra={
                "session_id": self.session_id,
                "error_kind": ErrorKind.PAYLOAD_TOO_LARGE.value,
            },
        )
        return ClassifiedError.of(
            ErrorKind.PAYLOAD_TOO_LARGE,
            f"Request is {format_file_size(size)}, above the "
            f"{format_file_size(self.max_request_bytes)} limit. "
            "Please compress your audio file or use a shorter recording.",
        )


async def _resolve(build_request: RequestBuilder) -> object:
    result = build_request()
    if inspect.isawaitable(result):
        return await result
    return result

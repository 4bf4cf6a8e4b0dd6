"""Tests for ResilientCaller retry, timeout and precheck behavior."""

import asyncio

import httpx
import pytest

from audio_ingest.remote.caller import AttemptOutcome, ResilientCaller
from audio_ingest.remote.interface import ChatRequest, TranscriptionRequest
from audio_ingest.utils.classifier import ErrorKind
from audio_ingest.utils.errors import RemoteServiceError
from audio_ingest.utils.retry import RetryPolicy
from tests.fakes import FakeEndpoint, recording_sleep

REQUEST = ChatRequest(transcript="Alice: hello", message="Who spoke?")


def _unavailable() -> RemoteServiceError:
    return RemoteServiceError("upstream down", status_code=503, provider="fake")


def _caller(endpoint: FakeEndpoint, **kwargs) -> tuple[ResilientCaller, list[float]]:
    delays, sleep = recording_sleep()
    kwargs.setdefault("timeout", 10.0)
    return ResilientCaller(endpoint, sleep=sleep, **kwargs), delays


class TestRetries:
    """Tests for classification-driven retries."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self) -> None:
        endpoint = FakeEndpoint(["Alice spoke."])
        caller, delays = _caller(endpoint)

        outcome = await caller.execute(lambda: REQUEST)

        assert outcome.ok
        assert outcome.value == "Alice spoke."
        assert endpoint.calls == 1
        assert delays == []
        assert [a.outcome for a in outcome.attempts] == [AttemptOutcome.SUCCESS]

    @pytest.mark.asyncio
    async def test_two_retryable_failures_then_success(self) -> None:
        endpoint = FakeEndpoint([_unavailable(), _unavailable(), "Alice spoke."])
        caller, delays = _caller(endpoint)

        outcome = await caller.execute(lambda: REQUEST)

        assert outcome.ok
        assert outcome.value == "Alice spoke."
        assert endpoint.calls == 3
        assert delays == [1.0, 2.0]
        assert [a.outcome for a in outcome.attempts] == [
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.SUCCESS,
        ]
        assert [a.index for a in outcome.attempts] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_auth_failure_is_not_retried(self) -> None:
        endpoint = FakeEndpoint(
            [RemoteServiceError("Unauthorized", status_code=401, provider="fake")]
        )
        caller, delays = _caller(endpoint)

        outcome = await caller.execute(lambda: REQUEST)

        assert not outcome.ok
        assert outcome.error.kind is ErrorKind.AUTH_FAILED
        assert outcome.error.status_code == 401
        assert endpoint.calls == 1
        assert delays == []
        assert outcome.attempts[0].outcome is AttemptOutcome.TERMINAL_FAILURE

    @pytest.mark.asyncio
    async def test_quota_failure_is_not_retried(self) -> None:
        endpoint = FakeEndpoint(
            [RemoteServiceError("quota exceeded", status_code=429, provider="fake")]
        )
        caller, _ = _caller(endpoint)

        outcome = await caller.execute(lambda: REQUEST)

        assert outcome.error.kind is ErrorKind.QUOTA_EXCEEDED
        assert endpoint.calls == 1

    @pytest.mark.asyncio
    async def test_exhausted_budget_surfaces_last_failure(self) -> None:
        endpoint = FakeEndpoint([httpx.ConnectError("connection refused")])
        caller, delays = _caller(endpoint)

        outcome = await caller.execute(lambda: REQUEST)

        assert outcome.error.kind is ErrorKind.SERVICE_UNAVAILABLE
        assert endpoint.calls == 3
        assert delays == [1.0, 2.0]
        assert outcome.attempts[-1].outcome is AttemptOutcome.TERMINAL_FAILURE

    @pytest.mark.asyncio
    async def test_custom_policy(self) -> None:
        endpoint = FakeEndpoint([_unavailable()])
        caller, delays = _caller(endpoint, policy=RetryPolicy(max_attempts=2, base_delay=0.5))

        outcome = await caller.execute(lambda: REQUEST)

        assert not outcome.ok
        assert endpoint.calls == 2
        assert delays == [0.5]


class TestPayloadValidation:
    """Tests for empty or missing response text."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", ["", "   ", None])
    async def test_empty_response_is_terminal(self, payload) -> None:
        endpoint = FakeEndpoint([payload])
        caller, delays = _caller(endpoint)

        outcome = await caller.execute(lambda: REQUEST)

        assert outcome.error.kind is ErrorKind.EMPTY_RESPONSE
        assert outcome.error.status_code == 500
        assert endpoint.calls == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_extract_failure_is_empty_response(self) -> None:
        class BrokenEndpoint(FakeEndpoint):
            def extract_text(self, payload):
                raise KeyError("choices")

        caller, _ = _caller(BrokenEndpoint([{"unexpected": True}]))

        outcome = await caller.execute(lambda: REQUEST)

        assert outcome.error.kind is ErrorKind.EMPTY_RESPONSE


class TestTimeouts:
    """Tests for per-attempt and request-preparation deadlines."""

    @pytest.mark.asyncio
    async def test_slow_attempt_times_out_and_retries(self) -> None:
        async def hang() -> str:
            await asyncio.sleep(10)
            return "too late"

        endpoint = FakeEndpoint([hang, "on time"])
        caller, delays = _caller(endpoint, timeout=0.05)

        outcome = await caller.execute(lambda: REQUEST)

        assert outcome.ok
        assert outcome.value == "on time"
        assert outcome.attempts[0].error.kind is ErrorKind.TIMEOUT
        assert delays == [1.0]

    @pytest.mark.asyncio
    async def test_slow_request_build_consumes_no_attempt(self) -> None:
        endpoint = FakeEndpoint(["unused"])
        caller, delays = _caller(endpoint)

        async def slow_build() -> ChatRequest:
            await asyncio.sleep(10)
            return REQUEST

        outcome = await caller.execute(slow_build, deadline=0.05)

        assert outcome.error.kind is ErrorKind.TIMEOUT
        assert outcome.error.status_code == 408
        assert outcome.attempts == []
        assert endpoint.calls == 0

    @pytest.mark.asyncio
    async def test_request_build_failure_is_classified(self) -> None:
        endpoint = FakeEndpoint(["unused"])
        caller, _ = _caller(endpoint)

        def bad_build() -> ChatRequest:
            raise RuntimeError("form data could not be parsed")

        outcome = await caller.execute(bad_build)

        assert outcome.error.kind is ErrorKind.UNKNOWN
        assert endpoint.calls == 0


class TestPrecheck:
    """Tests for the pre-send size ceiling."""

    @pytest.mark.asyncio
    async def test_oversize_request_rejected_without_network(self) -> None:
        endpoint = FakeEndpoint(["unused"])
        caller, _ = _caller(endpoint, timeout=30.0, max_request_bytes=1_000)
        request = TranscriptionRequest(
            filename="call.ogg", content_type="audio/ogg", data=b"\x00" * 1_001
        )

        outcome = await caller.execute(lambda: request)

        assert outcome.error.kind is ErrorKind.PAYLOAD_TOO_LARGE
        assert outcome.error.status_code == 413
        assert endpoint.calls == 0

    @pytest.mark.asyncio
    async def test_request_at_ceiling_is_sent(self) -> None:
        endpoint = FakeEndpoint(["transcript"])
        caller, _ = _caller(endpoint, timeout=30.0, max_request_bytes=1_000)
        request = TranscriptionRequest(
            filename="call.ogg", content_type="audio/ogg", data=b"\x00" * 1_000
        )

        outcome = await caller.execute(lambda: request)

        assert outcome.ok
        assert endpoint.requests == [request]

    def test_rejects_non_positive_timeout(self) -> None:
        with pytest.raises(ValueError, match="timeout"):
            ResilientCaller(FakeEndpoint(["x"]), timeout=0)

"""Tests for aumai_qmgateway.retry."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from helpers import SleepRecorder
from hypothesis import given, settings
from hypothesis import strategies as st

from aumai_qmgateway.errors import GatewayError
from aumai_qmgateway.retry import RetryPolicy, is_retryable_error, retry


class FlakyOperation:
    """Fails with *error* for the first *failures* calls, then succeeds."""

    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or httpx.ConnectError("connection refused")
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "done"


class TestRetry:
    async def test_first_success_needs_no_sleep(self, sleep_recorder: SleepRecorder) -> None:
        operation = FlakyOperation(failures=0)
        assert await retry(operation, sleep=sleep_recorder) == "done"
        assert operation.calls == 1
        assert sleep_recorder.delays == []

    async def test_succeeds_after_transient_failures(self, sleep_recorder: SleepRecorder) -> None:
        operation = FlakyOperation(failures=2)
        assert await retry(operation, RetryPolicy(), sleep=sleep_recorder) == "done"
        assert operation.calls == 3
        assert sleep_recorder.delays == [1.0, 2.0]

    async def test_exhausts_budget_and_reraises_last_error(
        self, sleep_recorder: SleepRecorder
    ) -> None:
        error = httpx.ConnectTimeout("timed out")
        operation = FlakyOperation(failures=100, error=error)
        with pytest.raises(httpx.ConnectTimeout) as exc_info:
            await retry(operation, RetryPolicy(max_retries=3), sleep=sleep_recorder)
        assert exc_info.value is error
        assert operation.calls == 4
        assert sleep_recorder.delays == [1.0, 2.0, 4.0]

    async def test_delay_is_capped(self, sleep_recorder: SleepRecorder) -> None:
        policy = RetryPolicy(
            max_retries=5, initial_delay_ms=1000, max_delay_ms=3000, backoff_multiplier=2.0
        )
        with pytest.raises(httpx.ConnectError):
            await retry(FlakyOperation(failures=100), policy, sleep=sleep_recorder)
        assert sleep_recorder.delays == [1.0, 2.0, 3.0, 3.0, 3.0]

    async def test_non_retryable_error_fails_fast(self, sleep_recorder: SleepRecorder) -> None:
        operation = FlakyOperation(failures=100, error=GatewayError.validation("bad input"))
        with pytest.raises(GatewayError):
            await retry(operation, sleep=sleep_recorder)
        assert operation.calls == 1
        assert sleep_recorder.delays == []

    async def test_predicate_that_never_retries(self, sleep_recorder: SleepRecorder) -> None:
        policy = RetryPolicy(max_retries=5, is_retryable=lambda exc: False)
        operation = FlakyOperation(failures=100)
        with pytest.raises(httpx.ConnectError):
            await retry(operation, policy, sleep=sleep_recorder)
        assert operation.calls == 1

    async def test_zero_retries_means_single_attempt(self, sleep_recorder: SleepRecorder) -> None:
        operation = FlakyOperation(failures=100)
        with pytest.raises(httpx.ConnectError):
            await retry(operation, RetryPolicy(max_retries=0), sleep=sleep_recorder)
        assert operation.calls == 1

    async def test_cancellation_during_backoff_stops_attempts(self) -> None:
        operation = FlakyOperation(failures=100)
        policy = RetryPolicy(max_retries=5, initial_delay_ms=60_000)
        task = asyncio.create_task(retry(operation, policy))
        while operation.calls == 0:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert operation.calls == 1

    @given(
        failures=st.integers(min_value=0, max_value=8),
        max_retries=st.integers(min_value=0, max_value=5),
    )
    @settings(max_examples=50, deadline=None)
    def test_attempts_never_exceed_budget(self, failures: int, max_retries: int) -> None:
        operation = FlakyOperation(failures=failures)
        recorder = SleepRecorder()

        async def run() -> bool:
            try:
                await retry(operation, RetryPolicy(max_retries=max_retries), sleep=recorder)
            except httpx.ConnectError:
                return False
            return True

        succeeded = asyncio.run(run())
        assert operation.calls <= max_retries + 1
        assert succeeded == (failures <= max_retries)
        assert len(recorder.delays) == operation.calls - 1


class TestRetryPolicy:
    def test_defaults(self) -> None:
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.initial_delay_ms == 1000
        assert policy.max_delay_ms == 10_000
        assert policy.backoff_multiplier == 2.0

    def test_with_max_retries_copies(self) -> None:
        policy = RetryPolicy(initial_delay_ms=50)
        changed = policy.with_max_retries(1)
        assert changed.max_retries == 1
        assert changed.initial_delay_ms == 50
        assert policy.max_retries == 3

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"initial_delay_ms": -5},
            {"max_delay_ms": -1},
            {"backoff_multiplier": 0.5},
        ],
    )
    def test_invalid_parameters_rejected(self, kwargs: dict[str, float]) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestIsRetryableError:
    @pytest.mark.parametrize(
        "error",
        [
            httpx.ConnectError("refused"),
            httpx.ReadTimeout("slow"),
            httpx.RemoteProtocolError("reset"),
            TimeoutError(),
            ConnectionResetError(),
            GatewayError.upstream("bad gateway", 502, retryable=True),
        ],
    )
    def test_transient_errors_retry(self, error: BaseException) -> None:
        assert is_retryable_error(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            GatewayError.validation("bad"),
            GatewayError.authorization(),
            GatewayError.not_found("lot", "L-1"),
            GatewayError.rate_limited(3),
            GatewayError.circuit_open("primary"),
            GatewayError.upstream("conflict", 409),
            ValueError("nope"),
            RuntimeError("boom"),
        ],
    )
    def test_application_errors_do_not_retry(self, error: BaseException) -> None:
        assert is_retryable_error(error) is False

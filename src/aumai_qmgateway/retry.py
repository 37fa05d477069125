"""Bounded retries with exponential backoff for aumai-qmgateway."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
import structlog

from aumai_qmgateway.errors import GatewayError

logger = structlog.get_logger(__name__)

_T = TypeVar("_T")


def is_retryable_error(error: BaseException) -> bool:
    """Default predicate: only network, timeout and connection faults retry.

    Application-level failures (4xx responses, validation, authorization,
    rate limiting, open circuits) are never retried.
    """
    if isinstance(error, GatewayError):
        return error.retryable
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    return isinstance(error, (TimeoutError, ConnectionError))


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    """Parameters of one retry loop.

    Attributes:
        max_retries: Retries after the first attempt (``max_retries + 1``
            attempts in total).
        initial_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound for any single delay.
        backoff_multiplier: Factor applied to the delay after each retry.
        is_retryable: Predicate deciding whether an error may be retried.
    """

    max_retries: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 10_000
    backoff_multiplier: float = 2.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def with_max_retries(self, max_retries: int) -> RetryPolicy:
        """Return a copy with a different retry budget."""
        return dataclasses.replace(self, max_retries=max_retries)


async def retry(
    operation: Callable[[], Awaitable[_T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> _T:
    """Run *operation* until it succeeds or the policy gives up.

    Cancellation of the calling task propagates immediately, including
    while waiting between attempts; no further attempts are made.

    Args:
        operation: No-argument coroutine factory; called once per attempt.
        policy: Retry parameters (defaults to :class:`RetryPolicy`).
        sleep: Awaitable sleep taking seconds (injectable for tests).

    Returns:
        The first successful result.

    Raises:
        Exception: The last error, re-raised unchanged.
    """
    policy = policy or RetryPolicy()
    delay_ms = policy.initial_delay_ms

    for attempt in range(policy.max_retries + 1):
        try:
            return await operation()
        except Exception as exc:
            if not policy.is_retryable(exc) or attempt == policy.max_retries:
                raise
            logger.info(
                "retrying_operation",
                attempt=attempt + 1,
                max_attempts=policy.max_retries + 1,
                delay_ms=delay_ms,
                error=str(exc),
            )
            await sleep(delay_ms / 1000)
            delay_ms = min(delay_ms * policy.backoff_multiplier, policy.max_delay_ms)

    # Unreachable: the loop either returns or raises.
    raise AssertionError("retry loop exited without a result")


__all__ = ["RetryPolicy", "is_retryable_error", "retry"]

"""Per-endpoint circuit breaker for aumai-qmgateway."""

from __future__ import annotations

import dataclasses
import threading
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from aumai_qmgateway.errors import GatewayError
from aumai_qmgateway.models import CircuitState

logger = structlog.get_logger(__name__)

_T = TypeVar("_T")


@dataclasses.dataclass(frozen=True)
class CircuitBreakerSnapshot:
    """Point-in-time copy of a breaker's state, for health reporting."""

    state: CircuitState
    failure_count: int
    last_failure_time: float
    failure_threshold: int
    reset_timeout_ms: int
    enabled: bool


class CircuitBreaker:
    """Failure-tracking state machine that short-circuits a failing endpoint.

    States move CLOSED -> OPEN once ``failure_threshold`` consecutive
    failures are seen, OPEN -> HALF_OPEN after ``reset_timeout_ms`` has
    elapsed since the last failure, and HALF_OPEN -> CLOSED or back to OPEN
    depending on the outcome of a single trial call.

    HALF_OPEN admits exactly one trial.  While it is in flight, other
    callers are rejected as if the circuit were open, and a failed trial
    reopens the circuit immediately.

    All reads and transitions of ``{state, failure_count, last_failure_time}``
    happen under one lock; the wrapped operation runs outside it.

    Args:
        name: Endpoint name, used in errors and log events.
        failure_threshold: Consecutive failures that open the circuit.
        reset_timeout_ms: Cool-down before a trial call is admitted.
        enabled: When ``False`` every call passes straight through.
        clock: Monotonic time source in seconds (injectable for tests).
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60_000,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self.enabled = enabled
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Current state, after applying any due OPEN -> HALF_OPEN transition."""
        with self._lock:
            self._update_state()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def snapshot(self) -> CircuitBreakerSnapshot:
        with self._lock:
            self._update_state()
            return CircuitBreakerSnapshot(
                state=self._state,
                failure_count=self._failure_count,
                last_failure_time=self._last_failure_time,
                failure_threshold=self.failure_threshold,
                reset_timeout_ms=self.reset_timeout_ms,
                enabled=self.enabled,
            )

    async def execute(self, operation: Callable[[], Awaitable[_T]]) -> _T:
        """Run *operation* through the breaker.

        Raises:
            GatewayError: With kind ``CIRCUIT_OPEN`` when the circuit is
                open; the operation is not invoked and no failure is
                recorded.
            Exception: Whatever *operation* raised, after it was recorded.
        """
        if not self.enabled:
            return await operation()

        trial = self._admit()
        try:
            result = await operation()
        except BaseException as exc:
            # Cancellation is not a verdict on the endpoint.
            if isinstance(exc, Exception):
                self._on_failure(trial)
            elif trial:
                self._release_trial()
            raise
        self._on_success(trial)
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED (administrative use)."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = 0.0
            self._trial_in_flight = False
        logger.info("circuit_reset", endpoint=self.name)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _update_state(self) -> None:
        # Caller must hold self._lock.
        if self._state is CircuitState.OPEN:
            elapsed_ms = (self._clock() - self._last_failure_time) * 1000
            if elapsed_ms >= self.reset_timeout_ms:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info("circuit_half_open", endpoint=self.name)

    def _admit(self) -> bool:
        """Decide whether a call may proceed; return True if it is the trial."""
        with self._lock:
            self._update_state()
            if self._state is CircuitState.OPEN:
                raise GatewayError.circuit_open(self.name)
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise GatewayError.circuit_open(self.name)
                self._trial_in_flight = True
                return True
            return False

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def _on_success(self, trial: bool) -> None:
        with self._lock:
            if trial:
                self._trial_in_flight = False
                if self._state is CircuitState.HALF_OPEN:
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
                    logger.info("circuit_closed", endpoint=self.name)
            elif self._state is CircuitState.CLOSED:
                self._failure_count = 0

    def _on_failure(self, trial: bool) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            if trial:
                self._trial_in_flight = False
            if self._state is not CircuitState.OPEN and (
                trial or self._failure_count >= self.failure_threshold
            ):
                self._state = CircuitState.OPEN
                logger.warning(
                    "circuit_opened",
                    endpoint=self.name,
                    failure_count=self._failure_count,
                )


__all__ = ["CircuitBreaker", "CircuitBreakerSnapshot"]

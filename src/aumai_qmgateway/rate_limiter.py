"""Fixed-window, per-principal rate limiting for aumai-qmgateway."""

from __future__ import annotations

import dataclasses
import math
import threading
import time
from collections.abc import Callable

import structlog

from aumai_qmgateway.errors import GatewayError
from aumai_qmgateway.models import ANONYMOUS_PRINCIPAL, CallerContext

logger = structlog.get_logger(__name__)


@dataclasses.dataclass
class _Window:
    remaining: int
    resets_at: float


class FixedWindowRateLimiter:
    """Per-principal fixed-window request quota.

    Each principal gets ``max_requests`` points per window of ``window_ms``
    milliseconds; the window starts with the principal's first request.
    Callers without an identity share the ``"anonymous"`` window.

    This implementation is thread-safe.

    Example::

        limiter = FixedWindowRateLimiter(max_requests=3, window_ms=60_000)
        for _ in range(4):
            limiter.check_limit(CallerContext(user_id="alice"))  # 4th raises
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.enabled = enabled
        self._clock = clock
        # Map principal -> current window.
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check_limit(self, caller: CallerContext | str | None) -> None:
        """Consume one point for the caller's principal.

        Raises:
            GatewayError: With kind ``RATE_LIMITED`` and ``retry_after`` set to
                the whole seconds (rounded up) until the window resets.
        """
        if not self.enabled:
            return

        key = _principal(caller)
        now = self._clock()
        with self._lock:
            window = self._current_window(key, now)
            if window.remaining <= 0:
                retry_after = max(1, math.ceil(window.resets_at - now))
                exhausted = True
            else:
                window.remaining -= 1
                exhausted = False

        if exhausted:
            logger.warning("rate_limit_exceeded", user_id=key, retry_after=retry_after)
            raise GatewayError.rate_limited(retry_after)
        logger.debug("rate_limit_passed", user_id=key)

    def remaining(self, caller: CallerContext | str | None) -> int:
        """Points left in the principal's current window."""
        key = _principal(caller)
        with self._lock:
            return self._current_window(key, self._clock()).remaining

    def reset(self, caller: CallerContext | str | None) -> None:
        """Clear the principal's window immediately (no-op if unknown)."""
        with self._lock:
            self._windows.pop(_principal(caller), None)

    def _current_window(self, key: str, now: float) -> _Window:
        # Caller must hold self._lock.
        window = self._windows.get(key)
        if window is None or now >= window.resets_at:
            window = _Window(remaining=self.max_requests, resets_at=now + self.window_ms / 1000)
            self._windows[key] = window
        return window


def _principal(caller: CallerContext | str | None) -> str:
    if isinstance(caller, CallerContext):
        return caller.principal
    return caller or ANONYMOUS_PRINCIPAL


__all__ = ["FixedWindowRateLimiter"]

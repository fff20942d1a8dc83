"""Admission control for the rate-capped settlement provider.

`FixedWindowRateLimiter` hands out at most `max_rate` permits per window. The
window rolls over lazily on the first call that observes it has elapsed, so no
timer thread is needed. One instance is shared by the intake fast path and the
dispatcher; it is passed around explicitly rather than kept as module state.
"""

import threading
import time
from typing import Callable, Protocol


class RateLimiter(Protocol):
    """Contract for provider admission control.

    A multi-node limiter (e.g. Redis-backed) must keep the same semantics:
    all-or-nothing consumption, never more than `max_rate` grants per window
    across every caller, and a non-blocking `try_acquire`.
    """

    max_rate: int

    def try_acquire(self, permits: int = 1) -> bool: ...

    def wait_for_permit(self, poll_interval: float = 0.1, timeout: float | None = None) -> bool: ...


class FixedWindowRateLimiter:
    """In-process fixed-window limiter guarded by a single lock."""

    def __init__(
        self,
        max_rate: int,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_rate < 1:
            raise ValueError("max_rate must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_rate = max_rate
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._window_start = clock()
        self._used = 0

    def _roll_window(self, now: float) -> None:
        # Caller holds the lock.
        if now - self._window_start >= self.window_seconds:
            self._window_start = now
            self._used = 0

    def try_acquire(self, permits: int = 1) -> bool:
        """Consume `permits` from the current window, or none at all. Never blocks."""

        if permits < 1:
            raise ValueError("permits must be >= 1")
        if permits > self.max_rate:
            return False
        with self._lock:
            self._roll_window(self._clock())
            if self._used + permits > self.max_rate:
                return False
            self._used += permits
            return True

    def wait_for_permit(self, poll_interval: float = 0.1, timeout: float | None = None) -> bool:
        """Block until one permit is granted.

        Returns False only if `timeout` seconds pass first. Not for use on the
        dispatcher loop, which must stay non-blocking.
        """

        deadline = None if timeout is None else self._clock() + timeout
        while not self.try_acquire(1):
            if deadline is not None and self._clock() >= deadline:
                return False
            self._sleep(poll_interval)
        return True

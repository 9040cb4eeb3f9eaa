from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_after_seconds: int


@dataclass(frozen=True)
class WindowState:
    request_count: int
    window_started_at: float
    window_limit: int
    window_seconds: int


class FixedWindowRateLimiter:
    """
    Request counter over a window that restarts once it has fully elapsed.

    The window restarts at the first check made after it elapsed, not on a
    wall-clock boundary. `try_acquire` checks and increments under one lock, so
    concurrent callers can never push the count past the limit.
    """

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = Lock()
        self._request_count = 0
        self._window_started_at = clock()

    def try_acquire(self) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            self._maybe_reset_window(now)
            reset_after_seconds = self._reset_after_seconds(now)

            if self._request_count >= self._max_requests:
                return RateLimitDecision(
                    allowed=False,
                    limit=self._max_requests,
                    remaining=0,
                    retry_after_seconds=reset_after_seconds,
                    reset_after_seconds=reset_after_seconds,
                )

            self._request_count += 1
            return RateLimitDecision(
                allowed=True,
                limit=self._max_requests,
                remaining=self._max_requests - self._request_count,
                retry_after_seconds=0,
                reset_after_seconds=reset_after_seconds,
            )

    def snapshot(self) -> WindowState:
        now = self._clock()
        with self._lock:
            self._maybe_reset_window(now)
            return WindowState(
                request_count=self._request_count,
                window_started_at=self._window_started_at,
                window_limit=self._max_requests,
                window_seconds=self._window_seconds,
            )

    def reset_after_seconds(self) -> int:
        now = self._clock()
        with self._lock:
            self._maybe_reset_window(now)
            return self._reset_after_seconds(now)

    def _maybe_reset_window(self, now: float) -> None:
        if now - self._window_started_at >= self._window_seconds:
            self._request_count = 0
            self._window_started_at = now

    def _reset_after_seconds(self, now: float) -> int:
        return max(1, math.ceil((self._window_started_at + self._window_seconds) - now))

from __future__ import annotations

from threading import Thread
from typing import Any

import pytest

from campaign_tracker.services.rate_limiter import FixedWindowRateLimiter


def test_rate_limiter_denies_request_over_window_limit(fake_clock: Any) -> None:
    limiter = FixedWindowRateLimiter(max_requests=3, window_seconds=100, clock=fake_clock)

    decisions = [limiter.try_acquire() for _ in range(3)]
    assert [decision.allowed for decision in decisions] == [True, True, True]
    assert [decision.remaining for decision in decisions] == [2, 1, 0]

    denied = limiter.try_acquire()
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.retry_after_seconds == 100
    assert limiter.snapshot().request_count == 3


def test_rate_limiter_resets_after_window_elapses(fake_clock: Any) -> None:
    limiter = FixedWindowRateLimiter(max_requests=1, window_seconds=100, clock=fake_clock)
    assert limiter.try_acquire().allowed is True

    fake_clock.advance(60)
    denied = limiter.try_acquire()
    assert denied.allowed is False
    assert denied.retry_after_seconds == 40

    fake_clock.advance(40)
    allowed = limiter.try_acquire()
    assert allowed.allowed is True

    state = limiter.snapshot()
    assert state.request_count == 1
    assert state.window_started_at == fake_clock.now


def test_rate_limiter_reset_after_seconds_counts_down(fake_clock: Any) -> None:
    limiter = FixedWindowRateLimiter(max_requests=5, window_seconds=10, clock=fake_clock)
    fake_clock.advance(2.5)
    assert limiter.reset_after_seconds() == 8

    fake_clock.advance(7.5)
    # The elapsed window restarts on the next check.
    assert limiter.reset_after_seconds() == 10
    assert limiter.snapshot().request_count == 0


def test_rate_limiter_never_exceeds_limit_under_concurrency() -> None:
    limiter = FixedWindowRateLimiter(max_requests=50, window_seconds=3_600)
    allowed: list[bool] = []

    def _worker() -> None:
        for _ in range(20):
            allowed.append(limiter.try_acquire().allowed)

    threads = [Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert allowed.count(True) == 50
    assert limiter.snapshot().request_count == 50


@pytest.mark.parametrize(
    ("max_requests", "window_seconds"),
    [(0, 100), (10, 0)],
)
def test_rate_limiter_rejects_invalid_bounds(max_requests: int, window_seconds: int) -> None:
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(max_requests=max_requests, window_seconds=window_seconds)

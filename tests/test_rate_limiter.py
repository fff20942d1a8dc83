"""Fixed-window rate limiter behavior."""

import threading

import pytest

from settlepay.common.rate_limiter import FixedWindowRateLimiter


def test_two_per_window_then_denied_until_rollover(limiter, monotonic):
    assert limiter.try_acquire() is True
    assert limiter.try_acquire() is True
    assert limiter.try_acquire() is False

    monotonic.advance(1.0)
    assert limiter.try_acquire() is True


def test_window_does_not_roll_early(limiter, monotonic):
    assert limiter.try_acquire(2)
    monotonic.advance(0.999)
    assert limiter.try_acquire() is False


def test_multi_permit_request_is_all_or_nothing(limiter):
    assert limiter.try_acquire(1)
    assert limiter.try_acquire(2) is False
    # The failed request consumed nothing.
    assert limiter.try_acquire(1) is True
    assert limiter.try_acquire(1) is False


def test_more_than_max_rate_always_fails(limiter, monotonic):
    assert limiter.try_acquire(3) is False
    monotonic.advance(10)
    assert limiter.try_acquire(3) is False
    assert limiter.try_acquire(2) is True


def test_invalid_permit_counts_are_rejected(limiter):
    with pytest.raises(ValueError):
        limiter.try_acquire(0)
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(max_rate=0)


def test_rollover_restores_the_full_budget(limiter, monotonic):
    assert limiter.try_acquire()
    monotonic.advance(1.0)
    assert limiter.try_acquire(2) is True
    assert limiter.try_acquire() is False


def test_wait_for_permit_polls_until_next_window(limiter, monotonic):
    """The injected sleep advances the fake clock, so waiting costs no real time."""

    assert limiter.try_acquire(2)
    started = monotonic()
    assert limiter.wait_for_permit(poll_interval=0.1) is True
    assert monotonic() - started >= 1.0
    # The waiter consumed one permit of the new window.
    assert limiter.try_acquire() is True
    assert limiter.try_acquire() is False


def test_wait_for_permit_gives_up_after_timeout(limiter, monotonic):
    assert limiter.try_acquire(2)
    # Window is 1s, so a 0.5s timeout cannot succeed.
    assert limiter.wait_for_permit(poll_interval=0.1, timeout=0.5) is False


def test_concurrent_callers_never_exceed_max_rate():
    limiter = FixedWindowRateLimiter(max_rate=5, window_seconds=3600)
    barrier = threading.Barrier(40)
    granted = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        for _ in range(5):
            if limiter.try_acquire():
                with lock:
                    granted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(40)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(granted) == 5

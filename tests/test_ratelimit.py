import threading

import pytest

from patchpilot.ratelimit import SlidingWindowLimiter


def test_admits_up_to_the_limit_without_waiting():
    limiter = SlidingWindowLimiter(max_requests=3, window_seconds=5)

    waits = [limiter.acquire("llm:stub") for _ in range(3)]

    assert all(w < 0.05 for w in waits)
    assert limiter.usage("llm:stub") == 3


def test_blocks_until_the_oldest_admission_ages_out():
    limiter = SlidingWindowLimiter(max_requests=2, window_seconds=0.2)
    limiter.acquire("llm:stub")
    limiter.acquire("llm:stub")

    waited = limiter.acquire("llm:stub")

    assert waited >= 0.1


def test_keys_do_not_block_each_other():
    limiter = SlidingWindowLimiter(max_requests=1, window_seconds=5)
    limiter.acquire("llm:anthropic")

    assert limiter.acquire("llm:openai") < 0.05


def test_reset_wakes_waiters():
    limiter = SlidingWindowLimiter(max_requests=1, window_seconds=30)
    limiter.acquire("llm:stub")
    done = threading.Event()

    def worker():
        limiter.acquire("llm:stub")
        done.set()

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()
    assert not done.wait(0.1)

    limiter.reset("llm:stub")
    assert done.wait(1.0)


def test_rejects_zero_capacity():
    with pytest.raises(ValueError):
        SlidingWindowLimiter(max_requests=0)


def test_clear_forgets_every_key():
    limiter = SlidingWindowLimiter(max_requests=5, window_seconds=30)
    for i in range(20):
        limiter.acquire(f"llm:provider-{i}")

    limiter.clear()

    assert limiter._windows == {}
    assert limiter.usage("llm:provider-0") == 0
    assert limiter._windows == {}


def test_clear_wakes_waiters():
    limiter = SlidingWindowLimiter(max_requests=1, window_seconds=30)
    limiter.acquire("llm:stub")
    done = threading.Event()

    def worker():
        limiter.acquire("llm:stub")
        done.set()

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()
    assert not done.wait(0.1)

    limiter.clear()
    assert done.wait(1.0)

"""Tests for the FIFO rate limiter."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import pytest

from mixpanel_engagement._internal.rate_limiter import RateLimiter


def _wait_for(condition: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.005)


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_rejects_non_positive_limit(self) -> None:
        """max_concurrent must be at least 1."""
        with pytest.raises(ValueError, match="positive"):
            RateLimiter(max_concurrent=0)

    def test_slot_is_released_on_exception(self) -> None:
        """An exception inside the block still frees the slot."""
        limiter = RateLimiter(max_concurrent=1)
        with pytest.raises(RuntimeError), limiter.acquire():
            assert limiter.active == 1
            raise RuntimeError("boom")
        assert limiter.active == 0

    def test_concurrency_never_exceeds_limit(self) -> None:
        """At most max_concurrent callers hold a slot at once."""
        limiter = RateLimiter(max_concurrent=3)
        lock = threading.Lock()
        current = 0
        peak = 0

        def work() -> None:
            nonlocal current, peak
            with limiter.acquire():
                with lock:
                    current += 1
                    peak = max(peak, current)
                time.sleep(0.01)
                with lock:
                    current -= 1

        threads = [threading.Thread(target=work) for _ in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert peak <= 3
        assert limiter.active == 0
        assert limiter.waiting == 0

    def test_waiters_are_admitted_in_arrival_order(self) -> None:
        """Queued callers start first-in, first-out."""
        limiter = RateLimiter(max_concurrent=1)
        order: list[str] = []

        def worker(name: str) -> None:
            with limiter.acquire():
                order.append(name)

        with limiter.acquire():
            threads = []
            for index, name in enumerate(["first", "second", "third"]):
                thread = threading.Thread(target=worker, args=(name,))
                thread.start()
                threads.append(thread)
                _wait_for(lambda n=index + 1: limiter.waiting == n)

        for thread in threads:
            thread.join(timeout=10)

        assert order == ["first", "second", "third"]

    def test_newcomer_does_not_overtake_queue(self) -> None:
        """A caller arriving while others wait joins the back of the queue."""
        limiter = RateLimiter(max_concurrent=1)
        assert limiter.max_concurrent == 1
        holder_release = threading.Event()
        order: list[str] = []

        def holder() -> None:
            with limiter.acquire():
                holder_release.wait(timeout=10)
                order.append("holder")

        def waiter(name: str) -> None:
            with limiter.acquire():
                order.append(name)

        first = threading.Thread(target=holder)
        first.start()
        _wait_for(lambda: limiter.active == 1)
        queued = threading.Thread(target=waiter, args=("queued",))
        queued.start()
        _wait_for(lambda: limiter.waiting == 1)
        late = threading.Thread(target=waiter, args=("late",))
        late.start()
        _wait_for(lambda: limiter.waiting == 2)

        holder_release.set()
        for thread in (first, queued, late):
            thread.join(timeout=10)

        assert order == ["holder", "queued", "late"]

"""Admission gate for concurrent Mixpanel requests.

Mixpanel allows only a handful of simultaneous query requests per project.
RateLimiter admits up to max_concurrent callers and queues the rest strictly
first-in, first-out, handing each released slot to the oldest waiter.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager


class RateLimiter:
    """Counting gate with FIFO admission.

    A caller that finds every slot busy waits on its own event; a completing
    caller passes its slot straight to the oldest waiter, so a newcomer can
    never overtake someone already queued.

    Attributes:
        max_concurrent: Maximum number of concurrent operations allowed.

    Example:
        ```python
        limiter = RateLimiter(max_concurrent=4)

        def fetch(bookmark_id: int) -> dict:
            with limiter.acquire():
                return api.query_saved_report(bookmark_id)

        # Any number of threads may call fetch; at most 4 run at once and
        # the rest start in the order they arrived.
        ```
    """

    def __init__(self, max_concurrent: int = 4) -> None:
        """Initialize the rate limiter.

        Args:
            max_concurrent: Maximum number of concurrent operations.

        Raises:
            ValueError: If max_concurrent is not positive.
        """
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")

        self._max_concurrent = max_concurrent
        self._lock = threading.Lock()
        self._active = 0
        self._waiters: deque[threading.Event] = deque()

    @property
    def max_concurrent(self) -> int:
        """Maximum number of concurrent operations allowed."""
        return self._max_concurrent

    @property
    def active(self) -> int:
        """Operations currently holding a slot."""
        with self._lock:
            return self._active

    @property
    def waiting(self) -> int:
        """Callers queued for a slot."""
        with self._lock:
            return len(self._waiters)

    def _enter(self) -> None:
        with self._lock:
            if self._active < self._max_concurrent and not self._waiters:
                self._active += 1
                return
            ticket = threading.Event()
            self._waiters.append(ticket)
        # the releasing caller keeps _active unchanged and hands us its slot
        ticket.wait()

    def _release(self) -> None:
        with self._lock:
            if self._waiters:
                self._waiters.popleft().set()
            else:
                self._active -= 1

    @contextmanager
    def acquire(self) -> Iterator[None]:
        """Acquire a slot for a concurrent operation.

        Blocks until a slot is free and every earlier waiter has been
        admitted. The slot is released on exit, including on exception.

        Yields:
            None when a slot is acquired.
        """
        self._enter()
        try:
            yield
        finally:
            self._release()

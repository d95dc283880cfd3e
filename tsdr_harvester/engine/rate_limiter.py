"""Process-wide request throttle shared by every dispatcher worker."""

from __future__ import annotations

import time
from collections import deque
from threading import Condition
from typing import Callable, Deque, Dict, Hashable


class RateLimiter:
    """Admit at most ``max_per_window`` starts per rolling window.

    Waiters are grouped by key (the job id) and admitted round-robin across
    keys, so a job with thousands of queued items cannot starve a small job
    submitted after it. Within one key admission is first come, first served.
    """

    def __init__(
        self,
        max_per_window: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_per_window < 1:
            raise ValueError("max_per_window must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self._clock = clock
        self._cond = Condition()
        self._starts: Deque[float] = deque()
        self._rotation: Deque[Hashable] = deque()
        self._waiters: Dict[Hashable, Deque[object]] = {}
        self._closed = False

    def acquire(self, key: Hashable = "default") -> bool:
        """Block until a start slot is free for ``key``.

        Returns False only when the limiter was closed while waiting.
        """

        ticket = object()
        with self._cond:
            if self._closed:
                return False
            self._enqueue(key, ticket)
            try:
                while True:
                    if self._closed:
                        self._dequeue(key, ticket)
                        return False
                    now = self._clock()
                    self._evict(now)
                    my_turn = self._rotation[0] == key and self._waiters[key][0] is ticket
                    if my_turn and len(self._starts) < self.max_per_window:
                        break
                    timeout = None
                    if my_turn:
                        timeout = max(self._starts[0] + self.window_seconds - now, 0.001)
                    self._cond.wait(timeout)
            except BaseException:
                self._dequeue(key, ticket)
                self._cond.notify_all()
                raise
            self._starts.append(now)
            self._admit(key)
            self._cond.notify_all()
            return True

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def snapshot(self) -> dict[str, float | int]:
        with self._cond:
            self._evict(self._clock())
            return {
                "max_per_window": self.max_per_window,
                "window_seconds": self.window_seconds,
                "used": len(self._starts),
                "available": self.max_per_window - len(self._starts),
                "waiting": sum(len(tickets) for tickets in self._waiters.values()),
            }

    # ------------------------------------------------------------------
    # Helpers below expect the condition lock to be held.
    def _evict(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.window_seconds:
            self._starts.popleft()

    def _enqueue(self, key: Hashable, ticket: object) -> None:
        tickets = self._waiters.get(key)
        if tickets is None:
            tickets = self._waiters[key] = deque()
            self._rotation.append(key)
        tickets.append(ticket)

    def _admit(self, key: Hashable) -> None:
        tickets = self._waiters[key]
        tickets.popleft()
        self._rotation.popleft()
        if tickets:
            self._rotation.append(key)
        else:
            del self._waiters[key]

    def _dequeue(self, key: Hashable, ticket: object) -> None:
        tickets = self._waiters.get(key)
        if tickets is None:
            return
        try:
            tickets.remove(ticket)
        except ValueError:
            return
        if not tickets:
            del self._waiters[key]
            self._rotation.remove(key)


__all__ = ["RateLimiter"]

"""Bounded worker pool: at most ``max_workers`` tasks queued or running."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from threading import BoundedSemaphore, Lock
from typing import Any, Callable


class WorkerPool:
    """Thread pool that refuses work instead of queueing it unboundedly.

    The dispatcher only claims an item from the store once a worker slot is
    reserved, so claimed-but-idle items never pile up in the executor queue.
    """

    def __init__(self, max_workers: int = 8, name: str = "harvester") -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._slots = BoundedSemaphore(max_workers)
        self._lock = Lock()
        self._active = 0

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    @property
    def idle(self) -> bool:
        return self.active == 0

    def reserve(self, timeout: float | None = None) -> bool:
        """Reserve a worker slot; pair with ``submit`` or ``cancel_reservation``."""

        if timeout is None:
            acquired = self._slots.acquire()
        else:
            acquired = self._slots.acquire(timeout=timeout)
        if acquired:
            with self._lock:
                self._active += 1
        return acquired

    def cancel_reservation(self) -> None:
        self._finish()

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Run ``fn`` on a previously reserved slot."""

        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except RuntimeError:
            self._finish()
            raise
        future.add_done_callback(lambda _: self._finish())
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _finish(self) -> None:
        with self._lock:
            self._active -= 1
        self._slots.release()


__all__ = ["WorkerPool"]

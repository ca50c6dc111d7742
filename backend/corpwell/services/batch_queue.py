"""
In-process task queues for onboarding work.

WorkerPool runs tasks on a fixed number of threads. Tasks may be submitted
with a delay; ready tasks are picked up in order of their ready time, then
submission order. InlineQueue runs each task on the caller's thread as soon
as it is submitted, for tests and scripts.
"""

import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class QueueClosedError(RuntimeError):
    pass


class TaskQueue(ABC):
    @abstractmethod
    def submit(self, fn: Callable, *args, delay: float = 0.0) -> None: ...

    @abstractmethod
    def join(self, timeout: Optional[float] = None) -> bool:
        """Block until no task is pending or running. False on timeout."""

    @abstractmethod
    def shutdown(self, wait: bool = True) -> None: ...


class InlineQueue(TaskQueue):
    def __init__(self):
        self.submitted = 0
        self._closed = False

    def submit(self, fn, *args, delay=0.0):
        if self._closed:
            raise QueueClosedError("queue is shut down")
        self.submitted += 1
        try:
            fn(*args)
        except Exception:
            logger.exception("Queued task %s failed", getattr(fn, "__qualname__", fn))

    def join(self, timeout=None):
        return True

    def shutdown(self, wait=True):
        self._closed = True


class WorkerPool(TaskQueue):
    def __init__(self, workers: int = 10, name: str = "onboarding-worker"):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.workers = workers
        self._cond = threading.Condition()
        self._heap: list = []
        self._seq = itertools.count()
        self._pending = 0
        self._closed = False
        self._threads = [
            threading.Thread(target=self._run, name=f"{name}-{i}", daemon=True)
            for i in range(workers)
        ]
        for t in self._threads:
            t.start()

    def submit(self, fn, *args, delay=0.0):
        with self._cond:
            if self._closed:
                raise QueueClosedError("queue is shut down")
            ready_at = time.monotonic() + max(0.0, delay)
            heapq.heappush(self._heap, (ready_at, next(self._seq), fn, args))
            self._pending += 1
            self._cond.notify_all()

    def _next_task(self):
        with self._cond:
            while True:
                if self._heap:
                    wait = self._heap[0][0] - time.monotonic()
                    if wait <= 0:
                        _, _, fn, args = heapq.heappop(self._heap)
                        return fn, args
                    self._cond.wait(wait)
                elif self._closed:
                    return None
                else:
                    self._cond.wait()

    def _run(self):
        while True:
            task = self._next_task()
            if task is None:
                return
            fn, args = task
            try:
                fn(*args)
            except Exception:
                logger.exception("Queued task %s failed", getattr(fn, "__qualname__", fn))
            finally:
                with self._cond:
                    self._pending -= 1
                    self._cond.notify_all()

    def join(self, timeout=None):
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout)

    def shutdown(self, wait=True):
        """Stop accepting work. Already queued tasks still run."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        if wait:
            for t in self._threads:
                t.join()

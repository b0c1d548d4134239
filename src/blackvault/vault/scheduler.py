"""Cancellable delayed tasks for the idle auto-lock.

Two implementations share one small interface:

    task = scheduler.schedule(delay_seconds, callback)
    task.cancel()

- ``ThreadingScheduler`` runs callbacks on ``threading.Timer`` threads.
- ``ManualScheduler`` never starts threads; time only moves when
  ``advance()`` is called, which makes idle-lock behaviour testable
  without sleeping.
"""

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle for a pending callback."""

    def __init__(self, callback: Callable[[], None], due: float):
        self.callback = callback
        self.due = due
        self._cancelled = False
        self._timer: Optional[threading.Timer] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()


class Scheduler:
    """Base interface: a clock plus delayed callbacks."""

    def now(self) -> float:
        raise NotImplementedError

    def schedule(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        raise NotImplementedError

    def shutdown(self):
        """Cancel every pending task."""


class ThreadingScheduler(Scheduler):
    """Production scheduler backed by daemon ``threading.Timer`` threads."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._tasks: List[ScheduledTask] = []

    def now(self) -> float:
        return self._clock()

    def schedule(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        task = ScheduledTask(callback, self.now() + delay)

        def _fire():
            with self._lock:
                if task in self._tasks:
                    self._tasks.remove(task)
            if not task.cancelled:
                _run(task)

        timer = threading.Timer(delay, _fire)
        timer.daemon = True
        task._timer = timer
        with self._lock:
            # Drop handles of tasks that already ran or were cancelled
            self._tasks = [t for t in self._tasks if not t.cancelled]
            self._tasks.append(task)
        timer.start()
        return task

    def shutdown(self):
        with self._lock:
            tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()


class ManualScheduler(Scheduler):
    """Deterministic scheduler: callbacks fire only inside ``advance()``."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._counter = itertools.count()
        self._queue: List[Tuple[float, int, ScheduledTask]] = []

    def now(self) -> float:
        return self._now

    def schedule(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        task = ScheduledTask(callback, self._now + delay)
        heapq.heappush(self._queue, (task.due, next(self._counter), task))
        return task

    def advance(self, seconds: float):
        """Move the clock forward, firing every task that comes due."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, task = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            if not task.cancelled:
                _run(task)
        self._now = target

    @property
    def pending(self) -> int:
        return sum(1 for _, _, task in self._queue if not task.cancelled)

    def shutdown(self):
        for _, _, task in self._queue:
            task.cancel()
        self._queue.clear()


def _run(task: ScheduledTask):
    try:
        task.callback()
    except Exception:
        logger.exception("Scheduled task failed")

"""
Deferred, cancellable callbacks.

Autofix handlers schedule their reverts here instead of firing unowned
timers, so shutdown and reset can cancel anything still pending.
"""
from __future__ import annotations

import threading
from typing import Callable, Dict, Optional

from .logging_config import get_logger

logger = get_logger(__name__, subsystem="autofix")


class ScheduledTask:
    """Handle for one pending callback."""

    def __init__(self, name: str, delay_s: float, timer: threading.Timer):
        self.name = name
        self.delay_s = delay_s
        self._timer = timer
        self._done = threading.Event()
        self._state_lock = threading.Lock()
        self._started = False
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        """True once the callback has run (or failed)."""
        return self._done.is_set()

    def cancel(self) -> bool:
        """
        Cancel the task.

        Returns:
            True if cancelled before running, False once the callback
            has started
        """
        with self._state_lock:
            if self._started or self._done.is_set():
                return False
            self._timer.cancel()
            self._cancelled = True
            return True

    def _claim(self) -> bool:
        """Mark the callback as started unless it was cancelled first."""
        with self._state_lock:
            if self._cancelled:
                return False
            self._started = True
            return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the callback has run."""
        return self._done.wait(timeout)


class TaskScheduler:
    """
    Runs callbacks after a delay on daemon timer threads.

    Example:
        >>> scheduler = TaskScheduler()
        >>> task = scheduler.schedule("throttle_revert", 5.0, release_throttle)
        >>> # ... on shutdown ...
        >>> scheduler.cancel_all()
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tasks: Dict[int, ScheduledTask] = {}
        self._next_id = 0

    def schedule(self, name: str, delay_s: float, callback: Callable[[], None]) -> ScheduledTask:
        """Run ``callback`` once after ``delay_s`` seconds."""
        with self._lock:
            task_id = self._next_id
            self._next_id += 1

        def wrapper():
            try:
                if task._claim():
                    callback()
            except Exception as e:
                logger.error(f"Scheduled task {name} failed: {e}")
            finally:
                with self._lock:
                    self._tasks.pop(task_id, None)
                task._done.set()

        timer = threading.Timer(delay_s, wrapper)
        timer.daemon = True
        task = ScheduledTask(name, delay_s, timer)

        with self._lock:
            self._tasks[task_id] = task
        timer.start()

        logger.debug(f"Scheduled {name} in {delay_s}s")
        return task

    def cancel_all(self) -> int:
        """
        Cancel every pending task.

        Returns:
            Number of tasks cancelled
        """
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()

        cancelled = sum(1 for task in tasks if task.cancel())
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending scheduled task(s)")
        return cancelled

    def pending_count(self) -> int:
        with self._lock:
            return len(self._tasks)

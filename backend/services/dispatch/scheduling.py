"""
Cancellable deferred actions.

The sequencer never touches timers directly; it asks a ``Scheduler`` for a
``ScheduledTask`` and keeps the handle on the offer so it can be cancelled
when a rider accepts or the dispatch is cancelled.
"""

import logging
import threading
from typing import Any, Callable

from django.db import connections

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle to a deferred call. ``cancel()`` is idempotent."""

    def cancel(self) -> None:
        raise NotImplementedError

    @property
    def cancelled(self) -> bool:
        raise NotImplementedError


class Scheduler:
    """Runs ``func(*args)`` after ``delay`` seconds unless cancelled first."""

    def call_later(self, delay: float, func: Callable[..., Any], *args: Any) -> ScheduledTask:
        raise NotImplementedError

    def shutdown(self) -> None:
        """Cancel everything still pending."""
        pass


class _TimerTask(ScheduledTask):
    def __init__(self, timer: threading.Timer, on_cancel: Callable[["_TimerTask"], None]):
        self._timer = timer
        self._on_cancel = on_cancel
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        self._timer.cancel()
        self._on_cancel(self)

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class TimerScheduler(Scheduler):
    """
    One daemon ``threading.Timer`` per task.

    Each offer progresses on its own timer thread, so a slow transport call
    for one delivery never delays the others.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tasks = set()

    def call_later(self, delay, func, *args):
        task = None

        def run():
            self._forget(task)
            try:
                func(*args)
            except Exception:
                logger.exception("Scheduled dispatch callback %s failed", getattr(func, "__name__", func))
            finally:
                # Timer threads are short-lived; don't leave their DB connections open
                connections.close_all()

        timer = threading.Timer(max(0.0, float(delay)), run)
        timer.daemon = True
        task = _TimerTask(timer, self._forget)
        with self._lock:
            self._tasks.add(task)
        timer.start()
        return task

    def pending_count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def _forget(self, task) -> None:
        with self._lock:
            self._tasks.discard(task)

    def shutdown(self):
        with self._lock:
            tasks = list(self._tasks)
            self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info("Cancelled %d pending dispatch task(s) on shutdown", len(tasks))

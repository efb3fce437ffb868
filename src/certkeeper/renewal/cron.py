"""Periodic trigger driven by a five-field cron expression.

Usage::

    trigger = CronTrigger("0 0 * * *", scheduler.tick)
    trigger.start()
    trigger.reschedule("30 2 * * *")   # next tick uses the new expression
    trigger.stop()
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING

from croniter import croniter

from certkeeper.config.certkeeper_config import validate_cron
from certkeeper.core.errors import ValidationError

if TYPE_CHECKING:
    from collections.abc import Callable

log = logging.getLogger(__name__)


def _local_now() -> datetime:
    return datetime.now().astimezone()


class CronTrigger:
    """Daemon thread calling *callback* at each cron fire time.

    The expression is evaluated in local time.  A slow callback delays
    the computation of the next fire time; ticks are never run
    concurrently and missed ticks are not replayed.

    Parameters
    ----------
    expression:
        Five-field cron string.
    callback:
        Called with no arguments on the trigger thread.
    clock:
        Returns the current aware local time; replaced in tests.

    """

    def __init__(
        self,
        expression: str,
        callback: Callable[[], None],
        *,
        name: str = "renewal-cron",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._check(expression)
        self._expression = expression
        self._callback = callback
        self._name = name
        self._clock = clock or _local_now
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._next_run: datetime | None = None
        self._last_run: datetime | None = None

    @staticmethod
    def _check(expression: str) -> None:
        problem = validate_cron(expression)
        if problem is not None:
            raise ValidationError(problem)

    @property
    def expression(self) -> str:
        with self._lock:
            return self._expression

    @property
    def next_run(self) -> datetime | None:
        with self._lock:
            return self._next_run

    @property
    def last_run(self) -> datetime | None:
        with self._lock:
            return self._last_run

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def next_after(self, moment: datetime) -> datetime:
        return croniter(self.expression, moment).get_next(datetime)

    def reschedule(self, expression: str) -> None:
        """Swap the expression; the pending wait is recomputed immediately.

        Raises
        ------
        ValidationError
            If *expression* is not a valid five-field cron string.

        """
        self._check(expression)
        with self._lock:
            previous, self._expression = self._expression, expression
        log.info("Renewal schedule changed: '%s' -> '%s'", previous, expression)
        self._wake.set()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._wake.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        log.info("Cron trigger started (schedule='%s')", self.expression)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        with self._lock:
            self._next_run = None
        log.info("Cron trigger stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            now = self._clock()
            fire_at = self.next_after(now)
            with self._lock:
                self._next_run = fire_at
            self._wake.clear()
            woken = self._wake.wait(timeout=max((fire_at - now).total_seconds(), 0))
            if self._stop_event.is_set():
                return
            if woken:
                # Rescheduled: compute the next fire time again
                continue
            with self._lock:
                self._last_run = self._clock()
            try:
                self._callback()
            except Exception:
                log.exception("Scheduled renewal tick failed")

"""Graceful shutdown coordinator.

Tracks in-flight renewals and deployments so that a shutdown waits for
them (up to a timeout) before they are cancelled.

Usage::

    from certkeeper.app.shutdown import ShutdownCoordinator

    coordinator = ShutdownCoordinator(graceful_timeout=30)

    with coordinator.track("renew web"):
        renew()

    drained = coordinator.initiate()  # waits for tracked ops to finish
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Generator

log = logging.getLogger(__name__)


class ShutdownCoordinator:
    """Coordinates graceful shutdown by tracking in-flight operations.

    Parameters
    ----------
    graceful_timeout:
        Maximum seconds to wait for in-flight operations during shutdown.

    """

    def __init__(self, graceful_timeout: float = 30) -> None:
        self._graceful_timeout = graceful_timeout
        self._shutdown_flag = threading.Event()
        self._requested = threading.Event()
        self._in_flight: dict[int, str] = {}
        self._next_id = 0
        self._lock = threading.Lock()
        self._done = threading.Condition(self._lock)

    @property
    def is_shutting_down(self) -> bool:
        """True once :meth:`initiate` has been called."""
        return self._shutdown_flag.is_set()

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def in_flight(self) -> list[str]:
        """Names of the operations currently tracked."""
        with self._lock:
            return list(self._in_flight.values())

    @contextmanager
    def track(self, name: str) -> Generator[None, None, None]:
        """Context manager to track an in-flight operation.

        Work that starts after shutdown began is still tracked, but a
        warning is logged.
        """
        if self._shutdown_flag.is_set():
            log.warning("Operation '%s' starting during shutdown", name)

        with self._lock:
            op_id = self._next_id
            self._next_id += 1
            self._in_flight[op_id] = name

        try:
            yield
        finally:
            with self._done:
                self._in_flight.pop(op_id, None)
                if not self._in_flight:
                    self._done.notify_all()

    def initiate(self, timeout: float | None = None) -> bool:
        """Begin graceful shutdown.

        Sets the shutdown flag and waits up to *timeout* (default
        ``graceful_timeout``) seconds for in-flight operations.

        Returns
        -------
        bool
            ``True`` if nothing was left in flight.

        """
        self._shutdown_flag.set()
        self._requested.set()
        log.info("Graceful shutdown initiated")

        wait_for = self._graceful_timeout if timeout is None else timeout
        with self._done:
            deadline = time.monotonic() + wait_for
            while self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    log.warning(
                        "Shutdown timeout expired with %d operation(s) in flight: %s",
                        len(self._in_flight),
                        sorted(self._in_flight.values()),
                    )
                    return False
                self._done.wait(timeout=remaining)

        log.info("All in-flight operations completed")
        return True

    def request(self) -> None:
        """Ask the main thread to shut down (see :meth:`wait_for_request`)."""
        self._requested.set()

    def wait_for_request(self, timeout: float | None = None) -> bool:
        return self._requested.wait(timeout=timeout)

    def register_signals(self) -> None:
        """Register SIGTERM and SIGINT handlers that request shutdown.

        Must be called from the main thread.
        """
        try:
            signal.signal(signal.SIGTERM, self._signal_handler)
            signal.signal(signal.SIGINT, self._signal_handler)
        except (ValueError, OSError):
            # Not in main thread or signals not supported (Windows service)
            log.debug("Could not register signal handlers (not main thread)")

    def _signal_handler(self, signum: int, frame) -> None:
        log.info("Received %s, shutting down", signal.Signals(signum).name)
        self.request()

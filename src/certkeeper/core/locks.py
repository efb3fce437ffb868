"""Synchronisation primitives shared by the store, vault and scheduler.

- :class:`ReadWriteLock` guards the master key: wrap/unwrap take it
  shared, rotation takes it exclusive.
- :class:`KeyedLock` serialises lifecycle work per certificate.
- :class:`CancelToken` is the cooperative cancellation signal handed to
  long-running work (issuance, deployment retries).
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

from certkeeper.core.errors import CancelledError, InUseError

if TYPE_CHECKING:
    from collections.abc import Generator

log = logging.getLogger(__name__)


class ReadWriteLock:
    """Writer-preferring readers/writer lock."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def shared(self) -> Generator[None, None, None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Generator[None, None, None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLock:
    """A family of mutexes indexed by key (a certificate directory).

    Entries are reference counted and dropped once no thread holds or
    waits for them, so the table does not grow with every fingerprint
    the store has ever seen.

    Parameters
    ----------
    name:
        Label used in log and error messages.

    """

    def __init__(self, name: str = "lock") -> None:
        self._name = name
        self._mutex = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def locked(self, key: str) -> bool:
        with self._mutex:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    @contextmanager
    def hold(
        self,
        key: str,
        *,
        timeout: float | None = None,
    ) -> Generator[bool, None, None]:
        """Acquire the lock for *key*.

        Yields ``True`` when the lock was acquired immediately and
        ``False`` when the caller had to wait for another holder.

        Raises
        ------
        InUseError
            If the lock could not be acquired within *timeout* seconds.

        """
        with self._mutex:
            entry = self._entries.setdefault(key, _Entry())
            entry.refs += 1

        acquired = False
        try:
            uncontended = entry.lock.acquire(blocking=False)
            if uncontended:
                acquired = True
            else:
                acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
                if not acquired:
                    msg = f"{self._name} for {key} is held by another operation"
                    raise InUseError(msg)
            yield uncontended
        finally:
            if acquired:
                entry.lock.release()
            with self._mutex:
                entry.refs -= 1
                if entry.refs == 0:
                    self._entries.pop(key, None)


class CancelToken:
    """Cooperative cancellation flag.

    Work that may block for long (subprocess calls, retry backoff)
    polls :attr:`cancelled` or sleeps through :meth:`wait` so a
    shutdown can interrupt it.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()
            log.debug("Cancel token set: %s", reason)

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return ``True`` if cancelled meanwhile."""
        return self._event.wait(timeout=max(seconds, 0))

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError(self._reason or "cancelled")


def deadline_remaining(deadline: float) -> float:
    """Seconds left until the ``time.monotonic()`` *deadline* (never negative)."""
    return max(deadline - time.monotonic(), 0.0)

"""Filesystem watcher over the certificate store.

Observes ``cert.crt`` and ``key.key`` of every certificate directory
with :mod:`watchdog`.  Events are debounced per path on the trailing
edge: a path is reconciled once no event arrived for it during the
debounce window, so an editor writing a file in several steps causes a
single reconciliation.

Usage::

    watcher = CertificateWatcher(store, root=store.layout.root,
                                 on_superseded=redeploy, on_missing=renew)
    watcher.start()
    ...
    watcher.stop()
"""

from __future__ import annotations

import logging
import os
import threading
from typing import TYPE_CHECKING

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from certkeeper.core.errors import CertKeeperError
from certkeeper.store.layout import CERT_FILE, KEY_FILE, StoreLayout
from certkeeper.store.reconcile import CHANGE_MISSING, CHANGE_SUPERSEDED

if TYPE_CHECKING:
    from collections.abc import Callable

    from certkeeper.store.reconcile import ReconcileChange
    from certkeeper.store.store import CertificateStore

log = logging.getLogger(__name__)

WATCHED_FILES = frozenset({CERT_FILE, KEY_FILE})


class _StoreEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: CertificateWatcher) -> None:
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event.src_path, event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event.src_path, event.is_directory)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._handle(event.src_path, event.is_directory)

    def on_moved(self, event: FileMovedEvent) -> None:
        # Atomic replacements show up as a move onto the watched name
        self._handle(event.src_path, event.is_directory)
        self._handle(event.dest_path, event.is_directory)

    def _handle(self, raw_path: str | bytes, is_directory: bool) -> None:  # noqa: FBT001
        if is_directory:
            return
        path = os.fsdecode(raw_path)
        if self._watcher.wants(path):
            self._watcher.touch(path)


class CertificateWatcher:
    """Debounced reconciliation of externally changed certificate files.

    Parameters
    ----------
    store:
        Store whose :meth:`~CertificateStore.reconcile_path` is called.
    root:
        Store directory, watched recursively.
    debounce_ms:
        Quiet period per path before it is reconciled.
    on_superseded:
        Called with the new fingerprint when a certificate file now
        holds a different certificate.
    on_missing:
        Called with the fingerprint of a certificate whose files
        disappeared.

    """

    def __init__(
        self,
        store: CertificateStore,
        *,
        root: str,
        debounce_ms: int = 500,
        on_superseded: Callable[[str], None] | None = None,
        on_missing: Callable[[str], None] | None = None,
    ) -> None:
        self._store = store
        self._layout = StoreLayout(os.path.abspath(root))
        self._debounce = max(debounce_ms, 0) / 1000.0
        self._on_superseded = on_superseded
        self._on_missing = on_missing
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._observer: Observer | None = None
        self._stopped = threading.Event()

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def wants(self, path: str) -> bool:
        """True for ``cert.crt``/``key.key`` directly inside a certificate directory."""
        if os.path.basename(path) not in WATCHED_FILES:
            return False
        directory = os.path.dirname(os.path.abspath(path))
        if os.path.dirname(directory) != self._layout.root:
            return False
        return not os.path.basename(directory).startswith(".")

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        observer = Observer()
        observer.schedule(_StoreEventHandler(self), self._layout.root, recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        log.info("Watching %s for certificate changes (debounce=%.0fms)", self._layout.root, self._debounce * 1000)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stopped.set()
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=timeout)
            self._observer = None
            log.info("Certificate watcher stopped")

    def touch(self, path: str) -> None:
        """Record an event for *path*, restarting its debounce window."""
        if self._stopped.is_set():
            return
        timer = threading.Timer(self._debounce, self._fire, args=(path,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.get(path)
            self._timers[path] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    def _fire(self, path: str) -> None:
        with self._lock:
            current = self._timers.get(path)
            if current is not threading.current_thread():
                return
            del self._timers[path]
        if self._stopped.is_set():
            return
        self.reconcile(path)

    def reconcile(self, path: str) -> ReconcileChange | None:
        """Reconcile *path* now and dispatch the follow-up callback."""
        try:
            change = self._store.reconcile_path(path)
        except CertKeeperError as exc:
            log.error("Reconciling %s failed: %s", path, exc.detail)
            return None
        if change is None:
            return None
        log.info("Watcher: %s is %s (%s)", change.name, change.change, change.fingerprint[:16])
        try:
            if change.change == CHANGE_SUPERSEDED and self._on_superseded is not None:
                self._on_superseded(change.fingerprint)
            elif change.change == CHANGE_MISSING and self._on_missing is not None:
                self._on_missing(change.fingerprint)
        except Exception:
            log.exception("Watcher callback for %s failed", change.name)
        return change

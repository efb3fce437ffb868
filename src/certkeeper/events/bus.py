"""Event bus: activity sink, in-process listeners and subscriber plugins.

Every published event is written to the activity sink synchronously
and then fanned out, fire-and-forget, on a small thread pool:

- callbacks registered with :meth:`EventBus.subscribe`;
- :class:`~certkeeper.events.base.Subscriber` plugins loaded from the
  ``events.subscribers`` config section.

Each receiver gets its own deep copy of the event, and failures are
logged but never propagated to the publisher.

Usage::

    bus = EventBus(settings.events)
    unsubscribe = bus.subscribe(print, kinds={"certificate-renewed"})
    bus.publish("certificate-renewed", {"fingerprint": "..."})
"""

from __future__ import annotations

import copy
import importlib
import logging
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from certkeeper.events.activity import ActivitySink
from certkeeper.events.base import Subscriber
from certkeeper.events.kinds import KIND_METHOD_MAP, KNOWN_KINDS

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from certkeeper.config.settings import EventSettings, SubscriberEntrySettings

log = logging.getLogger(__name__)

_CLASS_PATH_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)+$")


@dataclass
class _Listener:
    callback: Callable[[dict], Any]
    kinds: frozenset[str]
    label: str


@dataclass
class _LoadedSubscriber:
    instance: Subscriber
    entry: SubscriberEntrySettings
    kinds: frozenset = field(default_factory=frozenset)


def _check_kinds(kinds: Iterable[str], label: str) -> frozenset[str]:
    wanted = frozenset(str(k) for k in kinds)
    unknown = wanted - KNOWN_KINDS
    if unknown:
        msg = (
            f"{label} subscribes to unknown events: {sorted(unknown)}. "
            f"Known events: {sorted(KNOWN_KINDS)}"
        )
        raise ValueError(msg)
    return wanted


class EventBus:
    """Publish engine events.

    Parameters
    ----------
    settings:
        The ``events`` config section; ``None`` means no plugins and
        a two-worker pool.
    sink:
        Activity sink receiving every event.

    """

    def __init__(
        self,
        settings: EventSettings | None = None,
        *,
        sink: ActivitySink | None = None,
    ) -> None:
        self._sink = sink or ActivitySink()
        self._listeners: list[_Listener] = []
        self._subscribers: list[_LoadedSubscriber] = []
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self._shutdown_event = threading.Event()
        self._error_count = 0
        max_workers = settings.max_workers if settings is not None else 2
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="certkeeper-events",
        )
        if settings is not None:
            self._load(settings)

    @property
    def error_count(self) -> int:
        with self._lock:
            return self._error_count

    # -- loading -----------------------------------------------------------

    def _load(self, settings: EventSettings) -> None:
        """Load enabled subscriber plugins; any failure is fatal."""
        for entry in settings.subscribers:
            if not entry.enabled:
                log.debug("Subscriber '%s' is disabled, skipping", entry.class_path)
                continue
            try:
                self._load_subscriber(entry)
            except Exception:
                log.critical(
                    "Failed to load subscriber '%s'; refusing to start",
                    entry.class_path,
                    exc_info=True,
                )
                raise

    def _load_subscriber(self, entry: SubscriberEntrySettings) -> None:
        if not _CLASS_PATH_RE.match(entry.class_path):
            msg = (
                f"Invalid subscriber class path '{entry.class_path}': must match "
                "'package.module.ClassName'"
            )
            raise ValueError(msg)

        module_path, _, cls_name = entry.class_path.rpartition(".")
        module = importlib.import_module(module_path)
        cls = getattr(module, cls_name)
        if not (isinstance(cls, type) and issubclass(cls, Subscriber)):
            msg = f"Subscriber '{entry.class_path}' must be a subclass of certkeeper.events.Subscriber"
            raise TypeError(msg)

        cls.validate_config(entry.config)
        instance = cls(config=entry.config)
        kinds = _check_kinds(entry.events, entry.class_path) if entry.events else KNOWN_KINDS
        self._subscribers.append(_LoadedSubscriber(instance=instance, entry=entry, kinds=kinds))
        log.info(
            "Loaded subscriber: %s (events=%s)",
            entry.class_path,
            "all" if kinds == KNOWN_KINDS else sorted(kinds),
        )

    # -- subscription ------------------------------------------------------

    def subscribe(
        self,
        callback: Callable[[dict], Any],
        kinds: Iterable[str] | None = None,
    ) -> Callable[[], None]:
        """Register *callback* for *kinds* (all kinds when ``None``).

        Returns a function that removes the registration.
        """
        wanted = _check_kinds(kinds, "Listener") if kinds is not None else KNOWN_KINDS
        listener = _Listener(
            callback=callback,
            kinds=wanted,
            label=getattr(callback, "__qualname__", repr(callback)),
        )
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # -- dispatch ----------------------------------------------------------

    def publish(self, kind: str, payload: dict, actor: str | None = None) -> None:
        """Record and fan out an event; never blocks on receivers."""
        kind = str(kind)
        method_name = KIND_METHOD_MAP.get(kind)
        if method_name is None:
            msg = f"Unknown event kind '{kind}'. Known kinds: {sorted(KNOWN_KINDS)}"
            raise ValueError(msg)

        self._sink.emit(kind, payload, actor)
        if self._shutdown_event.is_set():
            return

        envelope = {
            "kind": kind,
            "timestamp": datetime.now(UTC).isoformat(),
            "actor": actor or "system",
            "payload": copy.deepcopy(payload),
        }
        with self._lock:
            targets: list[tuple[str, Callable[[dict], Any]]] = [
                (listener.label, listener.callback)
                for listener in self._listeners
                if kind in listener.kinds
            ]
        targets.extend(
            (loaded.entry.class_path, getattr(loaded.instance, method_name))
            for loaded in self._subscribers
            if kind in loaded.kinds
        )

        for label, target in targets:
            try:
                future = self._executor.submit(
                    self._deliver,
                    label,
                    target,
                    copy.deepcopy(envelope),
                )
            except RuntimeError:
                log.warning("Event executor shut down, dropping '%s' for '%s'", kind, label)
                continue
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._on_done)

    def _deliver(self, label: str, target: Callable[[dict], Any], event: dict) -> None:
        start = time.monotonic()
        try:
            target(event)
        except Exception:
            with self._lock:
                self._error_count += 1
            log.exception(
                "Event receiver '%s' failed for '%s'",
                label,
                event["kind"],
                extra={"receiver": label, "event_kind": event["kind"]},
            )
            return
        log.debug(
            "Event receiver '%s' handled '%s' in %.1fms",
            label,
            event["kind"],
            (time.monotonic() - start) * 1000,
        )

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight deliveries; ``True`` if all finished."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # -- lifecycle ---------------------------------------------------------

    def shutdown(self, wait: bool = True) -> None:  # noqa: FBT001, FBT002
        """Stop accepting deliveries; safe to call more than once."""
        if self._shutdown_event.is_set():
            return
        self._shutdown_event.set()
        self._executor.shutdown(wait=wait)
        log.info("Event bus shut down (receiver errors=%d)", self.error_count)

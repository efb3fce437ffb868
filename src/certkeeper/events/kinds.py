"""Canonical event kinds.

Single source of truth for the lifecycle events the engine publishes
and the :class:`~certkeeper.events.base.Subscriber` method each one is
delivered to.

This module has **zero** internal dependencies beyond the enum so it
can be imported from the config layer without circular imports.
"""

from __future__ import annotations

from certkeeper.core.types import EventKind

KIND_METHOD_MAP: dict[str, str] = {
    EventKind.CERTIFICATE_CREATED.value: "on_certificate_created",
    EventKind.CERTIFICATE_RENEWED.value: "on_certificate_renewed",
    EventKind.CERTIFICATE_DELETED.value: "on_certificate_deleted",
    EventKind.DEPLOYMENT_SUCCEEDED.value: "on_deployment_succeeded",
    EventKind.DEPLOYMENT_FAILED.value: "on_deployment_failed",
    EventKind.WATCHER_RELOAD.value: "on_watcher_reload",
    EventKind.MASTER_KEY_ROTATED.value: "on_master_key_rotated",
}

KNOWN_KINDS: frozenset[str] = frozenset(KIND_METHOD_MAP)

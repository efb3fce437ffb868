"""Abstract base class for event subscriber plugins.

Subscribers are loaded from the ``events.subscribers`` config section
by class path and override the event methods they care about.
Unimplemented methods are no-ops.

Usage::

    from certkeeper.events import Subscriber

    class ChatNotifier(Subscriber):
        def on_deployment_failed(self, event: dict) -> None:
            post_to_chat(event["payload"]["fingerprint"])
"""

from __future__ import annotations

import abc


class Subscriber(abc.ABC):  # noqa: B024
    """Base class for event subscribers.

    Parameters
    ----------
    config:
        The entry's ``config`` dict from the configuration file.

    Every method receives the event envelope
    ``{"kind", "timestamp", "actor", "payload"}``.

    """

    def __init__(self, config: dict | None = None) -> None:
        self.config = config or {}

    @classmethod
    def validate_config(cls, config: dict) -> None:
        """Reject invalid config before instantiation.

        Raise :class:`ValueError` if *config* is not acceptable.  The
        default implementation accepts anything.
        """

    def on_certificate_created(self, event: dict) -> None:
        """Payload keys: ``fingerprint``, ``name``, ``type``."""

    def on_certificate_renewed(self, event: dict) -> None:
        """Payload keys: ``fingerprint``, ``previousFingerprint``, ``name``."""

    def on_certificate_deleted(self, event: dict) -> None:
        """Payload keys: ``fingerprint``, ``name``, ``archive``."""

    def on_deployment_succeeded(self, event: dict) -> None:
        """Payload: the deployment report."""

    def on_deployment_failed(self, event: dict) -> None:
        """Payload: the deployment report."""

    def on_watcher_reload(self, event: dict) -> None:
        """Payload keys: ``path``, ``fingerprint``, ``previousFingerprint``, ``change``."""

    def on_master_key_rotated(self, event: dict) -> None:
        """Payload keys: ``keyVersion``, ``handles``."""

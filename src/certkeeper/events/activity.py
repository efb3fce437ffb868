"""Activity sink: one JSON line per engine event.

The sink writes to the ``certkeeper.activity`` logger; where those
lines end up (a rotating file, stderr, nowhere) is decided by
:func:`certkeeper.logging.configure_logging`.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from certkeeper.logging.sanitize import sanitize_for_logs
from certkeeper.logging.setup import ACTIVITY_LOGGER

log = logging.getLogger(__name__)


class ActivitySink:
    """Fire-and-forget recorder of activity events."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(ACTIVITY_LOGGER)

    def emit(self, kind: str, payload: dict, actor: str | None = None) -> None:
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "kind": kind,
            "actor": actor or "system",
            "payload": sanitize_for_logs(payload),
        }
        try:
            line = json.dumps(entry, default=str, ensure_ascii=False)
        except (TypeError, ValueError):
            log.exception("Unserialisable activity payload for '%s'", kind)
            return
        self._logger.info(line)

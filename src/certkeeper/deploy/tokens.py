"""API token cache for Nginx Proxy Manager deployments.

Tokens are cached per ``(base_url, identity)`` together with the expiry
the server reported.  A token within :attr:`NpmTokenCache.margin` of
its expiry counts as expired and is fetched again with the stored
credentials.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: datetime


class NpmTokenCache:
    """Thread-safe token cache.

    Parameters
    ----------
    margin:
        Tokens expiring sooner than this are refreshed before use.
    clock:
        Returns the current UTC time; replaced in tests.

    """

    def __init__(
        self,
        *,
        margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.margin = margin
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._tokens: dict[tuple[str, str], CachedToken] = {}

    def get(
        self,
        key: tuple[str, str],
        fetch: Callable[[], CachedToken],
    ) -> str:
        """Return a valid token for *key*, calling *fetch* when needed.

        Exceptions from *fetch* propagate unchanged.
        """
        with self._lock:
            cached = self._tokens.get(key)
        if cached is not None and cached.expires_at - self.margin > self._clock():
            return cached.token
        if cached is not None:
            log.debug("NPM token for %s expired at %s, refreshing", key[0], cached.expires_at)
        fresh = fetch()
        with self._lock:
            self._tokens[key] = fresh
        return fresh.token

    def invalidate(self, key: tuple[str, str]) -> None:
        with self._lock:
            self._tokens.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

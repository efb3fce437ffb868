"""Versioned master-key file.

The keyring is a JSON document readable only by the process owner::

    {
        "current": "2",
        "keys": {"1": "<base64 256-bit secret>", "2": "..."},
        "createdAt": "2026-01-01T00:00:00Z"
    }

Older versions stay in the file while any stored handle still
references them.  Losing this file makes every wrapped secret
unrecoverable.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import secrets
import stat
import threading
from datetime import UTC, datetime

from certkeeper.core.errors import DecryptError, StoreIOError
from certkeeper.core.fileio import atomic_write_json

log = logging.getLogger(__name__)

_SECRET_BYTES = 32
_FILE_MODE = 0o600


class MasterKeyring:
    """In-memory view of the master-key file.

    Parameters
    ----------
    path:
        Location of the keyring file (``masterKeyPath``).

    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._keys: dict[str, bytes] = {}
        self._current: str | None = None
        self._created_at: str | None = None

    @property
    def path(self) -> str:
        return self._path

    def exists(self) -> bool:
        return os.path.isfile(self._path)

    @property
    def loaded(self) -> bool:
        return self._current is not None

    @property
    def current_version(self) -> str:
        if self._current is None:
            msg = "Master keyring is not loaded"
            raise DecryptError(msg)
        return self._current

    @property
    def versions(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._keys, key=int))

    def secret(self, version: str) -> bytes:
        with self._lock:
            key = self._keys.get(version)
        if key is None:
            msg = f"Unknown master key version '{version}'"
            raise DecryptError(msg)
        return key

    # -- persistence --------------------------------------------------------

    def create(self) -> str:
        """Generate the first master key and write the file."""
        with self._lock:
            self._keys = {"1": secrets.token_bytes(_SECRET_BYTES)}
            self._current = "1"
            self._created_at = datetime.now(UTC).isoformat()
        self.save()
        log.info("Created master keyring at %s", self._path)
        return "1"

    def load(self) -> None:
        try:
            with open(self._path, encoding="utf-8") as fh:
                doc = json.load(fh)
        except FileNotFoundError:
            msg = f"Master key file not found: {self._path}"
            raise DecryptError(msg) from None
        except (OSError, ValueError) as exc:
            msg = f"Cannot read master key file {self._path}: {exc}"
            raise StoreIOError(msg) from exc

        try:
            keys = {str(v): base64.b64decode(k) for v, k in doc["keys"].items()}
            current = str(doc["current"])
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"Malformed master key file {self._path}: {exc}"
            raise StoreIOError(msg) from exc
        if current not in keys:
            msg = f"Master key file {self._path} names missing current version '{current}'"
            raise StoreIOError(msg)

        with self._lock:
            self._keys = keys
            self._current = current
            self._created_at = doc.get("createdAt")
        self._check_permissions()
        log.debug("Loaded master keyring (versions=%s, current=%s)", sorted(keys), current)

    def save(self) -> None:
        with self._lock:
            doc = {
                "current": self._current,
                "keys": {v: base64.b64encode(k).decode("ascii") for v, k in self._keys.items()},
                "createdAt": self._created_at,
            }
        atomic_write_json(self._path, doc, mode=_FILE_MODE)

    # -- rotation steps -------------------------------------------------------

    def add_version(self) -> str:
        """Add a new secret without making it current.  Not persisted."""
        with self._lock:
            version = str(max((int(v) for v in self._keys), default=0) + 1)
            self._keys[version] = secrets.token_bytes(_SECRET_BYTES)
        return version

    def remove_version(self, version: str) -> None:
        with self._lock:
            if version == self._current:
                msg = f"Refusing to remove current master key version '{version}'"
                raise ValueError(msg)
            self._keys.pop(version, None)

    def set_current(self, version: str) -> None:
        with self._lock:
            if version not in self._keys:
                msg = f"Unknown master key version '{version}'"
                raise DecryptError(msg)
            self._current = version

    def _check_permissions(self) -> None:
        try:
            mode = os.stat(self._path).st_mode
        except OSError:
            return
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            log.warning(
                "Master key file '%s' is accessible by other users (mode=%o). "
                "Recommend chmod 600.",
                self._path,
                stat.S_IMODE(mode),
            )

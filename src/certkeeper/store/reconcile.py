"""Fingerprint re-derivation and reconciliation bookkeeping.

The index never has the last word on a certificate's identity: the
store re-hashes ``cert.crt`` on reads (cached by mtime and size) and
treats a mismatch as an external supersession.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass

from certkeeper.ca.parsing import ParsedCertificate, load_certificate

log = logging.getLogger(__name__)

CHANGE_NEW = "new"
CHANGE_MISSING = "missing"
CHANGE_RESTORED = "restored"
CHANGE_SUPERSEDED = "superseded"


@dataclass(frozen=True)
class ReconcileChange:
    """One difference between the index and the files on disk."""

    change: str
    fingerprint: str
    name: str
    path: str
    previous_fingerprint: str | None = None

    def to_dict(self) -> dict:
        data = {
            "change": self.change,
            "fingerprint": self.fingerprint,
            "name": self.name,
            "path": self.path,
        }
        if self.previous_fingerprint:
            data["previousFingerprint"] = self.previous_fingerprint
        return data


class FingerprintCache:
    """Parsed certificates keyed by path, valid while mtime and size hold."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[int, int, ParsedCertificate]] = {}

    def parse(self, path: str) -> ParsedCertificate | None:
        """Return the parsed certificate at *path*, ``None`` if absent.

        Raises
        ------
        IssuerError
            If the file exists but is not a certificate.

        """
        try:
            st = os.stat(path)
        except FileNotFoundError:
            self.invalidate(path)
            return None
        stamp = (st.st_mtime_ns, st.st_size)
        with self._lock:
            cached = self._entries.get(path)
        if cached is not None and cached[:2] == stamp:
            return cached[2]
        parsed = load_certificate(path)
        with self._lock:
            self._entries[path] = (*stamp, parsed)
        return parsed

    def fingerprint(self, path: str) -> str | None:
        parsed = self.parse(path)
        return parsed.fingerprint if parsed is not None else None

    def invalidate(self, path: str) -> None:
        with self._lock:
            self._entries.pop(path, None)


def key_is_encrypted(key_path: str) -> bool:
    try:
        with open(key_path, "rb") as fh:
            head = fh.read(256)
    except OSError:
        return False
    return b"ENCRYPTED" in head

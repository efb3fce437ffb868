"""The ``certificates.json`` index file.

A single JSON object mapping fingerprint to record.  Writes always
replace the whole file atomically (temp sibling, fsync, rename, fsync
of the directory), so a crash leaves either the old or the new index.
"""

from __future__ import annotations

import json
import logging
import os
import re

from certkeeper.core.errors import StartupError
from certkeeper.core.fileio import atomic_write_json

log = logging.getLogger(__name__)

_FINGERPRINT_RE = re.compile(r"^[0-9a-f]{64}$")


class IndexFile:
    def __init__(self, path: str) -> None:
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def exists(self) -> bool:
        return os.path.isfile(self._path)

    def load(self) -> dict[str, dict]:
        """Read every record.

        A missing file is an empty store.

        Raises
        ------
        StartupError
            With exit code 2 when the file is unreadable or malformed.

        """
        if not self.exists():
            return {}
        try:
            with open(self._path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            msg = f"Certificate index {self._path} is unreadable: {exc}"
            raise StartupError(msg, exit_code=StartupError.EXIT_CORRUPT_INDEX) from exc

        if not isinstance(data, dict):
            msg = f"Certificate index {self._path} must contain a JSON object"
            raise StartupError(msg, exit_code=StartupError.EXIT_CORRUPT_INDEX)
        for fingerprint, record in data.items():
            if not _FINGERPRINT_RE.match(fingerprint) or not isinstance(record, dict):
                msg = f"Certificate index {self._path} has a malformed entry '{fingerprint[:20]}'"
                raise StartupError(msg, exit_code=StartupError.EXIT_CORRUPT_INDEX)
            if "name" not in record or "type" not in record:
                msg = f"Index entry {fingerprint[:16]} lacks name or type"
                raise StartupError(msg, exit_code=StartupError.EXIT_CORRUPT_INDEX)
        log.debug("Loaded %d index record(s) from %s", len(data), self._path)
        return data

    def write(self, records: dict[str, dict]) -> None:
        """Atomically replace the index.

        Raises
        ------
        StoreIOError
            The previous index is left untouched.

        """
        atomic_write_json(self._path, records, mode=0o600)
        log.debug("Wrote %d index record(s)", len(records))


def is_fingerprint(value: str) -> bool:
    return bool(_FINGERPRINT_RE.match(value or ""))


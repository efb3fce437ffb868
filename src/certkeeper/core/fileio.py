"""Crash-safe file replacement.

Every durable write goes through :func:`atomic_write_bytes`: the data
is written to a temporary sibling, fsynced, renamed over the target and
the directory entry is fsynced.  A crash leaves either the old or the
new file, never a partial one.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from typing import Any

from certkeeper.core.errors import StoreIOError

log = logging.getLogger(__name__)


def fsync_dir(path: str) -> None:
    """Flush a directory entry (no-op where directories cannot be opened)."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_bytes(path: str, data: bytes, *, mode: int = 0o644) -> None:
    """Atomically replace *path* with *data*.

    Raises
    ------
    StoreIOError
        If any step fails; the previous file content is left untouched.

    """
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{os.path.basename(path)}.",
            suffix=".tmp",
            dir=directory,
        )
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        tmp_path = None
        fsync_dir(directory)
    except OSError as exc:
        msg = f"Failed to write {path}: {exc}"
        raise StoreIOError(msg) from exc
    finally:
        if tmp_path is not None:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)


def atomic_write_json(path: str, payload: Any, *, mode: int = 0o644) -> None:  # noqa: ANN401
    data = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False).encode("utf-8")
    atomic_write_bytes(path, data + b"\n", mode=mode)

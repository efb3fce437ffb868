"""Copies of a certificate's files kept under ``<certdir>/backups/``.

Two kinds exist: ``backup`` snapshots taken on operator request and
``version`` snapshots taken automatically before a renewal or a
restore overwrites the files.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from certkeeper.core.errors import StoreIOError
from certkeeper.core.types import SnapshotKind
from certkeeper.models.certificate import Snapshot
from certkeeper.store.layout import BACKUPS_DIR, MATERIAL_FILES, P12_FILE

if TYPE_CHECKING:
    from certkeeper.models.certificate import Certificate

log = logging.getLogger(__name__)


def copy_material(source_dir: str, target_dir: str) -> dict[str, str]:
    """Copy the certificate files present in *source_dir*.

    Returns a mapping of file name to copied path.
    """
    copied: dict[str, str] = {}
    try:
        os.makedirs(target_dir, mode=0o700, exist_ok=True)
        for name in (*MATERIAL_FILES, P12_FILE):
            src = os.path.join(source_dir, name)
            if os.path.isfile(src):
                dst = os.path.join(target_dir, name)
                shutil.copy2(src, dst)
                copied[name] = dst
    except OSError as exc:
        msg = f"Cannot copy certificate files from {source_dir}: {exc}"
        raise StoreIOError(msg) from exc
    return copied


def take_snapshot(
    cert: Certificate,
    kind: SnapshotKind,
    *,
    description: str = "",
    now: datetime | None = None,
) -> Snapshot:
    now = now or datetime.now(UTC)
    snapshot_id = f"{kind.value}-{now:%Y%m%dT%H%M%SZ}-{uuid.uuid4().hex[:6]}"
    directory = os.path.join(cert.directory, BACKUPS_DIR, snapshot_id)
    copied = copy_material(cert.directory, directory)
    log.info(
        "Snapshot %s of '%s' holds %d file(s)",
        snapshot_id,
        cert.name,
        len(copied),
    )
    return Snapshot(
        id=snapshot_id,
        kind=kind,
        created_at=now,
        directory=directory,
        fingerprint=cert.fingerprint,
        description=description,
    )


def snapshot_files(snapshot: Snapshot) -> dict[str, str]:
    """Paths of the files kept in *snapshot* keyed by role."""
    roles = {"crt": "cert.crt", "key": "key.key", "csr": "cert.csr", "chain": "chain.pem", "pem": "cert.pem"}
    return {
        role: os.path.join(snapshot.directory, name)
        for role, name in roles.items()
        if os.path.isfile(os.path.join(snapshot.directory, name))
    }


def restore_material(source_dir: str, target_dir: str) -> None:
    """Put the files of *source_dir* back into *target_dir*.

    Each file is copied to a temporary sibling and renamed into place;
    ``cert.crt`` goes last.
    """
    try:
        for name in MATERIAL_FILES:
            src = os.path.join(source_dir, name)
            if not os.path.isfile(src):
                continue
            dst = os.path.join(target_dir, name)
            tmp = f"{dst}.restore"
            shutil.copy2(src, tmp)
            os.replace(tmp, dst)
    except OSError as exc:
        msg = f"Cannot restore files from {source_dir}: {exc}"
        raise StoreIOError(msg) from exc


def remove_snapshot(snapshot: Snapshot) -> None:
    shutil.rmtree(snapshot.directory, ignore_errors=True)


def is_expired(snapshot: Snapshot, retention_days: int, now: datetime) -> bool:
    """``backupRetention`` of 0 keeps snapshots forever."""
    if retention_days <= 0:
        return False
    return snapshot.created_at < now - timedelta(days=retention_days)

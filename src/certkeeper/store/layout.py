"""On-disk layout of a certificate store.

::

    <storeDir>/
        certificates.json          index (fingerprint -> record)
        .master.key                master keyring (default location)
        .work/<uuid>/              issuance working directories
        .archive/<dir>-<stamp>/    directories of deleted certificates
        <name>-<fp8>/              one directory per certificate
            cert.crt  key.key  cert.csr  chain.pem  cert.pem  [cert.p12]
            backups/<snapshot-id>/
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass

from certkeeper.core.errors import StoreIOError
from certkeeper.models.certificate import CertPaths

INDEX_FILE = "certificates.json"
WORK_DIR = ".work"
ARCHIVE_DIR = ".archive"
BACKUPS_DIR = "backups"

CERT_FILE = "cert.crt"
KEY_FILE = "key.key"
CSR_FILE = "cert.csr"
CHAIN_FILE = "chain.pem"
FULLCHAIN_FILE = "cert.pem"
P12_FILE = "cert.p12"
DER_FILE = "cert.der"

# Files copied into snapshots and archives, in restore order
MATERIAL_FILES = (KEY_FILE, CSR_FILE, CHAIN_FILE, FULLCHAIN_FILE, CERT_FILE)

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_DIR_NAME = 64


def sanitize_name(name: str) -> str:
    """Filesystem-safe form of a certificate name."""
    cleaned = _UNSAFE_RE.sub("_", name.strip()).strip("._") or "certificate"
    return cleaned[:_MAX_DIR_NAME]


@dataclass(frozen=True)
class StoreLayout:
    root: str

    @property
    def index_path(self) -> str:
        return os.path.join(self.root, INDEX_FILE)

    @property
    def work_root(self) -> str:
        return os.path.join(self.root, WORK_DIR)

    @property
    def archive_root(self) -> str:
        return os.path.join(self.root, ARCHIVE_DIR)

    def ensure(self) -> None:
        try:
            os.makedirs(self.root, mode=0o700, exist_ok=True)
            os.makedirs(self.work_root, mode=0o700, exist_ok=True)
            os.makedirs(self.archive_root, mode=0o700, exist_ok=True)
        except OSError as exc:
            msg = f"Cannot prepare store directory {self.root}: {exc}"
            raise StoreIOError(msg) from exc

    def clean_work(self) -> int:
        """Remove working directories left behind by an interrupted run."""
        removed = 0
        if not os.path.isdir(self.work_root):
            return removed
        for entry in os.listdir(self.work_root):
            shutil.rmtree(os.path.join(self.work_root, entry), ignore_errors=True)
            removed += 1
        return removed

    def directory_for(self, name: str, fingerprint: str) -> str:
        return os.path.join(self.root, f"{sanitize_name(name)}-{fingerprint[:8]}")

    def is_internal(self, path: str) -> bool:
        """True for paths under the work and archive areas."""
        rel = os.path.relpath(os.path.abspath(path), self.root)
        first = rel.split(os.sep, 1)[0]
        return first in (WORK_DIR, ARCHIVE_DIR) or BACKUPS_DIR in rel.split(os.sep)

    def certificate_dirs(self) -> list[str]:
        """Directories directly under the root that hold a ``cert.crt``."""
        found = []
        try:
            entries = sorted(os.listdir(self.root))
        except OSError as exc:
            msg = f"Cannot list store directory {self.root}: {exc}"
            raise StoreIOError(msg) from exc
        for entry in entries:
            if entry.startswith("."):
                continue
            path = os.path.join(self.root, entry)
            if os.path.isdir(path) and os.path.isfile(os.path.join(path, CERT_FILE)):
                found.append(path)
        return found


def paths_in(directory: str, *, chain: bool = True) -> CertPaths:
    return CertPaths(
        crt=os.path.join(directory, CERT_FILE),
        key=os.path.join(directory, KEY_FILE),
        csr=os.path.join(directory, CSR_FILE),
        pem=os.path.join(directory, FULLCHAIN_FILE),
        chain=os.path.join(directory, CHAIN_FILE) if chain else None,
    )

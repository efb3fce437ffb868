"""Key-encryption service: wrap, unwrap and rotate.

Secrets are sealed with AES-256-GCM (96-bit nonce, 128-bit tag).  The
AEAD key for each handle is derived with HKDF-SHA256 from the master
key version named in the handle and a random per-handle salt, so a
handle carries everything needed to open it except the master secret.

Rotation protocol:

1. add a new master key version to the keyring file (old ones retained);
2. every registered :class:`HandleOwner` re-wraps its handles under the
   new version and commits them atomically;
3. the new version becomes current and versions no longer referenced
   by any owner are dropped from the keyring file.

A failure in step 2 removes the new version again (when nothing
references it) so the old key stays in use; no handle ever references
a version missing from the keyring.
"""

from __future__ import annotations

import base64
import logging
import os
from typing import TYPE_CHECKING, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from certkeeper.core.errors import CertKeeperError, DecryptError
from certkeeper.core.locks import ReadWriteLock
from certkeeper.models.certificate import PassphraseHandle

if TYPE_CHECKING:
    from collections.abc import Callable

    from certkeeper.vault.keyring import MasterKeyring

log = logging.getLogger(__name__)

_NONCE_BYTES = 12
_SALT_BYTES = 16
_KDF_INFO = b"certkeeper/handle/v1"


class HandleOwner(Protocol):
    """Something that persists :class:`PassphraseHandle` values."""

    def has_handles(self) -> bool: ...

    def referenced_key_versions(self) -> set[str]: ...

    def rewrap_handles(
        self,
        rewrap: Callable[[PassphraseHandle], PassphraseHandle],
    ) -> int: ...


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str, label: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (ValueError, TypeError) as exc:
        msg = f"Malformed handle field '{label}'"
        raise DecryptError(msg) from exc


class KeyEncryptionService:
    """Wraps secrets under the current master key.

    Parameters
    ----------
    keyring:
        A loaded :class:`MasterKeyring`.

    """

    def __init__(self, keyring: MasterKeyring) -> None:
        self._keyring = keyring
        self._lock = ReadWriteLock()
        self._owners: list[HandleOwner] = []
        self._listeners: list[Callable[[str], None]] = []

    @property
    def current_version(self) -> str:
        return self._keyring.current_version

    def register_owner(self, owner: HandleOwner) -> None:
        self._owners.append(owner)

    def on_rotated(self, callback: Callable[[str], None]) -> None:
        """Call *callback(new_version)* after each successful rotation."""
        self._listeners.append(callback)

    # -- public operations ---------------------------------------------------

    def wrap(self, plaintext: bytes | str, *, fingerprint: str | None = None) -> PassphraseHandle:
        """Seal *plaintext* under the current master key."""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        with self._lock.shared():
            return self._seal(plaintext, self._keyring.current_version, fingerprint)

    def unwrap(self, handle: PassphraseHandle) -> bytes:
        """Open *handle*.

        Raises
        ------
        DecryptError
            On authentication failure or unknown ``keyVersion``.

        """
        with self._lock.shared():
            return self._open(handle)

    def unwrap_text(self, handle: PassphraseHandle) -> str:
        return self.unwrap(handle).decode("utf-8")

    def rotate(self) -> str:
        """Generate a new master key and re-wrap every stored handle.

        Returns the new key version.
        """
        with self._lock.exclusive():
            old_version = self._keyring.current_version
            new_version = self._keyring.add_version()
            self._keyring.save()

        log.info("Rotating master key %s -> %s", old_version, new_version)

        def rewrap(handle: PassphraseHandle) -> PassphraseHandle:
            with self._lock.shared():
                plaintext = self._open(handle)
                return self._seal(plaintext, new_version, handle.fingerprint)

        rewrapped = 0
        try:
            for owner in self._owners:
                rewrapped += owner.rewrap_handles(rewrap)
        except (CertKeeperError, OSError):
            log.exception("Master key rotation failed; keeping version %s", old_version)
            with self._lock.exclusive():
                if new_version not in self._referenced_versions():
                    self._keyring.remove_version(new_version)
                    self._keyring.save()
            raise

        with self._lock.exclusive():
            self._keyring.set_current(new_version)
            keep = self._referenced_versions() | {new_version}
            for version in self._keyring.versions:
                if version not in keep:
                    self._keyring.remove_version(version)
            self._keyring.save()

        log.info(
            "Master key rotated to version %s (%d handle(s) re-wrapped)",
            new_version,
            rewrapped,
        )
        for callback in self._listeners:
            callback(new_version)
        return new_version

    # -- internals -----------------------------------------------------------

    def _referenced_versions(self) -> set[str]:
        versions: set[str] = set()
        for owner in self._owners:
            versions |= owner.referenced_key_versions()
        return versions

    def _derive(self, version: str, salt: bytes) -> bytes:
        return HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            info=_KDF_INFO,
        ).derive(self._keyring.secret(version))

    @staticmethod
    def _aad(version: str) -> bytes:
        return f"certkeeper:{version}".encode("ascii")

    def _seal(self, plaintext: bytes, version: str, fingerprint: str | None) -> PassphraseHandle:
        salt = os.urandom(_SALT_BYTES)
        nonce = os.urandom(_NONCE_BYTES)
        key = self._derive(version, salt)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext, self._aad(version))
        return PassphraseHandle(
            ciphertext=_b64(ciphertext),
            nonce=_b64(nonce),
            kdf_salt=_b64(salt),
            key_version=version,
            fingerprint=fingerprint,
        )

    def _open(self, handle: PassphraseHandle) -> bytes:
        version = handle.key_version
        key = self._derive(version, _unb64(handle.kdf_salt, "kdfSalt"))
        try:
            return AESGCM(key).decrypt(
                _unb64(handle.nonce, "nonce"),
                _unb64(handle.ciphertext, "ciphertext"),
                self._aad(version),
            )
        except InvalidTag:
            msg = f"Authentication failed for handle under key version '{version}'"
            raise DecryptError(msg) from None

"""Key-encryption subsystem.

Public API::

    from certkeeper.vault import KeyEncryptionService, MasterKeyring

    keyring = MasterKeyring("/var/lib/certkeeper/.master.key")
    keyring.load()
    vault = KeyEncryptionService(keyring)
    handle = vault.wrap(b"s3cret")
    assert vault.unwrap(handle) == b"s3cret"
"""

from certkeeper.vault.keyring import MasterKeyring
from certkeeper.vault.masking import MASK
from certkeeper.vault.service import HandleOwner, KeyEncryptionService

__all__ = ["MASK", "HandleOwner", "KeyEncryptionService", "MasterKeyring"]

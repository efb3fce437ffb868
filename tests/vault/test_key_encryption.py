"""Tests for certkeeper.vault.service: wrapping and master key rotation."""

from __future__ import annotations

import json
from dataclasses import replace

import pytest

from certkeeper.core.errors import DecryptError
from certkeeper.vault.keyring import MasterKeyring
from certkeeper.vault.service import KeyEncryptionService


@pytest.fixture()
def service(tmp_path):
    ring = MasterKeyring(str(tmp_path / ".master.key"))
    ring.create()
    return KeyEncryptionService(ring)


# ---------------------------------------------------------------------------
# TestWrapUnwrap
# ---------------------------------------------------------------------------


class TestWrapUnwrap:
    @pytest.mark.parametrize("plaintext", [b"", b"x", b"\x00\xff" * 64, "pässwörd".encode()])
    def test_round_trip(self, service, plaintext):
        handle = service.wrap(plaintext)
        assert handle.key_version == "1"
        assert service.unwrap(handle) == plaintext

    def test_text_round_trip(self, service):
        handle = service.wrap("hunter2", fingerprint="ab" * 32)
        assert handle.fingerprint == "ab" * 32
        assert service.unwrap_text(handle) == "hunter2"

    def test_handles_are_randomised(self, service):
        a = service.wrap(b"same")
        b = service.wrap(b"same")
        assert a.ciphertext != b.ciphertext
        assert a.nonce != b.nonce

    def test_tampered_ciphertext(self, service):
        handle = service.wrap(b"secret")
        other = service.wrap(b"other!")
        with pytest.raises(DecryptError, match="Authentication failed"):
            service.unwrap(replace(handle, ciphertext=other.ciphertext))

    def test_unknown_key_version(self, service):
        handle = service.wrap(b"secret")
        with pytest.raises(DecryptError, match="Unknown master key version"):
            service.unwrap(replace(handle, key_version="7"))

    def test_version_is_bound_to_ciphertext(self, service):
        handle = service.wrap(b"secret")
        service._keyring.add_version()
        with pytest.raises(DecryptError):
            service.unwrap(replace(handle, key_version="2"))

    def test_malformed_field(self, service):
        handle = service.wrap(b"secret")
        with pytest.raises(DecryptError, match="nonce"):
            service.unwrap(replace(handle, nonce="***"))


# ---------------------------------------------------------------------------
# TestRotation
# ---------------------------------------------------------------------------


class TestRotationWithoutOwners:
    def test_rotate_switches_version_and_drops_unreferenced(self, service):
        rotated = []
        service.on_rotated(rotated.append)
        assert service.rotate() == "2"
        assert service.current_version == "2"
        assert service._keyring.versions == ("2",)
        assert rotated == ["2"]

    def test_rotation_failure_keeps_old_version(self, service):
        class Broken:
            def has_handles(self):
                return True

            def referenced_key_versions(self):
                return {"1"}

            def rewrap_handles(self, rewrap):
                raise DecryptError("cannot open")

        service.register_owner(Broken())
        with pytest.raises(DecryptError):
            service.rotate()
        assert service.current_version == "1"
        assert service._keyring.versions == ("1",)


class TestRotationWithStore:
    def test_passphrases_survive_rotation(self, store, root_ca, vault, settings):
        originals = {}
        for idx in range(10):
            cert = store.create(
                {
                    "name": f"svc-{idx}",
                    "type": "server",
                    "subject": {"commonName": f"svc{idx}.example.com"},
                    "issuerFingerprint": root_ca.fingerprint,
                    "passphraseProtected": True,
                },
            )
            assert cert.passphrase is not None
            originals[cert.fingerprint] = store.key_passphrase(cert.fingerprint)

        new_version = vault.rotate()
        assert new_version == "2"

        for fingerprint, plaintext in originals.items():
            cert = store.get_by_fingerprint(fingerprint)
            assert cert.passphrase.key_version == "2"
            assert store.key_passphrase(fingerprint) == plaintext

        with open(store.layout.index_path, encoding="utf-8") as fh:
            index = json.load(fh)
        versions = {
            rec["passphrase"]["keyVersion"] for rec in index.values() if rec.get("passphrase")
        }
        assert versions == {"2"}
        assert store.referenced_key_versions() == {"2"}

    def test_action_secrets_are_rewrapped(self, store, leaf, vault, tmp_path):
        action = store.add_action(
            leaf.fingerprint,
            {
                "type": "webhook",
                "name": "notify",
                "config": {"url": "https://hooks.example.com/x", "secret": "s3cr3t"},
            },
        )
        vault.rotate()
        cert = store.get_by_fingerprint(leaf.fingerprint)
        stored = cert.find_action(action.id).config["secret"]
        assert stored["$secret"]["keyVersion"] == "2"
        assert store.reveal_action_config(leaf.fingerprint, action.id)["secret"] == "s3cr3t"

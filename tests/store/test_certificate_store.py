"""Tests for certkeeper.store.store: creation, renewal and configuration."""

from __future__ import annotations

import hashlib
import json
import os
import stat
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta
from unittest.mock import patch

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from certkeeper.ca.parsing import load_certificate
from certkeeper.core.errors import (
    ConflictError,
    InUseError,
    IssuerError,
    NotFoundError,
    StartupError,
    StoreIOError,
    ValidationError,
)
from certkeeper.core.types import CertificateType, RecordStatus
from certkeeper.store.store import CertificateStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _der_sha256(path: str) -> str:
    with open(path, "rb") as fh:
        cert = x509.load_pem_x509_certificate(fh.read())
    return hashlib.sha256(cert.public_bytes(serialization.Encoding.DER)).hexdigest()


def _assert_store_invariants(store) -> None:
    for cert in store.list():
        assert _der_sha256(cert.paths.crt) == cert.fingerprint
        assert os.path.isfile(cert.paths.key)
        assert not set(cert.sans.domains) & set(cert.sans.idle_domains)
        assert not set(cert.sans.ips) & set(cert.sans.idle_ips)
        assert cert.validity.not_before < cert.validity.not_after
        if cert.issuer_fingerprint is not None:
            assert store.get_by_fingerprint(cert.issuer_fingerprint).is_ca


def _collect(events) -> list[dict]:
    received: list[dict] = []
    events.subscribe(received.append)
    return received


# ---------------------------------------------------------------------------
# TestCreate
# ---------------------------------------------------------------------------


class TestCreate:
    def test_root_ca(self, store):
        root = store.create(
            {
                "name": "TestRoot",
                "type": "rootCA",
                "subject": {"commonName": "Test Root"},
                "keyAlgorithm": "rsa",
                "keySize": 2048,
                "validityDays": 3650,
            },
        )
        listed = store.list()
        assert [c.fingerprint for c in listed] == [root.fingerprint]
        assert root.type == CertificateType.ROOT_CA
        assert root.issuer_fingerprint is None
        assert root.paths.chain is None
        assert root.key_size == 2048
        assert load_certificate(root.paths.crt).is_ca
        assert root.directory == store.layout.directory_for("TestRoot", root.fingerprint)

    def test_leaf_signed_by_ca(self, store, root_ca):
        leaf = store.create(
            {
                "name": "web",
                "type": "server",
                "subject": {"commonName": "test.example.com"},
                "domains": ["test.example.com", "www.test.example.com"],
                "validityDays": 90,
                "issuerFingerprint": root_ca.fingerprint,
            },
        )
        assert leaf.issuer_fingerprint == root_ca.fingerprint
        assert leaf.validity.not_after <= root_ca.validity.not_after
        assert load_certificate(leaf.paths.crt).issued_by(load_certificate(root_ca.paths.crt).certificate)
        assert [c.fingerprint for c in store.chain_for(leaf.fingerprint)] == [root_ca.fingerprint]
        assert leaf.config.extra["validityDays"] == 90
        _assert_store_invariants(store)

    def test_files_on_disk(self, store, leaf, root_ca):
        for path in (leaf.paths.crt, leaf.paths.key, leaf.paths.csr, leaf.paths.chain, leaf.paths.pem):
            assert os.path.isfile(path)
        assert stat.S_IMODE(os.stat(leaf.paths.key).st_mode) == 0o600
        with open(leaf.paths.pem, "rb") as fh:
            assert len(x509.load_pem_x509_certificates(fh.read())) == 2
        with open(leaf.paths.chain, "rb") as fh, open(root_ca.paths.crt, "rb") as root_fh:
            assert fh.read() == root_fh.read()

    def test_leaf_without_sans_uses_common_name(self, store, root_ca):
        leaf = store.create(
            {"name": "cn", "type": "client", "subject": "client.example.com", "issuerFingerprint": root_ca.fingerprint},
        )
        assert leaf.sans.domains == ("client.example.com",)

    def test_duplicate_name(self, store, root_ca):
        with pytest.raises(ConflictError, match="already exists"):
            store.create({"name": "root", "type": "rootCA", "subject": "Another"})

    def test_unknown_issuer(self, store):
        with pytest.raises(IssuerError, match="not in the store"):
            store.create({"name": "x", "type": "server", "subject": "x.example.com", "issuerFingerprint": "ab" * 32})

    def test_leaf_cannot_sign(self, store, leaf):
        with pytest.raises(IssuerError, match="is not a CA"):
            store.create({"name": "x", "type": "server", "subject": "x.example.com", "issuerFingerprint": leaf.fingerprint})

    def test_config_on_create(self, store, root_ca):
        leaf = store.create(
            {
                "name": "cfg",
                "type": "server",
                "subject": "cfg.example.com",
                "issuerFingerprint": root_ca.fingerprint,
                "config": {"autoRenew": False, "renewDaysBeforeExpiry": 10},
            },
        )
        assert leaf.config.auto_renew is False
        assert leaf.config.renew_days_before_expiry == 10

    def test_invalid_config_on_create(self, store, root_ca):
        with pytest.raises(ValidationError, match="autoRenew"):
            store.create(
                {
                    "name": "cfg",
                    "type": "server",
                    "subject": "cfg.example.com",
                    "issuerFingerprint": root_ca.fingerprint,
                    "config": {"autoRenew": "yes"},
                },
            )

    def test_passphrase_protected(self, store, root_ca):
        leaf = store.create(
            {
                "name": "locked",
                "type": "server",
                "subject": "locked.example.com",
                "issuerFingerprint": root_ca.fingerprint,
                "passphraseProtected": True,
            },
        )
        assert leaf.needs_passphrase
        assert leaf.passphrase is not None
        assert leaf.passphrase.fingerprint == leaf.fingerprint
        with open(leaf.paths.key, "rb") as fh:
            assert b"ENCRYPTED" in fh.read()
        view = store.public_view(leaf)
        assert "passphrase" not in view
        assert view["hasPassphrase"] is True

    def test_created_event(self, store, events):
        received = _collect(events)
        root = store.create({"name": "evt", "type": "rootCA", "subject": "Evt"})
        assert events.drain(5)
        created = [e for e in received if e["kind"] == "certificate-created"]
        assert created[0]["payload"]["fingerprint"] == root.fingerprint


# ---------------------------------------------------------------------------
# TestQueries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_filters(self, store, root_ca, leaf):
        assert [c.name for c in store.list()] == ["root", "web"]
        assert [c.name for c in store.list(type="server")] == ["web"]
        assert [c.name for c in store.list(name="WE")] == ["web"]
        assert [c.name for c in store.list(expiring_within=400)] == ["web"]
        assert store.list(expiring_within=timedelta(days=1)) == []

    def test_lookup(self, store, leaf):
        assert store.get_by_name("web").fingerprint == leaf.fingerprint
        with pytest.raises(NotFoundError):
            store.get_by_name("nope")
        with pytest.raises(NotFoundError):
            store.get_by_fingerprint("00" * 32)

    def test_children(self, store, root_ca, leaf):
        assert [c.fingerprint for c in store.children_of(root_ca.fingerprint)] == [leaf.fingerprint]
        assert store.children_of(leaf.fingerprint) == []

    def test_reads_are_copies(self, store, leaf):
        first = store.get_by_fingerprint(leaf.fingerprint)
        first.config.extra["autoRenew"] = "tampered"
        assert store.get_by_fingerprint(leaf.fingerprint).config.extra["autoRenew"] is True

    def test_watch_directories(self, store, root_ca, leaf):
        assert store.watch_directories() == sorted([root_ca.directory, leaf.directory])


# ---------------------------------------------------------------------------
# TestRenew
# ---------------------------------------------------------------------------


class TestRenew:
    def test_idle_san_applied_on_renewal(self, store, leaf):
        store.add_san(leaf.fingerprint, "api.example.com")
        assert store.get_by_fingerprint(leaf.fingerprint).sans.idle_domains == ("api.example.com",)

        renewed = store.renew(leaf.fingerprint)
        assert renewed.fingerprint != leaf.fingerprint
        assert set(renewed.sans.domains) == {"web.example.com", "api.example.com"}
        assert renewed.sans.idle_domains == ()
        assert set(load_certificate(renewed.paths.crt).domains) == {"web.example.com", "api.example.com"}
        assert [v.fingerprint for v in renewed.previous_versions] == [leaf.fingerprint]
        assert renewed.previous_versions[0].paths["crt"].startswith(os.path.join(leaf.directory, "backups"))
        assert _der_sha256(renewed.previous_versions[0].paths["crt"]) == leaf.fingerprint
        _assert_store_invariants(store)

    def test_idle_sans_kept_when_not_forced(self, store, leaf):
        store.add_san(leaf.fingerprint, "10.0.0.5")
        renewed = store.renew(leaf.fingerprint, force_include_idle=False)
        assert renewed.sans.ips == ()
        assert renewed.sans.idle_ips == ("10.0.0.5",)

    def test_superseded_fingerprint(self, store, leaf):
        renewed = store.renew(leaf.fingerprint)
        assert store.resolve(leaf.fingerprint) == renewed.fingerprint
        with pytest.raises(NotFoundError, match="superseded"):
            store.get_by_fingerprint(leaf.fingerprint)
        assert store.get_by_name("web").fingerprint == renewed.fingerprint
        assert renewed.directory == leaf.directory

    def test_late_caller_gets_successor(self, store, leaf):
        renewed = store.renew(leaf.fingerprint)
        again = store.renew(leaf.fingerprint)
        assert again.fingerprint == renewed.fingerprint

    def test_concurrent_renewals_issue_once(self, store, issuer, leaf):
        workers = 4
        barrier = threading.Barrier(workers)

        def renew():
            barrier.wait(5)
            return store.renew(leaf.fingerprint).fingerprint

        with patch.object(issuer, "issue", wraps=issuer.issue) as spy:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(lambda _: renew(), range(workers)))
        assert spy.call_count == 1
        assert len(set(results)) == 1
        assert results[0] != leaf.fingerprint

    def test_renewal_lock_timeout(self, store, settings, leaf):
        quick = replace(settings, scheduler=replace(settings.scheduler, lock_timeout_seconds=0.05))
        held = threading.Event()
        release = threading.Event()

        def holder():
            with store.lifecycle_lock(leaf.fingerprint):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert held.wait(5)
            with patch.object(store, "_settings", quick), pytest.raises(InUseError, match="certificate lock"):
                store.renew(leaf.fingerprint)
        finally:
            release.set()
            thread.join()

    def test_ca_renewal_keeps_key_and_repoints_children(self, store, root_ca, leaf):
        renewed_root = store.renew(root_ca.fingerprint)
        child = store.get_by_name("web")
        assert child.issuer_fingerprint == renewed_root.fingerprint
        new_root_cert = load_certificate(renewed_root.paths.crt).certificate
        assert load_certificate(child.paths.crt).issued_by(new_root_cert)
        _assert_store_invariants(store)

    def test_renewed_event(self, store, events, leaf):
        received = _collect(events)
        renewed = store.renew(leaf.fingerprint)
        assert events.drain(5)
        payloads = [e["payload"] for e in received if e["kind"] == "certificate-renewed"]
        assert payloads == [
            {
                "fingerprint": renewed.fingerprint,
                "previousFingerprint": leaf.fingerprint,
                "name": "web",
                "reason": "renewal",
            },
        ]

    def test_failed_index_write_restores_files(self, store, leaf):
        with patch.object(store._index, "write", side_effect=StoreIOError("disk full")):
            with pytest.raises(StoreIOError, match="disk full"):
                store.renew(leaf.fingerprint)
        current = store.get_by_fingerprint(leaf.fingerprint)
        assert _der_sha256(current.paths.crt) == leaf.fingerprint
        assert current.snapshots == ()
        assert os.listdir(os.path.join(leaf.directory, "backups")) == []

    def test_failed_certificate_install_restores_key(self, store, leaf):
        with open(leaf.paths.key, "rb") as fh:
            old_key = fh.read()
        real_replace = os.replace

        def failing_replace(src, dst):
            # Only the install of the new certificate fails; the restore goes through
            if str(dst).endswith("cert.crt") and not str(src).endswith(".restore"):
                raise OSError("No space left on device")
            return real_replace(src, dst)

        with patch("certkeeper.store.store.os.replace", side_effect=failing_replace):
            with pytest.raises(StoreIOError, match="Cannot install certificate"):
                store.renew(leaf.fingerprint)

        current = store.get_by_fingerprint(leaf.fingerprint)
        assert _der_sha256(current.paths.crt) == leaf.fingerprint
        with open(current.paths.key, "rb") as fh:
            assert fh.read() == old_key
        assert current.snapshots == ()
        _assert_store_invariants(store)

    def test_missing_leaf_is_reissued(self, store, leaf):
        os.remove(leaf.paths.crt)
        os.remove(leaf.paths.key)
        store.refresh_from_disk()
        assert [c.name for c in store.list()] == ["root"]
        missing = store.list(include_missing=True, name="web")
        assert missing[0].status == RecordStatus.MISSING

        renewed = store.renew(leaf.fingerprint)
        assert renewed.status == RecordStatus.ACTIVE
        assert os.path.isfile(renewed.paths.crt)
        _assert_store_invariants(store)

    def test_ca_without_key_cannot_be_renewed(self, store, root_ca, leaf):
        os.remove(root_ca.paths.key)
        store.refresh_from_disk()
        with pytest.raises(NotFoundError, match="lost its private key"):
            store.renew(root_ca.fingerprint)


# ---------------------------------------------------------------------------
# TestConfig
# ---------------------------------------------------------------------------


class TestConfig:
    def test_patch_touches_only_named_keys(self, store, leaf):
        before = store.get_by_fingerprint(leaf.fingerprint).config.to_record()
        updated = store.update_config(leaf.fingerprint, {"autoRenew": False, "renewDaysBeforeExpiry": 7})
        after = store.get_by_fingerprint(leaf.fingerprint).config.to_record()
        assert updated.config.auto_renew is False
        assert after["autoRenew"] is False
        assert after["renewDaysBeforeExpiry"] == 7
        for key in before:
            if key not in ("autoRenew", "renewDaysBeforeExpiry"):
                assert after[key] == before[key]

    def test_unknown_keys_survive(self, store, leaf):
        store.update_config(leaf.fingerprint, {"note": {"owner": "ops"}})
        store.update_config(leaf.fingerprint, {"autoRenew": False})
        with open(store.layout.index_path, encoding="utf-8") as fh:
            record = json.load(fh)[leaf.fingerprint]
        assert record["config"]["note"] == {"owner": "ops"}

    @pytest.mark.parametrize(
        "patch_data",
        [
            {"autoRenew": "no"},
            {"renewDaysBeforeExpiry": -1},
            {"renewDaysBeforeExpiry": True},
            {"validityDays": 0},
            {"deployActions": "copy"},
        ],
    )
    def test_invalid_patch(self, store, leaf, patch_data):
        with pytest.raises(ValidationError):
            store.update_config(leaf.fingerprint, patch_data)

    def test_failed_write_leaves_index_untouched(self, store, leaf):
        with open(store.layout.index_path, "rb") as fh:
            before = fh.read()
        with patch.object(store._index, "write", side_effect=StoreIOError("disk full")):
            with pytest.raises(StoreIOError):
                store.update_config(leaf.fingerprint, {"autoRenew": False})
        with open(store.layout.index_path, "rb") as fh:
            assert fh.read() == before
        assert store.get_by_fingerprint(leaf.fingerprint).config.auto_renew is True

    def test_rename(self, store, root_ca, leaf):
        store.rename(leaf.fingerprint, "frontend")
        assert store.get_by_name("frontend").fingerprint == leaf.fingerprint
        with pytest.raises(ConflictError):
            store.rename(leaf.fingerprint, "root")


# ---------------------------------------------------------------------------
# TestDelete
# ---------------------------------------------------------------------------


class TestDelete:
    def test_issuer_in_use(self, store, root_ca, leaf):
        with pytest.raises(InUseError, match="issuer of"):
            store.delete(root_ca.fingerprint)

    def test_delete_archives(self, store, events, root_ca, leaf):
        received = _collect(events)
        archive = store.delete(leaf.fingerprint)
        assert archive.startswith(store.layout.archive_root)
        assert os.path.isfile(os.path.join(archive, "cert.crt"))
        assert not os.path.exists(leaf.directory)
        with pytest.raises(NotFoundError):
            store.get_by_fingerprint(leaf.fingerprint)
        store.delete(root_ca.fingerprint)
        assert store.list() == []
        assert events.drain(5)
        assert sorted(e["payload"]["name"] for e in received if e["kind"] == "certificate-deleted") == ["root", "web"]


# ---------------------------------------------------------------------------
# TestSans
# ---------------------------------------------------------------------------


class TestSans:
    def test_idle_add_is_idempotent(self, store, leaf):
        store.add_san(leaf.fingerprint, "web.example.com")
        store.add_san(leaf.fingerprint, "API.example.com")
        store.add_san(leaf.fingerprint, "api.example.com")
        cert = store.get_by_fingerprint(leaf.fingerprint)
        assert cert.sans.domains == ("web.example.com",)
        assert cert.sans.idle_domains == ("api.example.com",)

    def test_active_add_reissues(self, store, leaf):
        renewed = store.add_san(leaf.fingerprint, "10.1.1.1", mode="active")
        assert renewed.fingerprint != leaf.fingerprint
        assert renewed.sans.ips == ("10.1.1.1",)
        assert load_certificate(renewed.paths.crt).ips == ("10.1.1.1",)

    def test_active_add_clears_idle_entry(self, store, leaf):
        store.add_san(leaf.fingerprint, "api.example.com")
        renewed = store.add_san(leaf.fingerprint, "api.example.com", mode="active")
        assert "api.example.com" in renewed.sans.domains
        assert renewed.sans.idle_domains == ()

    def test_bad_mode(self, store, leaf):
        with pytest.raises(ValidationError, match="SAN mode"):
            store.add_san(leaf.fingerprint, "a.example.com", mode="later")

    def test_remove_idle(self, store, leaf):
        store.add_san(leaf.fingerprint, "api.example.com")
        cert = store.remove_san(leaf.fingerprint, "api.example.com")
        assert cert.fingerprint == leaf.fingerprint
        assert cert.sans.idle_domains == ()

    def test_remove_active_reissues(self, store, leaf):
        two = store.add_san(leaf.fingerprint, "api.example.com", mode="active")
        one = store.remove_san(two.fingerprint, "web.example.com")
        assert one.sans.domains == ("api.example.com",)
        assert load_certificate(one.paths.crt).domains == ("api.example.com",)

    def test_last_san_cannot_be_removed(self, store, leaf):
        with pytest.raises(ValidationError, match="at least one SAN"):
            store.remove_san(leaf.fingerprint, "web.example.com")

    def test_remove_unknown(self, store, leaf):
        with pytest.raises(NotFoundError, match="is not a SAN"):
            store.remove_san(leaf.fingerprint, "nope.example.com")


# ---------------------------------------------------------------------------
# TestExport
# ---------------------------------------------------------------------------


class TestExport:
    def test_der(self, store, leaf):
        path = store.export(leaf.fingerprint, "der")
        with open(path, "rb") as fh:
            cert = x509.load_der_x509_certificate(fh.read())
        assert hashlib.sha256(cert.public_bytes(serialization.Encoding.DER)).hexdigest() == leaf.fingerprint
        assert store.get_by_fingerprint(leaf.fingerprint).paths.der == path

    def test_p12(self, store, leaf):
        from cryptography.hazmat.primitives.serialization import pkcs12

        path = store.export(leaf.fingerprint, "p12", passphrase="export-pw")
        with open(path, "rb") as fh:
            key, cert, extra = pkcs12.load_key_and_certificates(fh.read(), b"export-pw")
        assert key is not None
        assert cert is not None
        assert len(extra) == 1
        assert store.get_by_fingerprint(leaf.fingerprint).paths.p12 == path

    def test_pem(self, store, leaf):
        path = store.export(leaf.fingerprint, "pem")
        assert path == leaf.paths.pem
        with open(path, "rb") as fh:
            assert len(x509.load_pem_x509_certificates(fh.read())) == 2

    def test_unknown_format(self, store, leaf):
        with pytest.raises(ValidationError, match="Unsupported export format"):
            store.export(leaf.fingerprint, "jks")


# ---------------------------------------------------------------------------
# TestLoad
# ---------------------------------------------------------------------------


class TestLoad:
    def test_reload_round_trip(self, settings, issuer, vault, store, root_ca, leaf):
        reopened = CertificateStore(settings, issuer=issuer, vault=vault)
        assert reopened.load() == 2
        assert {c.fingerprint for c in reopened.list()} == {root_ca.fingerprint, leaf.fingerprint}
        assert reopened.get_by_name("web").sans == leaf.sans

    def test_reload_keeps_supersession(self, settings, issuer, vault, store, leaf):
        renewed = store.renew(leaf.fingerprint)
        reopened = CertificateStore(settings, issuer=issuer, vault=vault)
        reopened.load()
        assert reopened.resolve(leaf.fingerprint) == renewed.fingerprint

    def test_corrupt_index(self, settings, issuer, vault):
        os.makedirs(settings.store_dir, exist_ok=True)
        with open(os.path.join(settings.store_dir, "certificates.json"), "w", encoding="utf-8") as fh:
            fh.write('{"abc": ')
        with pytest.raises(StartupError) as exc_info:
            CertificateStore(settings, issuer=issuer, vault=vault).load()
        assert exc_info.value.exit_code == StartupError.EXIT_CORRUPT_INDEX

    def test_malformed_entry(self, settings, issuer, vault):
        os.makedirs(settings.store_dir, exist_ok=True)
        with open(os.path.join(settings.store_dir, "certificates.json"), "w", encoding="utf-8") as fh:
            json.dump({"a" * 64: {"name": "x", "type": "teapot"}}, fh)
        with pytest.raises(StartupError) as exc_info:
            CertificateStore(settings, issuer=issuer, vault=vault).load()
        assert exc_info.value.exit_code == 2

    def test_stale_work_directories_removed(self, settings, issuer, vault):
        stale = os.path.join(settings.store_dir, ".work", "leftover")
        os.makedirs(stale)
        CertificateStore(settings, issuer=issuer, vault=vault).load()
        assert not os.path.exists(stale)

"""Tests for reconciling the store index with the files on disk."""

from __future__ import annotations

import os

import pytest

from certkeeper.core.errors import NotFoundError
from certkeeper.core.types import RecordStatus
from certkeeper.store.reconcile import CHANGE_MISSING, CHANGE_NEW, CHANGE_RESTORED, CHANGE_SUPERSEDED


def _watcher_events(events) -> list[dict]:
    received: list[dict] = []
    events.subscribe(received.append, kinds=["watcher-reload"])
    return received


def _read(path) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


# ---------------------------------------------------------------------------
# TestExternalReplacement
# ---------------------------------------------------------------------------


class TestExternalReplacement:
    def test_read_detects_replaced_certificate(self, store, events, leaf, root_ca, issue_external, overwrite):
        received = _watcher_events(events)
        cert_pem, key_pem = issue_external(root_ca, "web.example.com")
        overwrite(leaf.paths.key, key_pem)
        overwrite(leaf.paths.crt, cert_pem)

        current = store.get_by_name("web")

        assert current.fingerprint != leaf.fingerprint
        assert leaf.fingerprint in [v.fingerprint for v in current.previous_versions]
        assert store.resolve(leaf.fingerprint) == current.fingerprint
        assert current.issuer_fingerprint == root_ca.fingerprint
        with pytest.raises(NotFoundError, match="superseded"):
            store.get_by_fingerprint(leaf.fingerprint)

        assert events.drain(5)
        payloads = [e["payload"] for e in received]
        assert payloads == [
            {
                "change": CHANGE_SUPERSEDED,
                "fingerprint": current.fingerprint,
                "name": "web",
                "path": leaf.paths.crt,
                "previousFingerprint": leaf.fingerprint,
            },
        ]

    def test_reconcile_path_supersedes(self, store, leaf, root_ca, issue_external, overwrite):
        cert_pem, key_pem = issue_external(root_ca, "web.example.com", ["web.example.com", "alt.example.com"])
        overwrite(leaf.paths.key, key_pem)
        overwrite(leaf.paths.crt, cert_pem)

        change = store.reconcile_path(leaf.paths.crt)

        assert change.change == CHANGE_SUPERSEDED
        assert change.previous_fingerprint == leaf.fingerprint
        current = store.get_by_fingerprint(change.fingerprint)
        assert set(current.sans.domains) == {"web.example.com", "alt.example.com"}

    def test_replaced_ca_repoints_children(self, store, root_ca, leaf, overwrite):
        # A renewed root keeps its key, so the leaf still chains to it
        renewed = store.renew(root_ca.fingerprint)
        renewed_pem = _read(renewed.paths.crt)
        store.restore_snapshot(renewed.fingerprint, renewed.snapshots[-1].id)
        overwrite(root_ca.paths.crt, renewed_pem)

        change = store.reconcile_path(root_ca.paths.crt)

        assert change.change == CHANGE_SUPERSEDED
        assert store.get_by_name("web").issuer_fingerprint == change.fingerprint

    def test_unchanged_file_is_a_no_op(self, store, leaf):
        assert store.reconcile_path(leaf.paths.crt) is None
        assert store.get_by_name("web").fingerprint == leaf.fingerprint

    def test_unparsable_file_is_ignored(self, store, leaf, overwrite):
        overwrite(leaf.paths.crt, b"not a certificate")
        assert store.reconcile_path(leaf.paths.crt) is None
        assert [c.fingerprint for c in store.list(type="server")] == [leaf.fingerprint]


# ---------------------------------------------------------------------------
# TestMissingAndRestored
# ---------------------------------------------------------------------------


class TestMissingAndRestored:
    def test_refresh_marks_missing_then_restored(self, store, events, leaf):
        received = _watcher_events(events)
        saved = _read(leaf.paths.crt)
        os.remove(leaf.paths.crt)

        changes = store.refresh_from_disk()
        assert [(c.change, c.name) for c in changes] == [(CHANGE_MISSING, "web")]
        assert events.drain(5)
        assert [c.name for c in store.list()] == ["root"]
        missing = store.list(include_missing=True)
        assert [c.status for c in missing if c.name == "web"] == [RecordStatus.MISSING]
        assert store.refresh_from_disk() == []

        with open(leaf.paths.crt, "wb") as fh:
            fh.write(saved)
        changes = store.refresh_from_disk()
        assert [(c.change, c.fingerprint) for c in changes] == [(CHANGE_RESTORED, leaf.fingerprint)]
        assert store.get_by_name("web").status == RecordStatus.ACTIVE

        assert events.drain(5)
        assert [e["payload"]["change"] for e in received] == [CHANGE_MISSING, CHANGE_RESTORED]

    def test_reconcile_path_missing_key(self, store, leaf):
        os.remove(leaf.paths.key)
        change = store.reconcile_path(leaf.paths.key)
        assert change.change == CHANGE_MISSING
        assert store.reconcile_path(leaf.paths.key) is None

    def test_missing_record_is_not_served(self, store, leaf):
        os.remove(leaf.paths.crt)
        store.refresh_from_disk()
        with pytest.raises(NotFoundError, match="missing"):
            store.export(leaf.fingerprint, "der")


# ---------------------------------------------------------------------------
# TestAdoption
# ---------------------------------------------------------------------------


class TestAdoption:
    @pytest.fixture()
    def imported_dir(self, settings, root_ca, issue_external):
        directory = os.path.join(settings.store_dir, "imported")
        os.makedirs(directory)
        cert_pem, key_pem = issue_external(root_ca, "imported.example.com")
        with open(os.path.join(directory, "cert.crt"), "wb") as fh:
            fh.write(cert_pem)
        with open(os.path.join(directory, "key.key"), "wb") as fh:
            fh.write(key_pem)
        return directory

    def test_reconcile_path_adopts_new_directory(self, store, root_ca, imported_dir):
        change = store.reconcile_path(os.path.join(imported_dir, "cert.crt"))

        assert change.change == CHANGE_NEW
        adopted = store.get_by_fingerprint(change.fingerprint)
        assert adopted.name == "imported"
        assert adopted.issuer_fingerprint == root_ca.fingerprint
        assert adopted.sans.domains == ("imported.example.com",)
        assert adopted.config.renew_days_before_expiry == 30

    def test_refresh_adopts_new_directory(self, store, imported_dir):
        changes = store.refresh_from_disk()
        assert [(c.change, c.name) for c in changes] == [(CHANGE_NEW, "imported")]
        assert store.refresh_from_disk() == []

    def test_adopted_name_avoids_collision(self, store, root_ca, settings, issue_external):
        directory = os.path.join(settings.store_dir, "root")
        os.makedirs(directory)
        cert_pem, key_pem = issue_external(root_ca, "other.example.com")
        with open(os.path.join(directory, "cert.crt"), "wb") as fh:
            fh.write(cert_pem)
        with open(os.path.join(directory, "key.key"), "wb") as fh:
            fh.write(key_pem)

        change = store.reconcile_path(os.path.join(directory, "cert.crt"))
        assert change.name == "root-2"

    def test_directory_without_key_is_ignored(self, store, imported_dir):
        os.remove(os.path.join(imported_dir, "key.key"))
        assert store.reconcile_path(os.path.join(imported_dir, "cert.crt")) is None
        assert store.refresh_from_disk() == []

    def test_paths_outside_the_store_are_ignored(self, store, tmp_path, root_ca):
        outside = tmp_path / "elsewhere"
        outside.mkdir()
        assert store.reconcile_path(str(outside / "cert.crt")) is None

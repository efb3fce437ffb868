"""Root conftest for the CertKeeper test suite."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml

# ---------------------------------------------------------------------------
# Make ``src/`` importable without installing the package
# ---------------------------------------------------------------------------
_SRC = str(Path(__file__).resolve().parent.parent / "src")
if _SRC not in sys.path:
    sys.path.insert(0, _SRC)


# ---------------------------------------------------------------------------
# Minimal config data shared by multiple test modules
# ---------------------------------------------------------------------------


@pytest.fixture()
def minimal_config_data(tmp_path: Path) -> dict:
    """Return a dict containing the minimum required config fields."""
    return {"storeDir": str(tmp_path / "store")}


@pytest.fixture()
def tmp_config_file(tmp_path: Path, minimal_config_data: dict) -> Path:
    """Write *minimal_config_data* to a temp YAML file and return its path."""
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        yaml.safe_dump(minimal_config_data, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    return cfg


@pytest.fixture()
def engine_config_data(tmp_path: Path) -> dict:
    """Config for fast, deterministic engines: native EC keys, no triggers."""
    return {
        "storeDir": str(tmp_path / "store"),
        "enableAutoRenewalJob": False,
        "enableFileWatch": False,
        "issuer": {"toolchain": "native", "defaultKeyAlgorithm": "ecdsa"},
        "scheduler": {
            "maxConcurrentRenewals": 2,
            "shutdownTimeoutSeconds": 5,
            "watcherDebounceMs": 50,
            "lockTimeoutSeconds": 10,
        },
        "deployment": {
            "maxAttempts": 3,
            "backoffInitialSeconds": 0.01,
            "backoffMaxSeconds": 0.05,
            "networkTimeoutSeconds": 5,
            "smtpTimeoutSeconds": 5,
        },
    }


# ---------------------------------------------------------------------------
# Engine components
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(engine_config_data: dict):
    from certkeeper.config.settings import build_settings

    return build_settings(engine_config_data)


@pytest.fixture()
def events():
    from certkeeper.events.bus import EventBus

    bus = EventBus()
    yield bus
    bus.shutdown(wait=True)


@pytest.fixture()
def keyring(settings):
    from certkeeper.vault.keyring import MasterKeyring

    return MasterKeyring(settings.master_key_path)


@pytest.fixture()
def vault(keyring):
    from certkeeper.vault.service import KeyEncryptionService

    return KeyEncryptionService(keyring)


@pytest.fixture()
def issuer(settings):
    from certkeeper.ca.issuer import Issuer
    from certkeeper.ca.registry import load_toolchain
    from certkeeper.store.layout import StoreLayout

    return Issuer(settings.issuer, load_toolchain(settings.issuer), StoreLayout(settings.store_dir).work_root)


@pytest.fixture()
def store(settings, issuer, keyring, vault, events):
    """A loaded, empty store with a fresh master keyring."""
    from certkeeper.store.store import CertificateStore

    s = CertificateStore(settings, issuer=issuer, vault=vault, events=events)
    s.load()
    keyring.create()
    vault.register_owner(s)
    return s


@pytest.fixture()
def root_ca(store):
    return store.create(
        {"name": "root", "type": "rootCA", "subject": {"commonName": "CertKeeper Test Root"}},
    )


@pytest.fixture()
def leaf(store, root_ca):
    return store.create(
        {
            "name": "web",
            "type": "server",
            "subject": {"commonName": "web.example.com"},
            "domains": ["web.example.com"],
            "issuerFingerprint": root_ca.fingerprint,
        },
    )


# ---------------------------------------------------------------------------
# Config singleton cleanup: autouse so every test gets a fresh slate
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fresh_config():
    """Reset the CertKeeperConfig singleton before and after every test."""
    from certkeeper.config.certkeeper_config import CertKeeperConfig

    CertKeeperConfig.reset()
    yield
    CertKeeperConfig.reset()


@pytest.fixture(autouse=True)
def restore_logging():
    """Undo ``configure_logging`` so caplog keeps seeing certkeeper records."""
    import logging

    yield
    for name in ("certkeeper", "certkeeper.activity"):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(logging.NOTSET)
        logger.propagate = True


@pytest.fixture()
def issue_external(settings, issuer):
    """Return ``issue(ca, common_name) -> (cert_pem, key_pem)`` made outside the store.

    Used to simulate a certificate replaced on disk by another tool.
    """
    from certkeeper.ca.base import SignerRef
    from certkeeper.ca.parsing import load_certificate
    from certkeeper.ca.requests import IssuanceRequest

    def issue(ca, common_name: str, domains=None) -> tuple[bytes, bytes]:
        request = IssuanceRequest.from_dict(
            {
                "name": f"external-{common_name}",
                "type": "server",
                "subject": {"commonName": common_name},
                "domains": domains or [common_name],
                "issuerFingerprint": ca.fingerprint,
            },
        ).validated(settings.issuer, settings.ca_validity)
        signer = SignerRef(
            cert_path=ca.paths.crt,
            key_path=ca.paths.key,
            certificate=load_certificate(ca.paths.crt).certificate,
        )
        material = issuer.issue(request, signer=signer)
        try:
            with open(material.cert_path, "rb") as fh:
                cert_pem = fh.read()
            with open(material.key_path, "rb") as fh:
                key_pem = fh.read()
        finally:
            issuer.discard(material)
        return cert_pem, key_pem

    return issue


@pytest.fixture()
def overwrite():
    """Return ``write(path, data)`` that also pushes the mtime forward so stat caches notice."""
    import os

    def write(path, data: bytes) -> None:
        with open(path, "wb") as fh:
            fh.write(data)
        st = os.stat(path)
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 5_000_000_000))

    return write

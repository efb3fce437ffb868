"""Certificate aggregate and its value objects.

Each value object knows how to convert itself to and from the camelCase
record stored in ``certificates.json``.  The record a certificate was
loaded from is kept on :attr:`Certificate.raw`; :meth:`Certificate.to_record`
overlays the known fields onto it so unknown fields survive a round trip.
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from certkeeper.core.types import (
    CertificateType,
    KeyAlgorithm,
    RecordStatus,
    SnapshotKind,
)
from certkeeper.models.deployment import DeploymentAction

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def format_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _overlay(raw: dict, known: dict) -> dict:
    """Return *raw* with *known* written over it, merging nested dicts."""
    result = copy.deepcopy(raw)
    for key, value in known.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _overlay(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


_SUBJECT_FIELDS = (
    ("common_name", "commonName"),
    ("organization", "organization"),
    ("organizational_unit", "organizationalUnit"),
    ("country", "country"),
    ("state", "state"),
    ("locality", "locality"),
    ("email", "email"),
)


@dataclass(frozen=True)
class Subject:
    """Structured distinguished name."""

    common_name: str
    organization: str | None = None
    organizational_unit: str | None = None
    country: str | None = None
    state: str | None = None
    locality: str | None = None
    email: str | None = None

    def to_record(self) -> dict:
        return {
            key: getattr(self, attr)
            for attr, key in _SUBJECT_FIELDS
            if getattr(self, attr) is not None
        }

    @classmethod
    def from_record(cls, data: dict | None) -> Subject:
        d = data or {}
        values = {attr: d.get(key) for attr, key in _SUBJECT_FIELDS}
        values["common_name"] = values["common_name"] or ""
        return cls(**values)


@dataclass(frozen=True)
class SanSet:
    """Subject alternative names, active and idle.

    Entries keep insertion order; membership has set semantics.
    """

    domains: tuple[str, ...] = ()
    ips: tuple[str, ...] = ()
    idle_domains: tuple[str, ...] = ()
    idle_ips: tuple[str, ...] = ()

    def is_disjoint(self) -> bool:
        return not (set(self.domains) & set(self.idle_domains)) and not (
            set(self.ips) & set(self.idle_ips)
        )

    @property
    def has_idle(self) -> bool:
        return bool(self.idle_domains or self.idle_ips)

    def with_idle_applied(self) -> SanSet:
        """Union the idle entries into the active sets and clear them."""
        return SanSet(
            domains=_dedup(self.domains + self.idle_domains),
            ips=_dedup(self.ips + self.idle_ips),
        )

    def to_record(self) -> dict:
        return {
            "domains": list(self.domains),
            "ips": list(self.ips),
            "idleDomains": list(self.idle_domains),
            "idleIps": list(self.idle_ips),
        }

    @classmethod
    def from_record(cls, data: dict | None) -> SanSet:
        d = data or {}
        return cls(
            domains=_dedup(d.get("domains", ())),
            ips=_dedup(d.get("ips", ())),
            idle_domains=_dedup(d.get("idleDomains", ())),
            idle_ips=_dedup(d.get("idleIps", ())),
        )


def _dedup(values) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


@dataclass(frozen=True)
class Validity:
    not_before: datetime
    not_after: datetime

    def to_record(self) -> dict:
        return {
            "notBefore": format_ts(self.not_before),
            "notAfter": format_ts(self.not_after),
        }

    @classmethod
    def from_record(cls, data: dict | None) -> Validity:
        d = data or {}
        return cls(
            not_before=parse_ts(d.get("notBefore")) or _EPOCH,
            not_after=parse_ts(d.get("notAfter")) or _EPOCH,
        )


@dataclass(frozen=True)
class CertPaths:
    """Absolute paths of the files that make up one certificate."""

    crt: str
    key: str
    csr: str
    pem: str
    chain: str | None = None
    p12: str | None = None
    der: str | None = None

    def to_record(self) -> dict:
        data = {"crt": self.crt, "key": self.key, "csr": self.csr, "pem": self.pem}
        for name in ("chain", "p12", "der"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data

    @classmethod
    def from_record(cls, data: dict | None) -> CertPaths:
        d = data or {}
        return cls(
            crt=d.get("crt", ""),
            key=d.get("key", ""),
            csr=d.get("csr", ""),
            pem=d.get("pem", ""),
            chain=d.get("chain"),
            p12=d.get("p12"),
            der=d.get("der"),
        )


@dataclass(frozen=True)
class PassphraseHandle:
    """Opaque reference to a wrapped secret.

    All byte fields are base64 text as stored on disk.
    """

    ciphertext: str
    nonce: str
    kdf_salt: str
    key_version: str
    fingerprint: str | None = None

    def to_record(self) -> dict:
        data = {
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "kdfSalt": self.kdf_salt,
            "keyVersion": self.key_version,
        }
        if self.fingerprint is not None:
            data["fingerprint"] = self.fingerprint
        return data

    @classmethod
    def from_record(cls, data: dict) -> PassphraseHandle:
        return cls(
            ciphertext=data["ciphertext"],
            nonce=data["nonce"],
            kdf_salt=data.get("kdfSalt", ""),
            key_version=str(data["keyVersion"]),
            fingerprint=data.get("fingerprint"),
        )


@dataclass(frozen=True)
class CertificateConfig:
    auto_renew: bool = True
    renew_days_before_expiry: int = 30
    backup_on_renew: bool = True
    passphrase_protected: bool = False
    deploy_actions: tuple[DeploymentAction, ...] = ()
    extra: dict = field(default_factory=dict, compare=False)

    def to_record(self) -> dict:
        return _overlay(
            self.extra,
            {
                "autoRenew": self.auto_renew,
                "renewDaysBeforeExpiry": self.renew_days_before_expiry,
                "backupOnRenew": self.backup_on_renew,
                "passphraseProtected": self.passphrase_protected,
                "deployActions": [a.to_record() for a in self.deploy_actions],
            },
        )

    @classmethod
    def from_record(cls, data: dict | None, *, default_renew_days: int = 30) -> CertificateConfig:
        d = data or {}
        return cls(
            auto_renew=d.get("autoRenew", True),
            renew_days_before_expiry=d.get("renewDaysBeforeExpiry", default_renew_days),
            backup_on_renew=d.get("backupOnRenew", True),
            passphrase_protected=d.get("passphraseProtected", False),
            deploy_actions=tuple(
                DeploymentAction.from_record(a) for a in d.get("deployActions", ())
            ),
            extra=copy.deepcopy(d),
        )


@dataclass(frozen=True)
class PreviousVersion:
    fingerprint: str
    archived_at: datetime
    paths: dict | None = None

    def to_record(self) -> dict:
        return {
            "fingerprint": self.fingerprint,
            "archivedAt": format_ts(self.archived_at),
            "paths": self.paths,
        }

    @classmethod
    def from_record(cls, data: dict) -> PreviousVersion:
        return cls(
            fingerprint=data["fingerprint"],
            archived_at=parse_ts(data.get("archivedAt")) or _EPOCH,
            paths=data.get("paths"),
        )


@dataclass(frozen=True)
class Snapshot:
    """A saved copy of a certificate's files (manual backup or restore point)."""

    id: str
    kind: SnapshotKind
    created_at: datetime
    directory: str
    fingerprint: str
    description: str = ""

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "createdAt": format_ts(self.created_at),
            "directory": self.directory,
            "fingerprint": self.fingerprint,
            "description": self.description,
        }

    @classmethod
    def from_record(cls, data: dict) -> Snapshot:
        return cls(
            id=data["id"],
            kind=SnapshotKind(data.get("kind", SnapshotKind.BACKUP)),
            created_at=parse_ts(data.get("createdAt")) or _EPOCH,
            directory=data.get("directory", ""),
            fingerprint=data.get("fingerprint", ""),
            description=data.get("description", ""),
        )


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Certificate:
    fingerprint: str
    name: str
    type: CertificateType
    subject: Subject
    sans: SanSet
    key_algorithm: KeyAlgorithm
    validity: Validity
    paths: CertPaths
    config: CertificateConfig = field(default_factory=CertificateConfig)
    key_size: int | None = None
    curve: str | None = None
    issuer_fingerprint: str | None = None
    needs_passphrase: bool = False
    passphrase: PassphraseHandle | None = None
    previous_versions: tuple[PreviousVersion, ...] = ()
    snapshots: tuple[Snapshot, ...] = ()
    status: RecordStatus = RecordStatus.ACTIVE
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_ca(self) -> bool:
        return self.type.is_ca

    @property
    def is_self_signed(self) -> bool:
        return self.issuer_fingerprint is None

    @property
    def directory(self) -> str:
        return os.path.dirname(self.paths.crt)

    def find_action(self, action_id: str) -> DeploymentAction | None:
        for action in self.config.deploy_actions:
            if action.id == action_id:
                return action
        return None

    def to_record(self) -> dict:
        known: dict[str, Any] = {
            "name": self.name,
            "type": self.type.value,
            "subject": self.subject.to_record(),
            "sans": self.sans.to_record(),
            "keyAlgorithm": self.key_algorithm.value,
            "validity": self.validity.to_record(),
            "issuerFingerprint": self.issuer_fingerprint,
            "paths": self.paths.to_record(),
            "config": self.config.to_record(),
            "needsPassphrase": self.needs_passphrase,
            "passphrase": self.passphrase.to_record() if self.passphrase else None,
            "previousVersions": [v.to_record() for v in self.previous_versions],
            "snapshots": [s.to_record() for s in self.snapshots],
            "status": self.status.value,
        }
        if self.key_algorithm == KeyAlgorithm.RSA:
            known["keySize"] = self.key_size
        else:
            known["curve"] = self.curve
        record = _overlay(self.raw, known)
        # Subject fields and paths are replaced wholesale, not merged
        record["subject"] = known["subject"]
        record["paths"] = known["paths"]
        return record

    @classmethod
    def from_record(
        cls,
        fingerprint: str,
        data: dict,
        *,
        default_renew_days: int = 30,
    ) -> Certificate:
        passphrase = data.get("passphrase")
        return cls(
            fingerprint=fingerprint,
            name=data["name"],
            type=CertificateType(data["type"]),
            subject=Subject.from_record(data.get("subject")),
            sans=SanSet.from_record(data.get("sans")),
            key_algorithm=KeyAlgorithm(data.get("keyAlgorithm", KeyAlgorithm.RSA)),
            key_size=data.get("keySize"),
            curve=data.get("curve"),
            validity=Validity.from_record(data.get("validity")),
            issuer_fingerprint=data.get("issuerFingerprint"),
            paths=CertPaths.from_record(data.get("paths")),
            config=CertificateConfig.from_record(
                data.get("config"),
                default_renew_days=default_renew_days,
            ),
            needs_passphrase=data.get("needsPassphrase", False),
            passphrase=PassphraseHandle.from_record(passphrase) if passphrase else None,
            previous_versions=tuple(
                PreviousVersion.from_record(v) for v in data.get("previousVersions", ())
            ),
            snapshots=tuple(Snapshot.from_record(s) for s in data.get("snapshots", ())),
            status=RecordStatus(data.get("status", RecordStatus.ACTIVE)),
            raw=copy.deepcopy(data),
        )

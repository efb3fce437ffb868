"""Issuance requests and SAN entry validation.

Every request entering the store is normalised by
:meth:`IssuanceRequest.validated` before a toolchain sees it: names are
lower-cased, IP literals are parsed to canonical form, key parameters
are checked against the supported sets and defaults are filled in.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from certkeeper.core.errors import ValidationError
from certkeeper.core.types import CertificateType, KeyAlgorithm
from certkeeper.models.certificate import Subject

if TYPE_CHECKING:
    from certkeeper.config.settings import CAValiditySettings, IssuerSettings

RSA_KEY_SIZES = frozenset({2048, 3072, 4096})
EC_CURVES = frozenset({"P-256", "P-384", "P-521"})

_LABEL_RE = re.compile(r"^[a-z0-9_]([a-z0-9-]{0,61}[a-z0-9])?$")
_NAME_MAX = 128
_MAX_VALIDITY_DAYS = 36500
_MAX_DOMAIN_LENGTH = 253


def validate_domain(value: str) -> str:
    """Return the canonical form of a DNS SAN entry.

    Wildcards are permitted only as the entire leftmost label
    (``*.example.com``) and never directly above a single label.

    Raises
    ------
    ValidationError
        If *value* is not a valid host name.

    """
    if not isinstance(value, str) or not value.strip():
        msg = "Domain must be a non-empty string"
        raise ValidationError(msg)
    domain = value.strip().lower().rstrip(".")
    if len(domain) > _MAX_DOMAIN_LENGTH:
        msg = f"Domain '{value}' exceeds {_MAX_DOMAIN_LENGTH} characters"
        raise ValidationError(msg)
    labels = domain.split(".")
    for idx, label in enumerate(labels):
        if label == "*":
            if idx != 0:
                msg = f"Wildcard in '{value}' is only allowed as the leftmost label"
                raise ValidationError(msg)
            if len(labels) < 3:  # noqa: PLR2004
                msg = f"Wildcard '{value}' must cover at least two labels"
                raise ValidationError(msg)
            continue
        if "*" in label:
            msg = f"Wildcard in '{value}' must be the entire leftmost label"
            raise ValidationError(msg)
        if not _LABEL_RE.match(label):
            msg = f"Invalid domain label '{label}' in '{value}'"
            raise ValidationError(msg)
    return domain


def canonical_ip(value: str) -> str:
    """Parse an IPv4/IPv6 literal and return its canonical text form."""
    try:
        return str(ipaddress.ip_address(str(value).strip()))
    except ValueError:
        msg = f"Invalid IP address '{value}'"
        raise ValidationError(msg) from None


def classify_san(value: str) -> tuple[str, str]:
    """Return ``("ip", canonical)`` or ``("domain", canonical)`` for *value*."""
    try:
        return "ip", str(ipaddress.ip_address(str(value).strip()))
    except ValueError:
        return "domain", validate_domain(value)


def validate_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        msg = "Certificate name must be a non-empty string"
        raise ValidationError(msg)
    name = name.strip()
    if len(name) > _NAME_MAX:
        msg = f"Certificate name exceeds {_NAME_MAX} characters"
        raise ValidationError(msg)
    return name


@dataclass(frozen=True)
class IssuanceRequest:
    """A request to create a certificate.

    Attributes
    ----------
    name:
        Store-unique human label.
    type:
        Certificate class; decides extensions and default lifetime.
    subject:
        Distinguished name.
    domains, ips:
        Subject alternative names.
    issuer_fingerprint:
        Signing CA; ``None`` only for self-signed roots.
    validity_days:
        Requested lifetime; ``None`` uses ``caValidityPeriod``.
    clip_to_signer:
        Clip ``notAfter`` to the signer's instead of refusing the
        request; ``None`` uses ``issuer.clipToSigner``.
    config:
        Initial certificate config record (``autoRenew``...).

    """

    name: str
    type: CertificateType
    subject: Subject
    domains: tuple[str, ...] = ()
    ips: tuple[str, ...] = ()
    key_algorithm: KeyAlgorithm | None = None
    key_size: int | None = None
    curve: str | None = None
    validity_days: int | None = None
    issuer_fingerprint: str | None = None
    passphrase_protected: bool = False
    clip_to_signer: bool | None = None
    config: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> IssuanceRequest:
        """Build a request from a camelCase mapping (CLI / API input)."""
        try:
            cert_type = CertificateType(data["type"])
        except (KeyError, ValueError) as exc:
            msg = f"Invalid certificate type: {data.get('type')!r}"
            raise ValidationError(msg) from exc
        subject = data.get("subject") or {}
        if isinstance(subject, str):
            subject = {"commonName": subject}
        algorithm = data.get("keyAlgorithm")
        try:
            key_algorithm = KeyAlgorithm(algorithm) if algorithm else None
        except ValueError as exc:
            msg = f"Unsupported key algorithm {algorithm!r}"
            raise ValidationError(msg) from exc
        return cls(
            name=data.get("name", ""),
            type=cert_type,
            subject=Subject.from_record(subject),
            domains=tuple(data.get("domains", ())),
            ips=tuple(data.get("ips", ())),
            key_algorithm=key_algorithm,
            key_size=data.get("keySize"),
            curve=data.get("curve"),
            validity_days=data.get("validityDays"),
            issuer_fingerprint=data.get("issuerFingerprint"),
            passphrase_protected=data.get("passphraseProtected", False),
            clip_to_signer=data.get("clipToSigner"),
            config=data.get("config") or {},
        )

    def validated(
        self,
        issuer_settings: IssuerSettings,
        validity: CAValiditySettings,
    ) -> IssuanceRequest:
        """Return a normalised copy or raise :class:`ValidationError`."""
        name = validate_name(self.name)
        if not self.subject.common_name.strip():
            msg = "Subject common name is required"
            raise ValidationError(msg)

        if self.type == CertificateType.ROOT_CA:
            if self.issuer_fingerprint:
                msg = "A root CA is self-signed and cannot name an issuer"
                raise ValidationError(msg)
        elif not self.issuer_fingerprint:
            msg = f"A {self.type.value} certificate requires issuerFingerprint"
            raise ValidationError(msg)

        domains = tuple(dict.fromkeys(validate_domain(d) for d in self.domains))
        ips = tuple(dict.fromkeys(canonical_ip(i) for i in self.ips))
        if not self.type.is_ca and not domains and not ips:
            # Fall back to the common name as the only SAN
            kind, value = classify_san(self.subject.common_name)
            if kind == "ip":
                ips = (value,)
            else:
                domains = (value,)

        algorithm = self.key_algorithm or KeyAlgorithm(issuer_settings.default_key_algorithm)
        key_size = None
        curve = None
        if algorithm == KeyAlgorithm.RSA:
            key_size = self.key_size or issuer_settings.default_key_size
            if key_size not in RSA_KEY_SIZES:
                msg = f"Unsupported RSA key size {key_size}; choose one of {sorted(RSA_KEY_SIZES)}"
                raise ValidationError(msg)
        else:
            curve = self.curve or issuer_settings.default_curve
            if curve not in EC_CURVES:
                msg = f"Unsupported curve {curve!r}; choose one of {sorted(EC_CURVES)}"
                raise ValidationError(msg)

        days = self.validity_days
        if days is None:
            days = {
                CertificateType.ROOT_CA: validity.root_ca,
                CertificateType.INTERMEDIATE_CA: validity.intermediate_ca,
            }.get(self.type, validity.standard)
        if not isinstance(days, int) or not 0 < days <= _MAX_VALIDITY_DAYS:
            msg = f"validityDays must be between 1 and {_MAX_VALIDITY_DAYS}"
            raise ValidationError(msg)

        clip = issuer_settings.clip_to_signer if self.clip_to_signer is None else self.clip_to_signer

        return replace(
            self,
            name=name,
            domains=domains,
            ips=ips,
            key_algorithm=algorithm,
            key_size=key_size,
            curve=curve,
            validity_days=days,
            clip_to_signer=clip,
        )

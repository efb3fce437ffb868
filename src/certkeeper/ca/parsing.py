"""Read certificates back from disk.

The store never trusts the index for facts it can re-derive: the
fingerprint, validity and SANs of a certificate come from parsing
``cert.crt`` itself.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from certkeeper.core.errors import IssuerError
from certkeeper.core.types import CertificateType, KeyAlgorithm
from certkeeper.models.certificate import Subject

log = logging.getLogger(__name__)

_CURVE_NAMES = {
    "secp256r1": "P-256",
    "secp384r1": "P-384",
    "secp521r1": "P-521",
}

_NAME_FIELDS = (
    ("common_name", NameOID.COMMON_NAME),
    ("organization", NameOID.ORGANIZATION_NAME),
    ("organizational_unit", NameOID.ORGANIZATIONAL_UNIT_NAME),
    ("country", NameOID.COUNTRY_NAME),
    ("state", NameOID.STATE_OR_PROVINCE_NAME),
    ("locality", NameOID.LOCALITY_NAME),
    ("email", NameOID.EMAIL_ADDRESS),
)


def fingerprint_of(cert: x509.Certificate) -> str:
    """SHA-256 of the DER encoding, lowercase hex."""
    return hashlib.sha256(cert.public_bytes(serialization.Encoding.DER)).hexdigest()


def subject_from_name(name: x509.Name) -> Subject:
    values = {}
    for attr, oid in _NAME_FIELDS:
        found = name.get_attributes_for_oid(oid)
        values[attr] = str(found[0].value) if found else None
    values["common_name"] = values["common_name"] or ""
    return Subject(**values)


@dataclass(frozen=True)
class ParsedCertificate:
    certificate: x509.Certificate
    fingerprint: str
    subject: Subject
    domains: tuple[str, ...]
    ips: tuple[str, ...]
    is_ca: bool
    key_usage: x509.KeyUsage | None
    extended_key_usages: frozenset
    key_algorithm: KeyAlgorithm
    key_size: int | None
    curve: str | None

    @property
    def not_before(self):
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self):
        return self.certificate.not_valid_after_utc

    @property
    def self_signed(self) -> bool:
        return self.certificate.issuer == self.certificate.subject

    def guess_type(self) -> CertificateType:
        """Infer the certificate class of a file found on disk."""
        if self.is_ca:
            return CertificateType.ROOT_CA if self.self_signed else CertificateType.INTERMEDIATE_CA
        server = ExtendedKeyUsageOID.SERVER_AUTH in self.extended_key_usages
        client = ExtendedKeyUsageOID.CLIENT_AUTH in self.extended_key_usages
        if client and not server:
            return CertificateType.CLIENT
        if client and server:
            return CertificateType.MIXED
        return CertificateType.SERVER

    def issued_by(self, issuer: x509.Certificate) -> bool:
        try:
            self.certificate.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, InvalidSignature):
            return False
        return True


def parse_certificate(data: bytes) -> ParsedCertificate:
    """Parse a PEM (or DER) certificate.

    Raises
    ------
    IssuerError
        If *data* is not a certificate.

    """
    try:
        if b"-----BEGIN" in data:
            cert = x509.load_pem_x509_certificate(data)
        else:
            cert = x509.load_der_x509_certificate(data)
    except ValueError as exc:
        msg = f"Not a valid X.509 certificate: {exc}"
        raise IssuerError(msg) from exc

    domains: tuple[str, ...] = ()
    ips: tuple[str, ...] = ()
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        domains = tuple(san.get_values_for_type(x509.DNSName))
        ips = tuple(str(ip) for ip in san.get_values_for_type(x509.IPAddress))
    except x509.ExtensionNotFound:
        pass

    try:
        is_ca = cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        is_ca = False

    try:
        key_usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        key_usage = None

    try:
        ekus = frozenset(cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value)
    except x509.ExtensionNotFound:
        ekus = frozenset()

    public_key = cert.public_key()
    if isinstance(public_key, rsa.RSAPublicKey):
        algorithm, key_size, curve = KeyAlgorithm.RSA, public_key.key_size, None
    elif isinstance(public_key, ec.EllipticCurvePublicKey):
        algorithm = KeyAlgorithm.ECDSA
        key_size = None
        curve = _CURVE_NAMES.get(public_key.curve.name, public_key.curve.name)
    else:
        msg = f"Unsupported public key type {type(public_key).__name__}"
        raise IssuerError(msg)

    return ParsedCertificate(
        certificate=cert,
        fingerprint=fingerprint_of(cert),
        subject=subject_from_name(cert.subject),
        domains=domains,
        ips=ips,
        is_ca=is_ca,
        key_usage=key_usage,
        extended_key_usages=ekus,
        key_algorithm=algorithm,
        key_size=key_size,
        curve=curve,
    )


def load_certificate(path: str) -> ParsedCertificate:
    try:
        with open(path, "rb") as fh:
            data = fh.read()
    except OSError as exc:
        msg = f"Cannot read certificate {path}: {exc}"
        raise IssuerError(msg) from exc
    return parse_certificate(data)


def load_private_key(path: str, passphrase: bytes | None = None):
    """Load a PEM private key, raising :class:`IssuerError` on failure."""
    try:
        with open(path, "rb") as fh:
            return serialization.load_pem_private_key(fh.read(), password=passphrase)
    except (OSError, ValueError, TypeError) as exc:
        msg = f"Cannot load private key {path}: {exc}"
        raise IssuerError(msg) from exc


def public_key_matches(cert: x509.Certificate, private_key) -> bool:
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    enc = serialization.Encoding.DER
    return cert.public_key().public_bytes(enc, fmt) == private_key.public_key().public_bytes(
        enc,
        fmt,
    )

"""Shared certificate-building helpers for toolchains.

Provides key-usage and extended-key-usage mappings, the extension
profile for each certificate type, X.509 name construction and the
OpenSSL configuration file renderer.
"""

from __future__ import annotations

import ipaddress

from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from certkeeper.ca.base import ExtensionProfile
from certkeeper.core.errors import IssuerError, ValidationError
from certkeeper.core.types import CertificateType, KeyAlgorithm
from certkeeper.models.certificate import Subject

# ---------------------------------------------------------------------------
# Key usage / EKU mappings
# ---------------------------------------------------------------------------

_KEY_USAGE_FIELDS = {
    "digital_signature": "digitalSignature",
    "content_commitment": "nonRepudiation",
    "key_encipherment": "keyEncipherment",
    "data_encipherment": "dataEncipherment",
    "key_agreement": "keyAgreement",
    "key_cert_sign": "keyCertSign",
    "crl_sign": "cRLSign",
}

_EKU_OIDS = {
    "server_auth": ExtendedKeyUsageOID.SERVER_AUTH,
    "client_auth": ExtendedKeyUsageOID.CLIENT_AUTH,
    "code_signing": ExtendedKeyUsageOID.CODE_SIGNING,
    "email_protection": ExtendedKeyUsageOID.EMAIL_PROTECTION,
}

_EKU_OPENSSL = {
    "server_auth": "serverAuth",
    "client_auth": "clientAuth",
    "code_signing": "codeSigning",
    "email_protection": "emailProtection",
}

_TYPE_EKUS: dict[CertificateType, tuple[str, ...]] = {
    CertificateType.SERVER: ("server_auth",),
    CertificateType.CLIENT: ("client_auth",),
    CertificateType.MIXED: ("server_auth", "client_auth"),
}

_SUBJECT_OIDS = (
    ("country", NameOID.COUNTRY_NAME, "C"),
    ("state", NameOID.STATE_OR_PROVINCE_NAME, "ST"),
    ("locality", NameOID.LOCALITY_NAME, "L"),
    ("organization", NameOID.ORGANIZATION_NAME, "O"),
    ("organizational_unit", NameOID.ORGANIZATIONAL_UNIT_NAME, "OU"),
    ("common_name", NameOID.COMMON_NAME, "CN"),
    ("email", NameOID.EMAIL_ADDRESS, "emailAddress"),
)


def build_key_usage(usages: tuple[str, ...]) -> x509.KeyUsage:
    """Build an :class:`x509.KeyUsage` extension from profile names."""
    usage_set = set(usages)
    return x509.KeyUsage(
        digital_signature="digital_signature" in usage_set,
        content_commitment="content_commitment" in usage_set,
        key_encipherment="key_encipherment" in usage_set,
        data_encipherment="data_encipherment" in usage_set,
        key_agreement="key_agreement" in usage_set,
        key_cert_sign="key_cert_sign" in usage_set,
        crl_sign="crl_sign" in usage_set,
        encipher_only=False,
        decipher_only=False,
    )


def build_eku(ekus: tuple[str, ...]) -> x509.ExtendedKeyUsage:
    """Build an :class:`x509.ExtendedKeyUsage` extension from profile names."""
    oids = []
    for name in ekus:
        oid = _EKU_OIDS.get(name)
        if oid is None:
            msg = f"Unknown extended key usage '{name}'; supported: {sorted(_EKU_OIDS)}"
            raise IssuerError(msg)
        oids.append(oid)
    return x509.ExtendedKeyUsage(oids)


def build_san(domains: tuple[str, ...], ips: tuple[str, ...]) -> x509.SubjectAlternativeName:
    names: list[x509.GeneralName] = [x509.DNSName(d) for d in domains]
    names.extend(x509.IPAddress(ipaddress.ip_address(ip)) for ip in ips)
    return x509.SubjectAlternativeName(names)


def profile_for(
    cert_type: CertificateType,
    key_algorithm: KeyAlgorithm,
    *,
    domains: tuple[str, ...] = (),
    ips: tuple[str, ...] = (),
) -> ExtensionProfile:
    """Return the extension profile for a certificate type.

    CA certificates always carry ``keyCertSign`` and ``cRLSign``.
    """
    if cert_type.is_ca:
        return ExtensionProfile(
            is_ca=True,
            key_usages=("digital_signature", "key_cert_sign", "crl_sign"),
            domains=domains,
            ips=ips,
            path_length=None,
        )
    usages: tuple[str, ...] = ("digital_signature",)
    if key_algorithm == KeyAlgorithm.RSA:
        usages += ("key_encipherment",)
    return ExtensionProfile(
        is_ca=False,
        key_usages=usages,
        extended_key_usages=_TYPE_EKUS[cert_type],
        domains=domains,
        ips=ips,
    )


def x509_name(subject: Subject) -> x509.Name:
    attrs = []
    for attr, oid, _ in _SUBJECT_OIDS:
        value = getattr(subject, attr)
        if value:
            attrs.append(x509.NameAttribute(oid, value))
    return x509.Name(attrs)


# ---------------------------------------------------------------------------
# OpenSSL config rendering
# ---------------------------------------------------------------------------


def _conf_value(value: str) -> str:
    if any(ch in value for ch in "\r\n\x00"):
        msg = f"Value {value!r} contains control characters"
        raise ValidationError(msg)
    out = value
    for ch in ("\\", "$", "#", '"'):
        out = out.replace(ch, "\\" + ch)
    return out


def render_openssl_config(subject: Subject, profile: ExtensionProfile, *, self_signed: bool) -> str:
    """Render an OpenSSL config describing the subject and extensions.

    Section ``v3_req`` goes into the CSR; ``v3_ext`` is applied when
    the certificate is signed.
    """
    lines = [
        "[req]",
        "prompt = no",
        "distinguished_name = req_dn",
        "req_extensions = v3_req",
        "x509_extensions = v3_ext",
        "utf8 = yes",
        "string_mask = utf8only",
        "",
        "[req_dn]",
    ]
    for attr, _, short in _SUBJECT_OIDS:
        value = getattr(subject, attr)
        if value:
            lines.append(f"{short} = {_conf_value(value)}")

    common = []
    if profile.is_ca:
        constraint = "critical, CA:TRUE"
        if profile.path_length is not None:
            constraint += f", pathlen:{profile.path_length}"
        common.append(f"basicConstraints = {constraint}")
    else:
        common.append("basicConstraints = critical, CA:FALSE")
    common.append(
        "keyUsage = critical, " + ", ".join(_KEY_USAGE_FIELDS[u] for u in profile.key_usages),
    )
    if profile.extended_key_usages:
        common.append(
            "extendedKeyUsage = " + ", ".join(_EKU_OPENSSL[e] for e in profile.extended_key_usages),
        )
    if profile.domains or profile.ips:
        common.append("subjectAltName = @alt_names")

    lines += ["", "[v3_req]", *common]
    lines += ["", "[v3_ext]", *common, "subjectKeyIdentifier = hash"]
    if not self_signed:
        lines.append("authorityKeyIdentifier = keyid:always")

    if profile.domains or profile.ips:
        lines += ["", "[alt_names]"]
        lines += [f"DNS.{i} = {_conf_value(d)}" for i, d in enumerate(profile.domains, start=1)]
        lines += [f"IP.{i} = {ip}" for i, ip in enumerate(profile.ips, start=1)]
    return "\n".join(lines) + "\n"

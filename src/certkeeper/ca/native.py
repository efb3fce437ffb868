"""Native toolchain: keys, CSRs and certificates with :mod:`cryptography`.

Produces the same files as the ``openssl`` toolchain (PKCS#8 PEM keys,
PEM requests and certificates) without spawning a process.  Useful on
hosts without an ``openssl`` binary and in tests.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from certkeeper.ca.base import KeySpec, SigningParams, Toolchain
from certkeeper.ca.cert_utils import build_eku, build_key_usage, build_san, x509_name
from certkeeper.ca.parsing import load_private_key
from certkeeper.core.errors import IssuerError
from certkeeper.core.types import KeyAlgorithm

if TYPE_CHECKING:
    from certkeeper.core.locks import CancelToken

log = logging.getLogger(__name__)

_HASH_ALGORITHMS = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

_CURVES = {
    "P-256": ec.SECP256R1,
    "P-384": ec.SECP384R1,
    "P-521": ec.SECP521R1,
}

# Backdate notBefore slightly so freshly issued certificates verify on
# hosts with small clock differences.
_BACKDATE = timedelta(minutes=1)


def _write(path: str, data: bytes, mode: int = 0o644) -> None:
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
    except OSError as exc:
        msg = f"Cannot write {path}: {exc}"
        raise IssuerError(msg) from exc


class NativeToolchain(Toolchain):
    """Sign certificates in-process."""

    name = "native"

    def _hash(self, name: str) -> hashes.HashAlgorithm:
        return _HASH_ALGORITHMS.get(name, hashes.SHA256)()

    def generate_key(
        self,
        spec: KeySpec,
        key_path: str,
        *,
        passphrase: bytes | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()
        if spec.algorithm == KeyAlgorithm.RSA:
            key = rsa.generate_private_key(public_exponent=65537, key_size=spec.size or 2048)
        else:
            curve = _CURVES.get(spec.curve or "P-256")
            if curve is None:
                msg = f"Unsupported curve {spec.curve!r}"
                raise IssuerError(msg)
            key = ec.generate_private_key(curve())

        encryption: serialization.KeySerializationEncryption
        if passphrase:
            encryption = serialization.BestAvailableEncryption(passphrase)
        else:
            encryption = serialization.NoEncryption()
        _write(
            key_path,
            key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                encryption,
            ),
            mode=0o600,
        )

    def create_csr(self, params: SigningParams, *, cancel: CancelToken | None = None) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()
        key = load_private_key(params.key_path, params.key_passphrase)
        builder = x509.CertificateSigningRequestBuilder().subject_name(x509_name(params.subject))
        profile = params.profile
        if profile.domains or profile.ips:
            builder = builder.add_extension(build_san(profile.domains, profile.ips), critical=False)
        builder = builder.add_extension(
            x509.BasicConstraints(ca=profile.is_ca, path_length=profile.path_length),
            critical=True,
        )
        builder = builder.add_extension(build_key_usage(profile.key_usages), critical=True)
        if profile.extended_key_usages:
            builder = builder.add_extension(build_eku(profile.extended_key_usages), critical=False)
        try:
            csr = builder.sign(key, self._hash(params.hash_algorithm))
        except (ValueError, TypeError) as exc:
            msg = f"Failed to build CSR: {exc}"
            raise IssuerError(msg) from exc
        _write(params.csr_path, csr.public_bytes(serialization.Encoding.PEM))

    def sign(self, params: SigningParams, *, cancel: CancelToken | None = None) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            with open(params.csr_path, "rb") as fh:
                csr = x509.load_pem_x509_csr(fh.read())
        except (OSError, ValueError) as exc:
            msg = f"Cannot load CSR {params.csr_path}: {exc}"
            raise IssuerError(msg) from exc

        profile = params.profile
        now = datetime.now(UTC)
        if params.signer is None:
            signing_key = load_private_key(params.key_path, params.key_passphrase)
            issuer_name = csr.subject
            issuer_public_key = csr.public_key()
        else:
            signing_key = load_private_key(params.signer.key_path, params.signer.passphrase)
            issuer_name = params.signer.certificate.subject
            issuer_public_key = params.signer.certificate.public_key()

        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(issuer_name)
            .public_key(csr.public_key())
            .serial_number(params.serial_number)
            .not_valid_before(now - _BACKDATE)
            .not_valid_after(params.not_after)
            .add_extension(
                x509.BasicConstraints(ca=profile.is_ca, path_length=profile.path_length),
                critical=True,
            )
            .add_extension(build_key_usage(profile.key_usages), critical=True)
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(csr.public_key()),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_public_key),  # type: ignore[arg-type]
                critical=False,
            )
        )
        if profile.extended_key_usages:
            builder = builder.add_extension(build_eku(profile.extended_key_usages), critical=False)
        if profile.domains or profile.ips:
            builder = builder.add_extension(build_san(profile.domains, profile.ips), critical=False)

        try:
            cert = builder.sign(signing_key, self._hash(params.hash_algorithm))  # type: ignore[arg-type]
        except (ValueError, TypeError) as exc:
            msg = f"Failed to sign certificate: {exc}"
            raise IssuerError(msg) from exc
        _write(params.cert_path, cert.public_bytes(serialization.Encoding.PEM))

    def export_der(self, cert_path: str, out_path: str) -> None:
        try:
            with open(cert_path, "rb") as fh:
                cert = x509.load_pem_x509_certificate(fh.read())
        except (OSError, ValueError) as exc:
            msg = f"Cannot load certificate {cert_path}: {exc}"
            raise IssuerError(msg) from exc
        _write(out_path, cert.public_bytes(serialization.Encoding.DER))

    def export_p12(
        self,
        *,
        cert_path: str,
        key_path: str,
        chain_paths: tuple[str, ...],
        out_path: str,
        friendly_name: str,
        key_passphrase: bytes | None = None,
        export_passphrase: bytes | None = None,
    ) -> None:
        key = load_private_key(key_path, key_passphrase)
        try:
            with open(cert_path, "rb") as fh:
                cert = x509.load_pem_x509_certificate(fh.read())
            cas = []
            for path in chain_paths:
                with open(path, "rb") as fh:
                    cas.extend(x509.load_pem_x509_certificates(fh.read()))
        except (OSError, ValueError) as exc:
            msg = f"Cannot load certificates for PKCS#12 export: {exc}"
            raise IssuerError(msg) from exc

        encryption: serialization.KeySerializationEncryption
        if export_passphrase:
            encryption = serialization.BestAvailableEncryption(export_passphrase)
        else:
            encryption = serialization.NoEncryption()
        data = pkcs12.serialize_key_and_certificates(
            friendly_name.encode("utf-8"),
            key,  # type: ignore[arg-type]
            cert,
            cas or None,
            encryption,
        )
        _write(out_path, data, mode=0o600)

"""Certificate issuance: key, request, signature and verification.

:class:`Issuer` drives a :class:`~certkeeper.ca.base.Toolchain` through
one issuance inside a private working directory under
``<storeDir>/.work/``:

1. create the working directory;
2. generate a key (or copy the key being reused by a CA renewal);
3. render the OpenSSL config describing subject and extensions;
4. build the CSR and sign it (or self-sign);
5. parse and verify everything that was produced.

Nothing outside the working directory is touched.  The store moves the
verified files into place; on any failure the directory is removed.
"""

from __future__ import annotations

import logging
import os
import secrets
import shutil
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from cryptography import x509

from certkeeper.ca.base import KeySpec, SignerRef, SigningParams
from certkeeper.ca.cert_utils import profile_for, render_openssl_config
from certkeeper.ca.parsing import (
    ParsedCertificate,
    load_certificate,
    load_private_key,
    public_key_matches,
)
from certkeeper.core.errors import IssuerError, ValidationError

if TYPE_CHECKING:
    from certkeeper.ca.base import Toolchain
    from certkeeper.ca.requests import IssuanceRequest
    from certkeeper.config.settings import IssuerSettings
    from certkeeper.core.locks import CancelToken

log = logging.getLogger(__name__)

KEY_FILE = "key.key"
CSR_FILE = "cert.csr"
CERT_FILE = "cert.crt"
CONFIG_FILE = "openssl.cnf"

_PASSPHRASE_BYTES = 32


@dataclass(frozen=True)
class IssuedMaterial:
    """Verified output of one issuance, still inside its working directory."""

    work_dir: str
    key_path: str
    csr_path: str
    cert_path: str
    parsed: ParsedCertificate
    key_passphrase: bytes | None = None

    @property
    def fingerprint(self) -> str:
        return self.parsed.fingerprint


class Issuer:
    """Produce verified certificates with a toolchain.

    Parameters
    ----------
    settings:
        The ``issuer`` configuration section.
    toolchain:
        Backend that writes keys, requests and certificates.
    work_root:
        Parent of the per-issuance working directories.

    """

    def __init__(self, settings: IssuerSettings, toolchain: Toolchain, work_root: str) -> None:
        self._settings = settings
        self._toolchain = toolchain
        self._work_root = work_root

    @property
    def toolchain(self) -> Toolchain:
        return self._toolchain

    def compute_not_after(
        self,
        request: IssuanceRequest,
        signer: SignerRef | None,
        *,
        now: datetime | None = None,
    ) -> datetime:
        """Return the ``notAfter`` the request will receive.

        Clipped to the signer's ``notAfter`` when ``clip_to_signer`` is
        set, otherwise a request outliving its signer is refused.
        """
        now = now or datetime.now(UTC)
        not_after = (now + timedelta(days=request.validity_days or 1)).replace(microsecond=0)
        if signer is None:
            return not_after
        signer_not_after = signer.certificate.not_valid_after_utc
        if signer_not_after <= now:
            msg = f"Signing CA expired at {signer_not_after.isoformat()}"
            raise IssuerError(msg)
        if not_after > signer_not_after:
            if not request.clip_to_signer:
                msg = (
                    f"Requested validity ends {not_after.isoformat()}, after the "
                    f"signing CA ({signer_not_after.isoformat()})"
                )
                raise ValidationError(msg)
            log.info(
                "Clipping notAfter of '%s' to signer's %s",
                request.name,
                signer_not_after.isoformat(),
            )
            not_after = signer_not_after
        return not_after

    def issue(
        self,
        request: IssuanceRequest,
        *,
        signer: SignerRef | None = None,
        existing_key_path: str | None = None,
        existing_key_passphrase: bytes | None = None,
        cancel: CancelToken | None = None,
    ) -> IssuedMaterial:
        """Run one issuance and return the verified material.

        *request* must already be validated.  When *existing_key_path*
        is given the key is reused instead of generated (CA renewal).

        Raises
        ------
        ValidationError
            If the requested lifetime exceeds the signer and clipping
            is disabled.
        IssuerError
            On toolchain or verification failure.
        CancelledError
            If *cancel* fired; the working directory is removed.

        """
        not_after = self.compute_not_after(request, signer)
        work_dir = os.path.join(self._work_root, uuid.uuid4().hex)
        try:
            os.makedirs(work_dir, mode=0o700)
        except OSError as exc:
            msg = f"Cannot create working directory {work_dir}: {exc}"
            raise IssuerError(msg) from exc

        try:
            return self._issue_in(
                work_dir,
                request,
                signer=signer,
                not_after=not_after,
                existing_key_path=existing_key_path,
                existing_key_passphrase=existing_key_passphrase,
                cancel=cancel,
            )
        except Exception:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise

    def _issue_in(
        self,
        work_dir: str,
        request: IssuanceRequest,
        *,
        signer: SignerRef | None,
        not_after: datetime,
        existing_key_path: str | None,
        existing_key_passphrase: bytes | None,
        cancel: CancelToken | None,
    ) -> IssuedMaterial:
        key_path = os.path.join(work_dir, KEY_FILE)
        csr_path = os.path.join(work_dir, CSR_FILE)
        cert_path = os.path.join(work_dir, CERT_FILE)
        config_path = os.path.join(work_dir, CONFIG_FILE)

        if existing_key_path:
            try:
                shutil.copyfile(existing_key_path, key_path)
                os.chmod(key_path, 0o600)
            except OSError as exc:
                msg = f"Cannot copy key {existing_key_path}: {exc}"
                raise IssuerError(msg) from exc
            passphrase = existing_key_passphrase
        else:
            passphrase = None
            if request.passphrase_protected:
                passphrase = secrets.token_urlsafe(_PASSPHRASE_BYTES).encode("ascii")
            spec = KeySpec(request.key_algorithm, size=request.key_size, curve=request.curve)
            self._toolchain.generate_key(spec, key_path, passphrase=passphrase, cancel=cancel)

        profile = profile_for(
            request.type,
            request.key_algorithm,
            domains=request.domains,
            ips=request.ips,
        )
        config = render_openssl_config(request.subject, profile, self_signed=signer is None)
        try:
            with open(config_path, "w", encoding="utf-8") as fh:
                fh.write(config)
        except OSError as exc:
            msg = f"Cannot write {config_path}: {exc}"
            raise IssuerError(msg) from exc

        params = SigningParams(
            csr_path=csr_path,
            cert_path=cert_path,
            key_path=key_path,
            config_path=config_path,
            subject=request.subject,
            profile=profile,
            not_after=not_after,
            serial_number=x509.random_serial_number(),
            hash_algorithm=self._settings.hash_algorithm,
            key_passphrase=passphrase,
            signer=signer,
        )
        self._toolchain.create_csr(params, cancel=cancel)
        if cancel is not None:
            cancel.raise_if_cancelled()
        self._toolchain.sign(params, cancel=cancel)
        if cancel is not None:
            cancel.raise_if_cancelled()

        parsed = load_certificate(cert_path)
        self.verify(request, parsed, signer=signer, key_path=key_path, key_passphrase=passphrase)

        # The config is an intermediate artefact only
        os.unlink(config_path)
        log.info(
            "Issued %s certificate '%s' (%s)",
            request.type.value,
            request.name,
            parsed.fingerprint[:16],
        )
        return IssuedMaterial(
            work_dir=work_dir,
            key_path=key_path,
            csr_path=csr_path,
            cert_path=cert_path,
            parsed=parsed,
            key_passphrase=passphrase,
        )

    def verify(
        self,
        request: IssuanceRequest,
        parsed: ParsedCertificate,
        *,
        signer: SignerRef | None,
        key_path: str,
        key_passphrase: bytes | None = None,
    ) -> None:
        """Check a freshly signed certificate against its request.

        Raises
        ------
        IssuerError
            Listing the first mismatch found.

        """
        now = datetime.now(UTC)
        skew = timedelta(seconds=self._settings.clock_skew_seconds)

        if parsed.subject.common_name != request.subject.common_name:
            msg = (
                f"Subject CN mismatch: expected '{request.subject.common_name}', "
                f"got '{parsed.subject.common_name}'"
            )
            raise IssuerError(msg)
        if {d.lower() for d in parsed.domains} != set(request.domains):
            msg = f"DNS SAN mismatch: expected {sorted(request.domains)}, got {sorted(parsed.domains)}"
            raise IssuerError(msg)
        if set(parsed.ips) != set(request.ips):
            msg = f"IP SAN mismatch: expected {sorted(request.ips)}, got {sorted(parsed.ips)}"
            raise IssuerError(msg)

        if parsed.is_ca != request.type.is_ca:
            msg = f"basicConstraints CA:{parsed.is_ca} does not match type {request.type.value}"
            raise IssuerError(msg)
        if request.type.is_ca:
            usage = parsed.key_usage
            if usage is None or not (usage.key_cert_sign and usage.crl_sign):
                msg = "CA certificate lacks keyCertSign/cRLSign key usage"
                raise IssuerError(msg)

        if not parsed.not_before < parsed.not_after:
            msg = "Certificate notBefore is not before notAfter"
            raise IssuerError(msg)
        if parsed.not_before > now + skew:
            msg = f"Certificate notBefore {parsed.not_before.isoformat()} lies in the future"
            raise IssuerError(msg)

        if signer is None:
            issuer_cert = parsed.certificate
        else:
            issuer_cert = signer.certificate
            if parsed.not_after > signer.certificate.not_valid_after_utc:
                msg = "Certificate outlives its signing CA"
                raise IssuerError(msg)
        if not parsed.issued_by(issuer_cert):
            msg = "Signature does not verify against the signing certificate"
            raise IssuerError(msg)

        key = load_private_key(key_path, key_passphrase)
        if not public_key_matches(parsed.certificate, key):
            msg = "Private key does not match the issued certificate"
            raise IssuerError(msg)

    def discard(self, material: IssuedMaterial) -> None:
        """Remove the working directory of unused material."""
        shutil.rmtree(material.work_dir, ignore_errors=True)

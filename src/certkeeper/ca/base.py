"""Abstract base class for signing toolchains.

All toolchains (built-in and custom) must inherit from
:class:`Toolchain` and implement key generation, CSR construction,
signing and the encoding exports.  The :class:`~certkeeper.ca.issuer.Issuer`
drives a toolchain inside an isolated working directory and verifies
everything it produces, so a toolchain only has to write files.

Built-in toolchains:

- ``openssl``: the external ``openssl`` binary (default);
- ``native``: in-process :mod:`cryptography`.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from cryptography import x509

    from certkeeper.config.settings import IssuerSettings
    from certkeeper.core.locks import CancelToken
    from certkeeper.core.types import KeyAlgorithm
    from certkeeper.models.certificate import Subject

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeySpec:
    algorithm: KeyAlgorithm
    size: int | None = None
    curve: str | None = None


@dataclass(frozen=True)
class ExtensionProfile:
    """X.509 extensions to place in the CSR and certificate.

    Attributes
    ----------
    is_ca:
        Emit ``basicConstraints CA:TRUE``.
    path_length:
        Optional path length constraint for CA certificates.
    key_usages:
        Key usage names (``digital_signature``, ``key_cert_sign``...).
    extended_key_usages:
        EKU names (``server_auth``, ``client_auth``...).
    domains, ips:
        Subject alternative names, already validated and canonical.

    """

    is_ca: bool
    key_usages: tuple[str, ...]
    extended_key_usages: tuple[str, ...] = ()
    domains: tuple[str, ...] = ()
    ips: tuple[str, ...] = ()
    path_length: int | None = None


@dataclass(frozen=True)
class SignerRef:
    """Certificate and key of the CA that signs a request."""

    cert_path: str
    key_path: str
    certificate: x509.Certificate
    passphrase: bytes | None = None


@dataclass(frozen=True)
class SigningParams:
    """Everything a toolchain needs to produce one certificate."""

    csr_path: str
    cert_path: str
    key_path: str
    config_path: str
    subject: Subject
    profile: ExtensionProfile
    not_after: datetime
    serial_number: int
    hash_algorithm: str = "sha256"
    key_passphrase: bytes | None = None
    signer: SignerRef | None = None
    extra: dict = field(default_factory=dict)


class Toolchain(abc.ABC):
    """Base class for all toolchain implementations.

    Parameters
    ----------
    settings:
        The ``issuer`` configuration section.

    """

    name = "abstract"

    def __init__(self, settings: IssuerSettings) -> None:
        self._settings = settings

    @abc.abstractmethod
    def generate_key(
        self,
        spec: KeySpec,
        key_path: str,
        *,
        passphrase: bytes | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        """Write a new PKCS#8 private key to *key_path*.

        When *passphrase* is given the key is encrypted with it.

        Raises
        ------
        IssuerError
            On any toolchain failure.

        """

    @abc.abstractmethod
    def create_csr(self, params: SigningParams, *, cancel: CancelToken | None = None) -> None:
        """Write a PKCS#10 request for ``params.key_path`` to ``params.csr_path``."""

    @abc.abstractmethod
    def sign(self, params: SigningParams, *, cancel: CancelToken | None = None) -> None:
        """Write the certificate to ``params.cert_path``.

        Self-signs with ``params.key_path`` when ``params.signer`` is
        ``None``, otherwise signs ``params.csr_path`` with the signer.
        """

    @abc.abstractmethod
    def export_der(self, cert_path: str, out_path: str) -> None:
        """Write the DER encoding of a PEM certificate."""

    @abc.abstractmethod
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
        """Write a PKCS#12 bundle of key, certificate and chain."""

    def startup_check(self) -> None:
        """Optional startup health check.

        Called during engine initialisation to verify the toolchain
        is usable.  Default implementation is a no-op.

        Raises
        ------
        IssuerError
            If the toolchain is misconfigured.

        """

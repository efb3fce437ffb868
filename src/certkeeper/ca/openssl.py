"""OpenSSL toolchain: drives the external ``openssl`` binary.

Every invocation runs with a hard deadline (``issuer.timeoutSeconds``)
and polls the caller's cancel token; a child that overruns either is
killed.  Passphrases never appear on the command line, they are handed
over through environment variables (``-pass env:NAME``).
"""

from __future__ import annotations

import logging
import math
import os
import subprocess
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from certkeeper.ca.base import KeySpec, SigningParams, Toolchain
from certkeeper.core.errors import CancelledError, IssuerError
from certkeeper.core.types import KeyAlgorithm

if TYPE_CHECKING:
    from certkeeper.core.locks import CancelToken

log = logging.getLogger(__name__)

_KEY_PASS_ENV = "CK_KEY_PASS"
_CA_PASS_ENV = "CK_CA_PASS"
_EXPORT_PASS_ENV = "CK_EXPORT_PASS"
_POLL_INTERVAL = 0.1
_STDERR_LIMIT = 2000
_DAY = 86400
# Margin between computing -days and openssl stamping notAfter.
_DAYS_MARGIN = 60


class OpensslToolchain(Toolchain):
    """Sign certificates by shelling out to ``openssl``."""

    name = "openssl"

    def _run(
        self,
        args: list[str],
        *,
        env_extra: dict[str, bytes] | None = None,
        cancel: CancelToken | None = None,
    ) -> str:
        """Run ``openssl <args>`` and return stdout.

        Raises
        ------
        IssuerError
            On non-zero exit, timeout or a missing binary.
        CancelledError
            If *cancel* fires while the child is running.

        """
        cmd = [self._settings.openssl_path, *args]
        env = os.environ.copy()
        for key, value in (env_extra or {}).items():
            env[key] = value.decode("utf-8")
        log.debug("Running %s", " ".join(cmd[:2]))

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            msg = f"Cannot execute {cmd[0]}: {exc}"
            raise IssuerError(msg) from exc

        deadline = time.monotonic() + self._settings.timeout_seconds
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    proc.kill()
                    proc.communicate()
                    raise CancelledError(cancel.reason or "cancelled") from None
                if time.monotonic() >= deadline:
                    proc.kill()
                    proc.communicate()
                    msg = (
                        f"openssl {args[0]} timed out after "
                        f"{self._settings.timeout_seconds}s"
                    )
                    raise IssuerError(msg) from None

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", "replace").strip()[:_STDERR_LIMIT]
            msg = f"openssl {args[0]} failed (exit {proc.returncode}): {detail}"
            raise IssuerError(msg)
        return stdout.decode("utf-8", "replace")

    def startup_check(self) -> None:
        version = self._run(["version"]).strip()
        log.info("Using %s", version)

    def generate_key(
        self,
        spec: KeySpec,
        key_path: str,
        *,
        passphrase: bytes | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        if spec.algorithm == KeyAlgorithm.RSA:
            args = [
                "genpkey",
                "-algorithm",
                "RSA",
                "-pkeyopt",
                f"rsa_keygen_bits:{spec.size or 2048}",
            ]
        else:
            args = [
                "genpkey",
                "-algorithm",
                "EC",
                "-pkeyopt",
                f"ec_paramgen_curve:{spec.curve or 'P-256'}",
                "-pkeyopt",
                "ec_param_enc:named_curve",
            ]
        env = None
        if passphrase:
            args += ["-aes-256-cbc", "-pass", f"env:{_KEY_PASS_ENV}"]
            env = {_KEY_PASS_ENV: passphrase}
        args += ["-out", key_path]
        self._run(args, env_extra=env, cancel=cancel)
        os.chmod(key_path, 0o600)

    def create_csr(self, params: SigningParams, *, cancel: CancelToken | None = None) -> None:
        args = [
            "req",
            "-new",
            "-key",
            params.key_path,
            "-config",
            params.config_path,
            f"-{params.hash_algorithm}",
            "-out",
            params.csr_path,
        ]
        env = None
        if params.key_passphrase:
            args += ["-passin", f"env:{_KEY_PASS_ENV}"]
            env = {_KEY_PASS_ENV: params.key_passphrase}
        self._run(args, env_extra=env, cancel=cancel)

    @staticmethod
    def _days_until(not_after: datetime) -> int:
        seconds = (not_after - datetime.now(UTC)).total_seconds() - _DAYS_MARGIN
        days = math.floor(seconds / _DAY)
        if days < 1:
            msg = f"notAfter {not_after.isoformat()} leaves less than one day of validity"
            raise IssuerError(msg)
        return days

    def sign(self, params: SigningParams, *, cancel: CancelToken | None = None) -> None:
        days = str(self._days_until(params.not_after))
        serial = f"0x{params.serial_number:x}"
        env: dict[str, bytes] = {}
        if params.signer is None:
            args = [
                "req",
                "-x509",
                "-new",
                "-key",
                params.key_path,
                "-config",
                params.config_path,
                "-extensions",
                "v3_ext",
                f"-{params.hash_algorithm}",
                "-days",
                days,
                "-set_serial",
                serial,
                "-out",
                params.cert_path,
            ]
            if params.key_passphrase:
                args += ["-passin", f"env:{_KEY_PASS_ENV}"]
                env[_KEY_PASS_ENV] = params.key_passphrase
        else:
            args = [
                "x509",
                "-req",
                "-in",
                params.csr_path,
                "-CA",
                params.signer.cert_path,
                "-CAkey",
                params.signer.key_path,
                "-set_serial",
                serial,
                "-days",
                days,
                "-extfile",
                params.config_path,
                "-extensions",
                "v3_ext",
                f"-{params.hash_algorithm}",
                "-out",
                params.cert_path,
            ]
            if params.signer.passphrase:
                args += ["-passin", f"env:{_CA_PASS_ENV}"]
                env[_CA_PASS_ENV] = params.signer.passphrase
        self._run(args, env_extra=env, cancel=cancel)

    def export_der(self, cert_path: str, out_path: str) -> None:
        self._run(["x509", "-in", cert_path, "-outform", "DER", "-out", out_path])

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
        args = [
            "pkcs12",
            "-export",
            "-in",
            cert_path,
            "-inkey",
            key_path,
            "-name",
            friendly_name,
            "-out",
            out_path,
            "-passout",
            f"env:{_EXPORT_PASS_ENV}",
        ]
        for path in chain_paths:
            args += ["-certfile", path]
        env = {_EXPORT_PASS_ENV: export_passphrase or b""}
        if key_passphrase:
            args += ["-passin", f"env:{_KEY_PASS_ENV}"]
            env[_KEY_PASS_ENV] = key_passphrase
        self._run(args, env_extra=env)
        os.chmod(out_path, 0o600)

"""PEM bundle helpers and encoding exports."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from certkeeper.core.errors import IssuerError, ValidationError
from certkeeper.core.types import ExportFormat

if TYPE_CHECKING:
    from certkeeper.ca.base import Toolchain

_PEM_CERT_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----\r?\n.+?\r?\n-----END CERTIFICATE-----",
    re.DOTALL,
)


def split_pem_certificates(data: bytes) -> list[bytes]:
    """Return every PEM certificate block in *data*, newline-terminated."""
    return [m.group(0).replace(b"\r\n", b"\n") + b"\n" for m in _PEM_CERT_RE.finditer(data)]


def read_pem(path: str) -> bytes:
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except OSError as exc:
        msg = f"Cannot read {path}: {exc}"
        raise IssuerError(msg) from exc


def build_bundle(*parts: bytes) -> bytes:
    """Concatenate PEM certificates, dropping duplicates and stray text."""
    seen: list[bytes] = []
    for part in parts:
        for block in split_pem_certificates(part):
            if block not in seen:
                seen.append(block)
    return b"".join(seen)


def export_to(
    toolchain: Toolchain,
    fmt: ExportFormat | str,
    *,
    cert_path: str,
    key_path: str,
    chain_path: str | None,
    out_path: str,
    friendly_name: str,
    key_passphrase: bytes | None = None,
    export_passphrase: bytes | None = None,
) -> None:
    """Write *cert_path* in another encoding to *out_path*.

    ``der`` is the bare leaf, ``p12`` bundles key, leaf and chain and
    ``pem`` writes the leaf followed by its chain.
    """
    try:
        fmt = ExportFormat(fmt)
    except ValueError:
        msg = f"Unsupported export format {fmt!r}; choose one of {[f.value for f in ExportFormat]}"
        raise ValidationError(msg) from None

    if fmt == ExportFormat.DER:
        toolchain.export_der(cert_path, out_path)
    elif fmt == ExportFormat.P12:
        toolchain.export_p12(
            cert_path=cert_path,
            key_path=key_path,
            chain_paths=(chain_path,) if chain_path else (),
            out_path=out_path,
            friendly_name=friendly_name,
            key_passphrase=key_passphrase,
            export_passphrase=export_passphrase,
        )
    else:
        chain = read_pem(chain_path) if chain_path else b""
        bundle = build_bundle(read_pem(cert_path), chain)
        try:
            with open(out_path, "wb") as fh:
                fh.write(bundle)
        except OSError as exc:
            msg = f"Cannot write {out_path}: {exc}"
            raise IssuerError(msg) from exc

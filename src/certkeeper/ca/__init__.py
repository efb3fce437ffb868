"""Pluggable signing toolchains and the issuer that drives them.

Exports the abstract toolchain, the request type, the issuer and the
registry loader.
"""

from certkeeper.ca.base import SignerRef, Toolchain
from certkeeper.ca.issuer import IssuedMaterial, Issuer
from certkeeper.ca.registry import load_toolchain
from certkeeper.ca.requests import IssuanceRequest

__all__ = [
    "IssuanceRequest",
    "IssuedMaterial",
    "Issuer",
    "SignerRef",
    "Toolchain",
    "load_toolchain",
]

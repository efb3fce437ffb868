"""Toolchain registry.

Loads the configured signing toolchain by name and returns an
initialised :class:`Toolchain` instance.  Supports the built-in
toolchains (``openssl``, ``native``) and custom ones via the ``ext:``
prefix.

Usage::

    from certkeeper.ca.registry import load_toolchain

    toolchain = load_toolchain(settings.issuer)
    toolchain.startup_check()
"""

from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING

from certkeeper.ca.base import Toolchain
from certkeeper.core.errors import IssuerError

if TYPE_CHECKING:
    from certkeeper.config.settings import IssuerSettings

log = logging.getLogger(__name__)

# config string -> (module_path, class_name)
_BUILTIN_TOOLCHAINS: dict[str, tuple[str, str]] = {
    "openssl": ("certkeeper.ca.openssl", "OpensslToolchain"),
    "native": ("certkeeper.ca.native", "NativeToolchain"),
}

_REQUIRED_METHODS = ("generate_key", "create_csr", "sign", "export_der", "export_p12")


def load_toolchain(settings: IssuerSettings) -> Toolchain:
    """Load and return the configured toolchain.

    Raises
    ------
    IssuerError
        If the toolchain cannot be loaded.

    """
    name = settings.toolchain
    if name in _BUILTIN_TOOLCHAINS:
        mod_path, cls_name = _BUILTIN_TOOLCHAINS[name]
        label = name
    elif name.startswith("ext:"):
        mod_path, _, cls_name = name[4:].rpartition(".")
        label = name
        if not mod_path:
            msg = (
                f"Invalid external toolchain '{name[4:]}': must be fully "
                "qualified (e.g. 'mypackage.module.ClassName')"
            )
            raise IssuerError(msg)
    else:
        msg = (
            f"Unknown toolchain '{name}'; built-in options: "
            f"{sorted(_BUILTIN_TOOLCHAINS)}. "
            "Use 'ext:mypackage.module.ClassName' for custom toolchains."
        )
        raise IssuerError(msg)

    try:
        module = importlib.import_module(mod_path)
        cls = getattr(module, cls_name)
    except (ImportError, AttributeError) as exc:
        msg = f"Failed to load toolchain '{label}': {exc}"
        raise IssuerError(msg) from exc

    _validate_class(cls, label)
    toolchain = cls(settings)
    log.info("Loaded signing toolchain: %s", label)
    return toolchain


def _validate_class(cls: type, label: str) -> None:
    if not (isinstance(cls, type) and issubclass(cls, Toolchain)):
        msg = f"Toolchain '{label}' is not a subclass of Toolchain"
        raise IssuerError(msg)
    for method_name in _REQUIRED_METHODS:
        method = getattr(cls, method_name, None)
        if method is None or getattr(method, "__isabstractmethod__", False):
            msg = f"Toolchain '{label}' does not implement '{method_name}()'"
            raise IssuerError(msg)

"""Unit tests for certkeeper.ca.registry (load_toolchain)."""

from __future__ import annotations

import types
from dataclasses import replace
from unittest.mock import patch

import pytest

from certkeeper.ca.base import Toolchain
from certkeeper.ca.native import NativeToolchain
from certkeeper.ca.openssl import OpensslToolchain
from certkeeper.ca.registry import load_toolchain
from certkeeper.core.errors import IssuerError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _CustomToolchain(NativeToolchain):
    name = "custom"


class _NotAToolchain:
    pass


class _Incomplete(Toolchain):
    def generate_key(self, spec, key_path, *, passphrase=None, cancel=None):
        pass


def _fake_module(**attrs) -> types.ModuleType:
    module = types.ModuleType("fake_toolchains")
    for key, value in attrs.items():
        setattr(module, key, value)
    return module


# ---------------------------------------------------------------------------
# TestBuiltins
# ---------------------------------------------------------------------------


class TestBuiltins:
    def test_native(self, settings):
        assert isinstance(load_toolchain(settings.issuer), NativeToolchain)

    def test_openssl(self, settings):
        toolchain = load_toolchain(replace(settings.issuer, toolchain="openssl"))
        assert isinstance(toolchain, OpensslToolchain)

    def test_unknown(self, settings):
        with pytest.raises(IssuerError, match="Unknown toolchain"):
            load_toolchain(replace(settings.issuer, toolchain="gnutls"))


# ---------------------------------------------------------------------------
# TestExternal
# ---------------------------------------------------------------------------


class TestExternal:
    def test_loads_subclass(self, settings):
        module = _fake_module(Custom=_CustomToolchain)
        with patch("certkeeper.ca.registry.importlib.import_module", return_value=module):
            toolchain = load_toolchain(replace(settings.issuer, toolchain="ext:fake_toolchains.Custom"))
        assert toolchain.name == "custom"

    def test_requires_qualified_path(self, settings):
        with pytest.raises(IssuerError, match="fully qualified"):
            load_toolchain(replace(settings.issuer, toolchain="ext:Custom"))

    def test_import_failure(self, settings):
        with pytest.raises(IssuerError, match="Failed to load"):
            load_toolchain(replace(settings.issuer, toolchain="ext:does_not_exist_pkg.Thing"))

    def test_missing_attribute(self, settings):
        with (
            patch("certkeeper.ca.registry.importlib.import_module", return_value=_fake_module()),
            pytest.raises(IssuerError, match="Failed to load"),
        ):
            load_toolchain(replace(settings.issuer, toolchain="ext:fake_toolchains.Missing"))

    def test_not_a_subclass(self, settings):
        module = _fake_module(Thing=_NotAToolchain)
        with (
            patch("certkeeper.ca.registry.importlib.import_module", return_value=module),
            pytest.raises(IssuerError, match="not a subclass"),
        ):
            load_toolchain(replace(settings.issuer, toolchain="ext:fake_toolchains.Thing"))

    def test_abstract_methods_rejected(self, settings):
        module = _fake_module(Thing=_Incomplete)
        with (
            patch("certkeeper.ca.registry.importlib.import_module", return_value=module),
            pytest.raises(IssuerError, match="does not implement 'create_csr"),
        ):
            load_toolchain(replace(settings.issuer, toolchain="ext:fake_toolchains.Thing"))

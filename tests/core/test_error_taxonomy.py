"""Unit tests for certkeeper.core.errors."""

from __future__ import annotations

import pytest

from certkeeper.core.errors import (
    AuthError,
    CancelledError,
    CertKeeperError,
    ConflictError,
    DecryptError,
    DeployError,
    InUseError,
    IssuerError,
    NotFoundError,
    StartupError,
    StoreIOError,
    ValidationError,
)


class TestErrorCodes:
    @pytest.mark.parametrize(
        "cls,code,retryable",
        [
            (ValidationError, "validation", False),
            (NotFoundError, "not-found", False),
            (ConflictError, "conflict", True),
            (InUseError, "in-use", True),
            (IssuerError, "issuer", False),
            (DecryptError, "decrypt", False),
            (StoreIOError, "io", False),
            (CancelledError, "cancelled", False),
        ],
    )
    def test_code_and_retryable(self, cls, code, retryable):
        exc = cls("boom")
        assert isinstance(exc, CertKeeperError)
        assert exc.to_dict() == {"code": code, "detail": "boom", "retryable": retryable}

    def test_str_is_detail(self):
        assert str(NotFoundError("no such certificate")) == "no such certificate"


class TestDeployError:
    def test_permanent_by_default(self):
        exc = DeployError("refused")
        assert exc.transient is False
        assert exc.retryable is False
        assert exc.to_dict()["transient"] is False

    def test_transient_is_retryable(self):
        exc = DeployError("timeout", transient=True)
        assert exc.retryable is True
        assert exc.to_dict() == {
            "code": "deploy",
            "detail": "timeout",
            "retryable": True,
            "transient": True,
        }

    def test_auth_error_is_permanent_deploy_error(self):
        exc = AuthError("bad password")
        assert isinstance(exc, DeployError)
        assert exc.code == "auth"
        assert exc.transient is False


class TestStartupError:
    def test_default_exit_code(self):
        assert StartupError("bad config").exit_code == StartupError.EXIT_CONFIG == 1

    def test_explicit_exit_code(self):
        exc = StartupError("key gone", exit_code=StartupError.EXIT_MASTER_KEY_MISSING)
        assert exc.exit_code == 3
        assert StartupError.EXIT_CORRUPT_INDEX == 2

"""Error taxonomy for the lifecycle engine.

Every public operation either returns a value or raises a subclass of
:class:`CertKeeperError`.  Third-party exceptions are translated at the
boundary where they occur (``raise ... from exc``) so callers only need
to handle this hierarchy.

Usage::

    from certkeeper.core.errors import NotFoundError

    raise NotFoundError(f"No certificate with fingerprint {fp}")
"""

from __future__ import annotations


class CertKeeperError(Exception):
    """Base class for all engine errors.

    Parameters
    ----------
    detail:
        Human-readable description of the failure.

    """

    code = "internal"
    retryable = False

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.detail, "retryable": self.retryable}


class ValidationError(CertKeeperError):
    """Malformed request: bad domain, invalid key size, invalid cron."""

    code = "validation"


class NotFoundError(CertKeeperError):
    """Unknown fingerprint, name, action or snapshot."""

    code = "not-found"


class ConflictError(CertKeeperError):
    """Name collision or concurrent modification."""

    code = "conflict"
    retryable = True


class InUseError(CertKeeperError):
    """The certificate is referenced by others or locked by a lifecycle operation."""

    code = "in-use"
    retryable = True


class IssuerError(CertKeeperError):
    """External toolchain failure or output verification failure."""

    code = "issuer"


class DeployError(CertKeeperError):
    """A deployment action failed.

    Parameters
    ----------
    detail:
        Human-readable description of the failure.
    transient:
        ``True`` for network timeouts, 5xx responses and expired tokens;
        these are retried with backoff.  Permanent failures are recorded
        and not retried.

    """

    code = "deploy"

    def __init__(self, detail: str, *, transient: bool = False) -> None:
        super().__init__(detail)
        self.transient = transient

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["transient"] = self.transient
        return data


class AuthError(DeployError):
    """Credentials were rejected after a refresh attempt."""

    code = "auth"

    def __init__(self, detail: str) -> None:
        super().__init__(detail, transient=False)


class DecryptError(CertKeeperError):
    """Passphrase or master-key mismatch, or an unknown key version."""

    code = "decrypt"


class StoreIOError(CertKeeperError):
    """Disk full, permission denied or another filesystem failure.

    The mutation that raised it has been aborted and the prior on-disk
    state is preserved.
    """

    code = "io"


class CancelledError(CertKeeperError):
    """The operation observed a cancellation request and stopped."""

    code = "cancelled"


class StartupError(CertKeeperError):
    """Fatal condition detected while the engine starts.

    Parameters
    ----------
    detail:
        Human-readable description of the failure.
    exit_code:
        Process exit status the CLI should use.

    """

    code = "startup"

    EXIT_CONFIG = 1
    EXIT_CORRUPT_INDEX = 2
    EXIT_MASTER_KEY_MISSING = 3

    def __init__(self, detail: str, *, exit_code: int = EXIT_CONFIG) -> None:
        super().__init__(detail)
        self.exit_code = exit_code

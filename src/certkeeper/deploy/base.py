"""Abstract base class for deployment actions.

Every action type (built-in and custom) inherits from
:class:`DeployAction` and implements :meth:`DeployAction.run`.  The
pipeline never calls :meth:`run` directly: :meth:`DeployAction.execute`
wraps it so that an action always comes back with an
:class:`ActionAttempt` value instead of an exception.
"""

from __future__ import annotations

import abc
import errno
import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from cryptography.hazmat.primitives import serialization

from certkeeper.core.errors import CancelledError, DeployError, ValidationError

if TYPE_CHECKING:
    from certkeeper.config.settings import SmtpSettings
    from certkeeper.core.locks import CancelToken
    from certkeeper.core.types import DeployActionType
    from certkeeper.deploy.renderer import TemplateRenderer
    from certkeeper.deploy.tokens import NpmTokenCache
    from certkeeper.models.certificate import Certificate
    from certkeeper.models.deployment import DeploymentAction

log = logging.getLogger(__name__)

# Certificate file roles an action config may refer to
FILE_ROLES = ("cert", "key", "chain", "fullchain", "csr", "p12", "der")

# Default file names used when an action uploads or copies by role
DEFAULT_FILE_NAMES = {
    "cert": "cert.crt",
    "key": "key.key",
    "chain": "chain.pem",
    "fullchain": "fullchain.pem",
    "csr": "cert.csr",
    "p12": "cert.p12",
    "der": "cert.der",
}

_TRANSIENT_ERRNOS = frozenset(
    {
        errno.ECONNREFUSED,
        errno.ECONNRESET,
        errno.ECONNABORTED,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
        errno.ETIMEDOUT,
        errno.EPIPE,
    },
)


def os_failure(exc: OSError, what: str) -> DeployError:
    """Translate an :class:`OSError` raised while talking to *what*."""
    transient = isinstance(exc, TimeoutError) or exc.errno is None or exc.errno in _TRANSIENT_ERRNOS
    return DeployError(f"{what}: {exc}", transient=transient)


@dataclass(frozen=True)
class ActionAttempt:
    """Outcome of a single execution of an action."""

    ok: bool
    detail: str = ""
    error: DeployError | None = None

    @property
    def transient(self) -> bool:
        return self.error is not None and self.error.transient

    @classmethod
    def success(cls, detail: str = "") -> ActionAttempt:
        return cls(ok=True, detail=detail)

    @classmethod
    def failure(cls, error: DeployError) -> ActionAttempt:
        return cls(ok=False, detail=error.detail, error=error)


@dataclass
class ActionContext:
    """Everything an action may use while it runs.

    Attributes
    ----------
    certificate:
        The (newly committed) certificate being deployed.
    action:
        The stored action entity.
    config:
        The action config with every secret unwrapped.
    event:
        Event that caused the deployment (``certificate-renewed``...).

    """

    certificate: Certificate
    action: DeploymentAction
    config: dict
    cancel: CancelToken
    event: str = "deployment"
    network_timeout: float = 30.0
    smtp_timeout: float = 15.0
    key_passphrase: bytes | None = None
    smtp: SmtpSettings | None = None
    renderer: TemplateRenderer | None = None
    tokens: NpmTokenCache | None = None
    extra: dict = field(default_factory=dict)

    def path_for(self, role: str) -> str | None:
        paths = self.certificate.paths
        path = {
            "cert": paths.crt,
            "key": paths.key,
            "chain": paths.chain,
            "fullchain": paths.pem,
            "csr": paths.csr,
            "p12": paths.p12,
            "der": paths.der,
        }.get(role)
        if path and os.path.isfile(path):
            return path
        return None

    def read(self, role: str) -> bytes:
        path = self.path_for(role)
        if path is None:
            msg = f"Certificate '{self.certificate.name}' has no {role} file"
            raise DeployError(msg)
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except OSError as exc:
            msg = f"Cannot read {path}: {exc}"
            raise DeployError(msg) from exc

    def plain_key_pem(self) -> bytes:
        """The private key as unencrypted PKCS#8 PEM, for remote APIs."""
        data = self.read("key")
        if self.key_passphrase is None and b"ENCRYPTED" not in data:
            return data
        try:
            key = serialization.load_pem_private_key(data, password=self.key_passphrase)
        except (ValueError, TypeError) as exc:
            msg = f"Cannot decrypt the key of '{self.certificate.name}': {exc}"
            raise DeployError(msg) from exc
        return key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )

    def payload(self) -> dict:
        """Certificate summary shared by webhook and email actions."""
        cert = self.certificate
        return {
            "event": self.event,
            "fingerprint": cert.fingerprint,
            "name": cert.name,
            "type": cert.type.value,
            "notAfter": cert.validity.not_after.isoformat(),
            "paths": cert.paths.to_record(),
            "sans": {"domains": list(cert.sans.domains), "ips": list(cert.sans.ips)},
        }


class DeployAction(abc.ABC):
    """Base class for all deployment action implementations.

    Subclasses set :attr:`action_type` and implement :meth:`run`,
    raising :class:`DeployError` on failure (``transient=True`` for
    conditions worth retrying).
    """

    action_type: ClassVar[DeployActionType]
    """The action type string stored in ``deployActions[].type``."""

    required_fields: ClassVar[tuple[str, ...]] = ()
    """Config keys that must be present and non-empty."""

    secret_fields: ClassVar[frozenset[str]] = frozenset()
    """Config paths stored as wrapped secrets besides secret-named keys."""

    @classmethod
    def validate_config(cls, config: dict) -> None:
        """Check an action config (secrets arrive masked).

        Raises
        ------
        ValidationError
            Listing the first problem found.

        """
        for name in cls.required_fields:
            value = config.get(name)
            if value is None or value == "" or value == []:
                msg = f"{cls.action_type.value} action requires '{name}'"
                raise ValidationError(msg)

    @staticmethod
    def _roles(config: dict, default: tuple[str, ...] = ("cert", "key", "chain")) -> tuple[str, ...]:
        roles = tuple(config.get("files") or default)
        unknown = [r for r in roles if r not in FILE_ROLES]
        if unknown:
            msg = f"Unknown certificate file role(s) {unknown}; choose from {list(FILE_ROLES)}"
            raise ValidationError(msg)
        return roles

    def execute(self, ctx: ActionContext) -> ActionAttempt:
        """Run the action once and report the outcome; only cancellation propagates."""
        try:
            detail = self.run(ctx)
        except CancelledError:
            raise
        except DeployError as exc:
            return ActionAttempt.failure(exc)
        except Exception as exc:
            log.exception(
                "Unexpected error in %s action '%s'",
                self.action_type.value,
                ctx.action.name,
            )
            return ActionAttempt.failure(DeployError(f"{type(exc).__name__}: {exc}"))
        return ActionAttempt.success(detail or "")

    @abc.abstractmethod
    def run(self, ctx: ActionContext) -> str:
        """Perform the deployment; return a short description on success."""

    def describe(self, config: dict) -> dict[str, Any]:
        """Non-secret summary of *config* for logs."""
        return {k: v for k, v in config.items() if k in self.required_fields}

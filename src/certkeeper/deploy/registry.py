"""Deployment action registry.

Maps each :class:`DeployActionType` to the class implementing it.
Built-in classes are imported lazily so that an action whose client
library is heavy (``docker``, ``paramiko``) costs nothing until a
certificate actually uses it.

Usage::

    from certkeeper.deploy.registry import get_action_class

    cls = get_action_class("webhook")
    cls.validate_config(config)
    attempt = cls().execute(ctx)
"""

from __future__ import annotations

import importlib
import logging
import threading

from certkeeper.core.errors import ValidationError
from certkeeper.core.types import DeployActionType
from certkeeper.deploy.base import DeployAction

log = logging.getLogger(__name__)

# Maps action type -> (module_path, class_name)
_BUILTIN_ACTIONS: dict[DeployActionType, tuple[str, str]] = {
    DeployActionType.COPY: ("certkeeper.deploy.actions.local_copy", "CopyAction"),
    DeployActionType.NPM_UPDATE: ("certkeeper.deploy.actions.npm", "NpmUpdateAction"),
    DeployActionType.DOCKER_RESTART: ("certkeeper.deploy.actions.docker_restart", "DockerRestartAction"),
    DeployActionType.FTP_UPLOAD: ("certkeeper.deploy.actions.ftp", "FtpUploadAction"),
    DeployActionType.SFTP_UPLOAD: ("certkeeper.deploy.actions.sftp", "SftpUploadAction"),
    DeployActionType.WEBHOOK: ("certkeeper.deploy.actions.webhook", "WebhookAction"),
    DeployActionType.EMAIL: ("certkeeper.deploy.actions.mail", "EmailAction"),
}

_lock = threading.Lock()
_loaded: dict[DeployActionType, type[DeployAction]] = {}


def _validate_class(cls: type, label: str, expected: DeployActionType) -> None:
    """Verify that an action class is a usable :class:`DeployAction`."""
    if not (isinstance(cls, type) and issubclass(cls, DeployAction)):
        msg = f"Action class '{label}' must be a subclass of DeployAction"
        raise TypeError(msg)
    if getattr(cls, "action_type", None) != expected:
        msg = f"Action class '{label}' has action_type={getattr(cls, 'action_type', None)!r}, expected {expected.value!r}"
        raise TypeError(msg)
    if getattr(cls.run, "__isabstractmethod__", False):
        msg = f"Action class '{label}' does not implement run()"
        raise TypeError(msg)


def get_action_class(action_type: DeployActionType | str) -> type[DeployAction]:
    """Return the class implementing *action_type*.

    Raises
    ------
    ValidationError
        If the type is unknown.

    """
    try:
        action_type = DeployActionType(action_type)
    except ValueError:
        msg = f"Unknown deployment action type {action_type!r}; choose one of {[t.value for t in DeployActionType]}"
        raise ValidationError(msg) from None

    with _lock:
        cls = _loaded.get(action_type)
        if cls is not None:
            return cls
        mod_path, cls_name = _BUILTIN_ACTIONS[action_type]
        module = importlib.import_module(mod_path)
        cls = getattr(module, cls_name)
        _validate_class(cls, f"{mod_path}.{cls_name}", action_type)
        _loaded[action_type] = cls
        log.debug("Loaded deployment action: %s", action_type.value)
        return cls


def register_action(cls: type[DeployAction]) -> None:
    """Override the implementation of a built-in type (used by tests and plugins)."""
    action_type = getattr(cls, "action_type", None)
    if not isinstance(action_type, DeployActionType):
        msg = f"Action class '{cls.__qualname__}' needs a DeployActionType action_type"
        raise TypeError(msg)
    _validate_class(cls, cls.__qualname__, action_type)
    with _lock:
        _loaded[action_type] = cls
    log.info("Registered deployment action override: %s -> %s", action_type.value, cls.__qualname__)


def reset_registry() -> None:
    with _lock:
        _loaded.clear()

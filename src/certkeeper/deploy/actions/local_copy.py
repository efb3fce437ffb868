"""``copy`` action: place certificate files into local directories."""

from __future__ import annotations

import logging
import os

from certkeeper.core.errors import DeployError, StoreIOError, ValidationError
from certkeeper.core.fileio import atomic_write_bytes
from certkeeper.core.types import DeployActionType
from certkeeper.deploy.base import DEFAULT_FILE_NAMES, ActionContext, DeployAction

log = logging.getLogger(__name__)

_KEY_MODE = 0o600
_FILE_MODE = 0o644


class CopyAction(DeployAction):
    """Copy the selected files to one or more destination directories.

    Config::

        {"destination": "/etc/nginx/ssl/web",        # or a list
         "files": ["cert", "key", "chain"],          # roles, optional
         "names": {"cert": "fullchain.crt"},         # optional renames
         "mode": "0640"}                             # optional, non-key files

    The run succeeds once every written file reads back byte-identical.
    A missing ``chain`` (self-signed roots have none) is skipped.
    """

    action_type = DeployActionType.COPY
    required_fields = ("destination",)

    @classmethod
    def validate_config(cls, config: dict) -> None:
        super().validate_config(config)
        destinations = _destinations(config)
        for dest in destinations:
            if not os.path.isabs(dest):
                msg = f"copy destination '{dest}' must be an absolute path"
                raise ValidationError(msg)
        cls._roles(config)
        names = config.get("names") or {}
        if not isinstance(names, dict):
            msg = "copy 'names' must map file roles to file names"
            raise ValidationError(msg)
        for name in names.values():
            if not isinstance(name, str) or not name or os.sep in name:
                msg = f"copy file name {name!r} must be a bare file name"
                raise ValidationError(msg)
        if "mode" in config:
            _parse_mode(config["mode"])

    def run(self, ctx: ActionContext) -> str:
        config = ctx.config
        roles = self._roles(config)
        names = {**DEFAULT_FILE_NAMES, **(config.get("names") or {})}
        file_mode = _parse_mode(config["mode"]) if "mode" in config else _FILE_MODE

        written = 0
        for dest in _destinations(config):
            for role in roles:
                ctx.cancel.raise_if_cancelled()
                if ctx.path_for(role) is None and role == "chain":
                    log.debug("No chain for '%s', skipping", ctx.certificate.name)
                    continue
                data = ctx.read(role)
                target = os.path.join(dest, names[role])
                try:
                    atomic_write_bytes(target, data, mode=_KEY_MODE if role == "key" else file_mode)
                except StoreIOError as exc:
                    raise DeployError(exc.detail) from exc
                _verify(target, data)
                written += 1
        return f"copied {written} file(s)"


def _destinations(config: dict) -> list[str]:
    dest = config.get("destination")
    if isinstance(dest, str):
        return [dest]
    if isinstance(dest, list) and all(isinstance(d, str) and d for d in dest):
        return list(dest)
    msg = "copy 'destination' must be a path or a list of paths"
    raise ValidationError(msg)


def _parse_mode(value: str | int) -> int:
    try:
        mode = int(value, 8) if isinstance(value, str) else int(value)
    except ValueError:
        msg = f"copy 'mode' {value!r} is not an octal permission string"
        raise ValidationError(msg) from None
    if not 0 <= mode <= 0o777:  # noqa: PLR2004
        msg = f"copy 'mode' {value!r} is out of range"
        raise ValidationError(msg)
    return mode


def _verify(path: str, expected: bytes) -> None:
    try:
        with open(path, "rb") as fh:
            actual = fh.read()
    except OSError as exc:
        msg = f"Cannot read back {path}: {exc}"
        raise DeployError(msg) from exc
    if actual != expected:
        msg = f"{path} does not match the source after copying"
        raise DeployError(msg, transient=True)

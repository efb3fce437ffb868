"""CertKeeper configuration loader.

Lifecycle::

    # 1. CLI creates the singleton (once, at startup)
    CertKeeperConfig(config_file="/etc/certkeeper/config.yaml")

    # 2. Any module retrieves it afterwards
    from certkeeper.config import get_config
    cfg = get_config()
    cfg.settings.scheduler.max_concurrent_renewals  # typed access

    # 3. Dynamic dot-path access (the config provider interface)
    cfg.get("caValidityPeriod.rootCA", default=3650)
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from croniter import croniter
from jsonschema import Draft202012Validator

from certkeeper.config.settings import CertKeeperSettings, build_settings

_SCHEMA_PATH = Path(__file__).parent / "schema.json"

_ENV_RE = re.compile(
    r"^\$\{([^}:]+?)(?::-(.*))?\}$",
    re.DOTALL,
)

_CLASS_PATH_RE = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)+$",
)

_CRON_FIELDS = 5

# Imported lazily to avoid circular imports at module-load time, but
# the constant is cached at the module level on first use.
_KNOWN_EVENT_KINDS: frozenset[str] | None = None


def _get_known_event_kinds() -> frozenset[str]:
    """Return the known event kind names, loading lazily."""
    global _KNOWN_EVENT_KINDS  # noqa: PLW0603
    if _KNOWN_EVENT_KINDS is None:
        from certkeeper.events.kinds import KNOWN_KINDS  # noqa: PLC0415

        _KNOWN_EVENT_KINDS = KNOWN_KINDS
    return _KNOWN_EVENT_KINDS


log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singleton reference
# ---------------------------------------------------------------------------
_instance: CertKeeperConfig | None = None


def get_config() -> CertKeeperConfig:
    """Return the initialised configuration singleton.

    Raises :class:`RuntimeError` if :class:`CertKeeperConfig` has not been
    created yet (i.e. the CLI entry point has not run).
    """
    if _instance is None:
        msg = (
            "Configuration not initialised. "
            "CertKeeperConfig must be created before calling get_config()."
        )
        raise RuntimeError(msg)
    return _instance


# ---------------------------------------------------------------------------
# Validation error collector
# ---------------------------------------------------------------------------


class ConfigValidationError(Exception):
    """Raised when schema or cross-field validation finds one or more problems."""

    def __init__(self, errors: list[str]) -> None:
        """Store *errors* and build a human-readable message."""
        self.errors = errors
        body = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{body}")


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def _resolve_value(value: str, path: str) -> str:
    """Replace ``${VAR}`` or ``${VAR:-default}`` with env var value."""
    match = _ENV_RE.match(value)
    if match is None:
        return value
    var_name = match.group(1)
    fallback = match.group(2)
    resolved = os.environ.get(var_name)
    if resolved is not None:
        return resolved
    if fallback is not None:
        return fallback
    raise ConfigValidationError(
        [
            f"Environment variable '${{{var_name}}}' referenced "
            f"at '{path}' is not set and has no default",
        ],
    )


def _resolve_env_vars(
    data: Any,  # noqa: ANN401
    path: str = "",
) -> None:
    """Walk *data* in-place and resolve ``${VAR}``/``${VAR:-default}`` strings."""
    if isinstance(data, dict):
        for key in data:
            child_path = f"{path}.{key}" if path else key
            if isinstance(data[key], str):
                data[key] = _resolve_value(data[key], child_path)
            elif isinstance(data[key], (dict, list)):
                _resolve_env_vars(data[key], child_path)
    elif isinstance(data, list):
        for idx, item in enumerate(data):
            child_path = f"{path}[{idx}]"
            if isinstance(item, str):
                data[idx] = _resolve_value(item, child_path)
            elif isinstance(item, (dict, list)):
                _resolve_env_vars(item, child_path)


def _load_file(config_file: Path) -> dict:
    try:
        text = config_file.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigValidationError([f"Cannot read {config_file}: {exc}"]) from exc
    try:
        if config_file.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigValidationError([f"Cannot parse {config_file}: {exc}"]) from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigValidationError([f"{config_file}: top level must be a mapping"])
    return data


def validate_cron(expression: str) -> str | None:
    """Return an error message if *expression* is not a five-field cron string."""
    if not isinstance(expression, str) or len(expression.split()) != _CRON_FIELDS:
        return f"'{expression}' is not a five-field cron expression"
    if not croniter.is_valid(expression):
        return f"'{expression}' is not a valid cron expression"
    return None


# ---------------------------------------------------------------------------
# Config class
# ---------------------------------------------------------------------------


class CertKeeperConfig:
    """Central configuration for the lifecycle engine.

    The JSON schema is bundled at ``config/schema.json``.  After
    construction the typed settings tree is available at
    :pyattr:`settings` and the resolved raw dict via :pyattr:`data` /
    :pymeth:`get`.

    Parameters
    ----------
    config_file:
        Path to the YAML/JSON configuration file.
    data:
        Already-parsed configuration mapping, used instead of
        *config_file* when embedding the engine.

    """

    def __init__(
        self,
        *,
        config_file: str | Path | None = None,
        data: dict | None = None,
    ) -> None:
        global _instance  # noqa: PLW0603

        if (config_file is None) == (data is None):
            msg = "Exactly one of config_file= or data= is required"
            raise ValueError(msg)

        self._config_file = Path(config_file) if config_file is not None else None
        raw = _load_file(self._config_file) if self._config_file else copy.deepcopy(data)

        # Env vars are resolved before schema validation so substituted
        # values are checked against enum constraints.
        _resolve_env_vars(raw)
        self._data: dict = raw

        self._validate_schema()
        self.additional_checks()

        self._settings: CertKeeperSettings = build_settings(self._data)
        _instance = self
        log.debug("Configuration loaded from %s", self._config_file or "<mapping>")

    @classmethod
    def reset(cls) -> None:
        """Forget the singleton (tests and reloads)."""
        global _instance  # noqa: PLW0603
        _instance = None

    # -- typed access -------------------------------------------------------

    @property
    def settings(self) -> CertKeeperSettings:
        """Fully-typed, frozen settings tree."""
        return self._settings

    @property
    def data(self) -> dict:
        return self._data

    @property
    def config_file(self) -> Path | None:
        return self._config_file

    def get(self, path: str, default: Any = None) -> Any:  # noqa: ANN401
        """Dot-path lookup over the resolved configuration data."""
        node: Any = self._data
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return copy.deepcopy(node)

    # -- validation ----------------------------------------------------------

    def _validate_schema(self) -> None:
        schema = json.loads(_SCHEMA_PATH.read_text(encoding="utf-8"))
        validator = Draft202012Validator(schema)
        errors = []
        for err in sorted(validator.iter_errors(self._data), key=lambda e: list(e.path)):
            location = ".".join(str(p) for p in err.absolute_path) or "<root>"
            errors.append(f"{location}: {err.message}")
        if errors:
            raise ConfigValidationError(errors)

    def additional_checks(self) -> None:
        """Semantic & cross-field validation, run after the schema passes."""
        errors: list[str] = []

        cron_error = validate_cron(self._data.get("renewalSchedule", "0 0 * * *"))
        if cron_error:
            errors.append(f"renewalSchedule: {cron_error}")

        validity = self._data.get("caValidityPeriod") or {}
        root = validity.get("rootCA", 3650)
        intermediate = validity.get("intermediateCA", 1825)
        standard = validity.get("standard", 365)
        if not root >= intermediate >= standard:
            errors.append(
                "caValidityPeriod: expected rootCA >= intermediateCA >= standard "
                f"(got {root}, {intermediate}, {standard})",
            )

        issuer = self._data.get("issuer") or {}
        if issuer.get("toolchain", "openssl") == "openssl" and not self._data.get(
            "opensslPath",
            "openssl",
        ):
            errors.append("opensslPath must not be empty when issuer.toolchain is 'openssl'")

        deployment = self._data.get("deployment") or {}
        if deployment.get("backoffInitialSeconds", 1) > deployment.get("backoffMaxSeconds", 60):
            errors.append("deployment.backoffInitialSeconds exceeds deployment.backoffMaxSeconds")

        smtp = self._data.get("smtp") or {}
        if smtp.get("enabled") and smtp.get("useTls", True) and smtp.get("useSsl", False):
            errors.append("smtp.useTls and smtp.useSsl are mutually exclusive")

        events = self._data.get("events") or {}
        known = _get_known_event_kinds()
        for idx, entry in enumerate(events.get("subscribers", [])):
            class_path = entry.get("classPath", "")
            if not _CLASS_PATH_RE.match(class_path):
                errors.append(
                    f"events.subscribers[{idx}].classPath '{class_path}' must be a dotted "
                    "'package.module.ClassName' path",
                )
            unknown = sorted(set(entry.get("events", [])) - known)
            if unknown:
                errors.append(
                    f"events.subscribers[{idx}] subscribes to unknown events {unknown}",
                )

        if errors:
            raise ConfigValidationError(errors)

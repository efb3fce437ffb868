"""Typed, frozen dataclasses for every configuration section.

This module is the **single source of truth** for default values.
JSON Schema defaults exist only for documentation; these builders
are what the engine actually reads.

Access pattern::

    from certkeeper.config import get_config

    sched = get_config().settings.scheduler
    print(sched.max_concurrent_renewals)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CAValiditySettings:
    """Default lifetimes in days per certificate class."""

    root_ca: int
    intermediate_ca: int
    standard: int


def _build_ca_validity(data: dict | None) -> CAValiditySettings:
    d = data or {}
    return CAValiditySettings(
        root_ca=d.get("rootCA", 3650),
        intermediate_ca=d.get("intermediateCA", 1825),
        standard=d.get("standard", 365),
    )


@dataclass(frozen=True)
class IssuerSettings:
    """Key generation and signing toolchain."""

    toolchain: str
    openssl_path: str
    timeout_seconds: int
    clock_skew_seconds: int
    clip_to_signer: bool
    default_key_algorithm: str
    default_key_size: int
    default_curve: str
    hash_algorithm: str


def _build_issuer(data: dict | None, openssl_path: str) -> IssuerSettings:
    d = data or {}
    return IssuerSettings(
        toolchain=d.get("toolchain", "openssl"),
        openssl_path=openssl_path,
        timeout_seconds=d.get("timeoutSeconds", 60),
        clock_skew_seconds=d.get("clockSkewSeconds", 300),
        clip_to_signer=d.get("clipToSigner", True),
        default_key_algorithm=d.get("defaultKeyAlgorithm", "rsa"),
        default_key_size=d.get("defaultKeySize", 2048),
        default_curve=d.get("defaultCurve", "P-256"),
        hash_algorithm=d.get("hashAlgorithm", "sha256"),
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SchedulerSettings:
    """Renewal scheduler and filesystem watcher."""

    enabled: bool
    schedule: str
    watch_files: bool
    max_concurrent_renewals: int
    shutdown_timeout_seconds: int
    watcher_debounce_ms: int
    recent_results: int
    lock_timeout_seconds: int


def _build_scheduler(
    data: dict | None,
    *,
    enabled: bool,
    schedule: str,
    watch_files: bool,
) -> SchedulerSettings:
    d = data or {}
    return SchedulerSettings(
        enabled=enabled,
        schedule=schedule,
        watch_files=watch_files,
        max_concurrent_renewals=d.get("maxConcurrentRenewals", 2),
        shutdown_timeout_seconds=d.get("shutdownTimeoutSeconds", 30),
        watcher_debounce_ms=d.get("watcherDebounceMs", 500),
        recent_results=d.get("recentResults", 50),
        lock_timeout_seconds=d.get("lockTimeoutSeconds", 120),
    )


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeploymentSettings:
    """Pipeline retry defaults and per-call deadlines."""

    max_attempts: int
    backoff_initial_seconds: float
    backoff_max_seconds: float
    network_timeout_seconds: int
    smtp_timeout_seconds: int
    templates_path: str | None


def _build_deployment(data: dict | None) -> DeploymentSettings:
    d = data or {}
    return DeploymentSettings(
        max_attempts=d.get("maxAttempts", 3),
        backoff_initial_seconds=float(d.get("backoffInitialSeconds", 1)),
        backoff_max_seconds=float(d.get("backoffMaxSeconds", 60)),
        network_timeout_seconds=d.get("networkTimeoutSeconds", 30),
        smtp_timeout_seconds=d.get("smtpTimeoutSeconds", 15),
        templates_path=d.get("templatesPath"),
    )


@dataclass(frozen=True)
class SmtpSettings:
    """Global SMTP defaults used by ``email`` actions."""

    enabled: bool
    host: str
    port: int
    username: str
    password: str
    use_tls: bool
    use_ssl: bool
    from_address: str


def _build_smtp(data: dict | None) -> SmtpSettings:
    d = data or {}
    return SmtpSettings(
        enabled=d.get("enabled", False),
        host=d.get("host", "localhost"),
        port=d.get("port", 587),
        username=d.get("username", ""),
        password=d.get("password", ""),
        use_tls=d.get("useTls", True),
        use_ssl=d.get("useSsl", False),
        from_address=d.get("fromAddress", "certkeeper@localhost"),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoggingSettings:
    level: str
    format: str
    activity_file: str | None
    activity_max_bytes: int
    activity_backup_count: int


def _build_logging(data: dict | None, *, json_output: bool) -> LoggingSettings:
    d = data or {}
    return LoggingSettings(
        level=d.get("level", "INFO"),
        format="json" if json_output else d.get("format", "text"),
        activity_file=d.get("activityFile"),
        activity_max_bytes=d.get("activityMaxBytes", 10 * 1024 * 1024),
        activity_backup_count=d.get("activityBackupCount", 5),
    )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SubscriberEntrySettings:
    """One event subscriber plugin loaded by class path."""

    class_path: str
    enabled: bool
    events: tuple[str, ...]
    config: dict


@dataclass(frozen=True)
class EventSettings:
    max_workers: int
    subscribers: tuple[SubscriberEntrySettings, ...]


def _build_events(data: dict | None) -> EventSettings:
    d = data or {}
    entries = []
    for entry in d.get("subscribers", []):
        entries.append(
            SubscriberEntrySettings(
                class_path=entry["classPath"],
                enabled=entry.get("enabled", True),
                events=tuple(entry.get("events", [])),
                config=entry.get("config", {}),
            ),
        )
    return EventSettings(
        max_workers=d.get("maxWorkers", 2),
        subscribers=tuple(entries),
    )


# ---------------------------------------------------------------------------
# Root settings aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CertKeeperSettings:
    store_dir: str
    master_key_path: str
    renew_days_before_expiry: int
    backup_retention_days: int
    ca_validity: CAValiditySettings
    issuer: IssuerSettings
    scheduler: SchedulerSettings
    deployment: DeploymentSettings
    smtp: SmtpSettings
    logging: LoggingSettings
    events: EventSettings


def build_settings(data: dict[str, Any]) -> CertKeeperSettings:
    """Build the full typed settings tree from raw config data.

    Called once during :class:`CertKeeperConfig` initialization after
    schema validation and environment-variable resolution.
    """
    store_dir = os.path.abspath(os.path.expanduser(data["storeDir"]))
    master_key_path = data.get("masterKeyPath") or os.path.join(store_dir, ".master.key")
    return CertKeeperSettings(
        store_dir=store_dir,
        master_key_path=os.path.abspath(os.path.expanduser(master_key_path)),
        renew_days_before_expiry=data.get("renewDaysBeforeExpiry", 30),
        backup_retention_days=data.get("backupRetention", 90),
        ca_validity=_build_ca_validity(data.get("caValidityPeriod")),
        issuer=_build_issuer(data.get("issuer"), data.get("opensslPath", "openssl")),
        scheduler=_build_scheduler(
            data.get("scheduler"),
            enabled=data.get("enableAutoRenewalJob", True),
            schedule=data.get("renewalSchedule", "0 0 * * *"),
            watch_files=data.get("enableFileWatch", True),
        ),
        deployment=_build_deployment(data.get("deployment")),
        smtp=_build_smtp(data.get("smtp")),
        logging=_build_logging(data.get("logging"), json_output=data.get("jsonOutput", False)),
        events=_build_events(data.get("events")),
    )

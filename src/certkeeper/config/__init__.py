"""Configuration subsystem for CertKeeper.

Public API::

    from certkeeper.config import get_config, CertKeeperConfig

    # At startup (CLI only):
    CertKeeperConfig(config_file="config.yaml")

    # Everywhere else:
    cfg = get_config()
    store = cfg.settings.store_dir            # typed access
    days = cfg.get("caValidityPeriod.rootCA")  # dynamic dot-path
"""

from certkeeper.config.certkeeper_config import (
    CertKeeperConfig,
    ConfigValidationError,
    get_config,
    validate_cron,
)
from certkeeper.config.settings import (
    CAValiditySettings,
    CertKeeperSettings,
    DeploymentSettings,
    EventSettings,
    IssuerSettings,
    LoggingSettings,
    SchedulerSettings,
    SmtpSettings,
    SubscriberEntrySettings,
    build_settings,
)

__all__ = [
    "CAValiditySettings",
    "CertKeeperConfig",
    "CertKeeperSettings",
    "ConfigValidationError",
    "DeploymentSettings",
    "EventSettings",
    "IssuerSettings",
    "LoggingSettings",
    "SchedulerSettings",
    "SmtpSettings",
    "SubscriberEntrySettings",
    "build_settings",
    "get_config",
    "validate_cron",
]

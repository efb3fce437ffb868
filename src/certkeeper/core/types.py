"""Enumerated types shared across the lifecycle engine.

All enums inherit from :class:`enum.StrEnum` so their ``.value`` is
the exact string stored in ``certificates.json`` and JSON round-trips
naturally.
"""

from __future__ import annotations

from enum import StrEnum

# ---------------------------------------------------------------------------
# Certificate
# ---------------------------------------------------------------------------


class CertificateType(StrEnum):
    ROOT_CA = "rootCA"
    INTERMEDIATE_CA = "intermediateCA"
    SERVER = "server"
    CLIENT = "client"
    MIXED = "mixed"

    @property
    def is_ca(self) -> bool:
        return self in (CertificateType.ROOT_CA, CertificateType.INTERMEDIATE_CA)


class KeyAlgorithm(StrEnum):
    RSA = "rsa"
    ECDSA = "ecdsa"


class SanMode(StrEnum):
    ACTIVE = "active"
    IDLE = "idle"


class RecordStatus(StrEnum):
    ACTIVE = "active"
    MISSING = "missing"


class SnapshotKind(StrEnum):
    BACKUP = "backup"
    VERSION = "version"


class ExportFormat(StrEnum):
    DER = "der"
    P12 = "p12"
    PEM = "pem"


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


class DeployActionType(StrEnum):
    COPY = "copy"
    NPM_UPDATE = "npm-update"
    DOCKER_RESTART = "docker-restart"
    FTP_UPLOAD = "ftp-upload"
    SFTP_UPLOAD = "sftp-upload"
    WEBHOOK = "webhook"
    EMAIL = "email"


class ActionOutcome(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReportStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    EMPTY = "empty"


class CredentialStatus(StrEnum):
    OK = "ok"
    INVALID = "invalid"


# ---------------------------------------------------------------------------
# Renewal
# ---------------------------------------------------------------------------


class RenewalState(StrEnum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RENEWING = "renewing"
    DEPLOYING = "deploying"
    FAILED = "failed"


class RenewalOutcome(StrEnum):
    RENEWED = "renewed"
    DEPLOY_PARTIAL = "deploy-partial"
    FAILED_RETRYABLE = "failed-retryable"
    FAILED_FATAL = "failed-fatal"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventKind(StrEnum):
    CERTIFICATE_CREATED = "certificate-created"
    CERTIFICATE_RENEWED = "certificate-renewed"
    CERTIFICATE_DELETED = "certificate-deleted"
    DEPLOYMENT_SUCCEEDED = "deployment-succeeded"
    DEPLOYMENT_FAILED = "deployment-failed"
    WATCHER_RELOAD = "watcher-reload"
    MASTER_KEY_ROTATED = "master-key-rotated"

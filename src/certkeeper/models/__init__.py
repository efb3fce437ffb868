"""Domain entities persisted in the certificate index."""

from certkeeper.models.certificate import (
    Certificate,
    CertificateConfig,
    CertPaths,
    PassphraseHandle,
    PreviousVersion,
    SanSet,
    Snapshot,
    Subject,
    Validity,
)
from certkeeper.models.deployment import (
    ActionResult,
    DeploymentAction,
    DeploymentReport,
    RetryPolicy,
)

__all__ = [
    "ActionResult",
    "CertPaths",
    "Certificate",
    "CertificateConfig",
    "DeploymentAction",
    "DeploymentReport",
    "PassphraseHandle",
    "PreviousVersion",
    "RetryPolicy",
    "SanSet",
    "Snapshot",
    "Subject",
    "Validity",
]

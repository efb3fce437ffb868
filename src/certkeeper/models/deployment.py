"""Deployment action entity and per-run report values."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime

from certkeeper.core.types import (
    ActionOutcome,
    CredentialStatus,
    DeployActionType,
    ReportStatus,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``backoff * 2**(attempt-1)`` capped at ``max_backoff``."""

    max_attempts: int = 3
    backoff: float = 1.0
    max_backoff: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the *attempt*-th failure (1-based)."""
        return min(self.backoff * (2 ** (attempt - 1)), self.max_backoff)

    def to_record(self) -> dict:
        return {
            "maxAttempts": self.max_attempts,
            "backoff": self.backoff,
            "maxBackoff": self.max_backoff,
        }

    @classmethod
    def from_record(cls, data: dict | None, *, defaults: RetryPolicy | None = None) -> RetryPolicy:
        base = defaults or cls()
        d = data or {}
        return cls(
            max_attempts=int(d.get("maxAttempts", base.max_attempts)),
            backoff=float(d.get("backoff", base.backoff)),
            max_backoff=float(d.get("maxBackoff", base.max_backoff)),
        )


_ACTION_KEYS = frozenset(
    {"id", "name", "enabled", "type", "config", "order", "retryPolicy", "credentialStatus"}
)


@dataclass(frozen=True)
class DeploymentAction:
    id: str
    type: DeployActionType
    name: str = ""
    enabled: bool = True
    order: int = 0
    config: dict = field(default_factory=dict)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    credential_status: CredentialStatus = CredentialStatus.OK
    extra: dict = field(default_factory=dict, compare=False)

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.order, self.id)

    def to_record(self) -> dict:
        record = copy.deepcopy(self.extra)
        record.update(
            {
                "id": self.id,
                "name": self.name,
                "enabled": self.enabled,
                "type": self.type.value,
                "config": copy.deepcopy(self.config),
                "order": self.order,
                "retryPolicy": self.retry_policy.to_record(),
                "credentialStatus": self.credential_status.value,
            },
        )
        return record

    @classmethod
    def from_record(cls, data: dict) -> DeploymentAction:
        return cls(
            id=str(data["id"]),
            type=DeployActionType(data["type"]),
            name=data.get("name", ""),
            enabled=data.get("enabled", True),
            order=int(data.get("order", 0)),
            config=copy.deepcopy(data.get("config") or {}),
            retry_policy=RetryPolicy.from_record(data.get("retryPolicy")),
            credential_status=CredentialStatus(
                data.get("credentialStatus", CredentialStatus.OK),
            ),
            extra={k: copy.deepcopy(v) for k, v in data.items() if k not in _ACTION_KEYS},
        )


@dataclass(frozen=True)
class ActionResult:
    """Terminal outcome of one action within a pipeline run."""

    id: str
    type: DeployActionType
    attempts: int
    outcome: ActionOutcome
    error: dict | None = None
    detail: str = ""

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": self.type.value,
            "attempts": self.attempts,
            "outcome": self.outcome.value,
        }
        if self.detail:
            data["detail"] = self.detail
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class DeploymentReport:
    fingerprint: str
    started_at: datetime
    ended_at: datetime
    actions: tuple[ActionResult, ...] = ()

    @property
    def status(self) -> ReportStatus:
        if not self.actions:
            return ReportStatus.EMPTY
        ok = sum(1 for a in self.actions if a.outcome == ActionOutcome.SUCCESS)
        if ok == len(self.actions):
            return ReportStatus.SUCCESS
        if ok == 0:
            return ReportStatus.FAILED
        return ReportStatus.PARTIAL

    def to_dict(self) -> dict:
        return {
            "fingerprint": self.fingerprint,
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat(),
            "status": self.status.value,
            "actions": [a.to_dict() for a in self.actions],
        }

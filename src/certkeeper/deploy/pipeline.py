"""Deployment pipeline: fan a committed certificate out to its actions.

Actions run one at a time in ``(order, id)`` order.  A failing action
never stops the ones after it; transient failures are retried with
exponential backoff up to the action's ``retryPolicy.maxAttempts``.
Every run produces a :class:`DeploymentReport` which is published as
``deployment-succeeded`` or ``deployment-failed``.

A run holds the store's lifecycle lock for the certificate, so it never
overlaps another run, a renewal or a SAN re-issue of the same
certificate.  The lock is keyed by the certificate directory, which is
stable across renewals, so a run started for a superseded fingerprint
waits for its successor's work too.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from certkeeper.core.errors import AuthError, CancelledError, CertKeeperError, DeployError
from certkeeper.core.locks import CancelToken
from certkeeper.core.types import ActionOutcome, EventKind, ReportStatus
from certkeeper.deploy.base import ActionAttempt, ActionContext
from certkeeper.deploy.registry import get_action_class
from certkeeper.deploy.renderer import TemplateRenderer
from certkeeper.deploy.tokens import NpmTokenCache
from certkeeper.logging import certificate_context
from certkeeper.logging.sanitize import sanitize_for_logs
from certkeeper.models.deployment import ActionResult, DeploymentReport

if TYPE_CHECKING:
    from collections.abc import Iterable

    from certkeeper.config.settings import CertKeeperSettings
    from certkeeper.events.bus import EventBus
    from certkeeper.models.certificate import Certificate
    from certkeeper.models.deployment import DeploymentAction
    from certkeeper.store.store import CertificateStore

log = logging.getLogger(__name__)


class DeploymentPipeline:
    """Run the deployment actions of certificates.

    Parameters
    ----------
    store:
        Source of certificates, revealed action configs and key
        passphrases; receives credential flags on :class:`AuthError`.
    settings:
        Engine settings (retry defaults, timeouts, SMTP, templates).
    events:
        Bus receiving one event per run.
    renderer / tokens:
        Shared email renderer and npm token cache (created when omitted).

    """

    def __init__(
        self,
        store: CertificateStore,
        settings: CertKeeperSettings,
        events: EventBus | None = None,
        *,
        renderer: TemplateRenderer | None = None,
        tokens: NpmTokenCache | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._events = events
        self._renderer = renderer or TemplateRenderer(settings.deployment.templates_path)
        self._tokens = tokens or NpmTokenCache()

    @property
    def tokens(self) -> NpmTokenCache:
        return self._tokens

    def run(
        self,
        fingerprint: str,
        *,
        actions: Iterable[str] | None = None,
        cancel: CancelToken | None = None,
        event: str = "deployment",
    ) -> DeploymentReport:
        """Deploy the live successor of *fingerprint*.

        Parameters
        ----------
        actions:
            Restrict the run to these action ids (still only enabled ones).
        event:
            Name of the event that caused the run, passed to webhooks
            and email templates.

        Raises
        ------
        NotFoundError
            If *fingerprint* does not resolve to a live certificate.
        CancelledError
            If *cancel* fires before the run starts.

        """
        cancel = cancel or CancelToken()
        cert = self._store.get_by_fingerprint(self._store.resolve(fingerprint))
        with self._store.lifecycle_lock(cert.fingerprint):
            cancel.raise_if_cancelled()
            # Another pipeline or a renewal may have moved the certificate on
            cert = self._store.get_by_fingerprint(self._store.resolve(cert.fingerprint))
            wanted = set(actions) if actions is not None else None
            selected = [
                a
                for a in sorted(cert.config.deploy_actions, key=lambda a: a.sort_key)
                if a.enabled and (wanted is None or a.id in wanted)
            ]

            started = datetime.now(UTC)
            results: list[ActionResult] = []
            with certificate_context(cert.fingerprint, cert.name):
                log.info("Deploying '%s' to %d action(s)", cert.name, len(selected))
                for action in selected:
                    cert = self._current(cert)
                    results.append(self._run_action(cert, action, cancel, event))
            report = DeploymentReport(
                fingerprint=cert.fingerprint,
                started_at=started,
                ended_at=datetime.now(UTC),
                actions=tuple(results),
            )

        self._publish(cert, report)
        return report

    def _current(self, cert: Certificate) -> Certificate:
        """Follow a supersession committed while earlier actions ran."""
        live = self._store.resolve(cert.fingerprint)
        if live == cert.fingerprint:
            return cert
        log.info("'%s' was superseded mid-deployment; continuing with %s", cert.name, live[:16])
        return self._store.get_by_fingerprint(live)

    def _context(
        self,
        cert: Certificate,
        action: DeploymentAction,
        cancel: CancelToken,
        event: str,
    ) -> ActionContext:
        deployment = self._settings.deployment
        return ActionContext(
            certificate=cert,
            action=action,
            config=self._store.reveal_action_config(cert.fingerprint, action.id),
            cancel=cancel,
            event=event,
            network_timeout=float(deployment.network_timeout_seconds),
            smtp_timeout=float(deployment.smtp_timeout_seconds),
            key_passphrase=self._store.key_passphrase(cert.fingerprint),
            smtp=self._settings.smtp,
            renderer=self._renderer,
            tokens=self._tokens,
        )

    def _run_action(
        self,
        cert: Certificate,
        action: DeploymentAction,
        cancel: CancelToken,
        event: str,
    ) -> ActionResult:
        """Execute *action* until success, a permanent error or retries run out."""
        policy = action.retry_policy
        attempts = 0
        attempt: ActionAttempt | None = None

        try:
            impl = get_action_class(action.type)()
            ctx = self._context(cert, action, cancel, event)
        except CertKeeperError as exc:
            log.error("Cannot prepare action '%s' (%s): %s", action.name, action.type.value, exc.detail)
            return ActionResult(
                id=action.id,
                type=action.type,
                attempts=0,
                outcome=ActionOutcome.FAILED,
                error=exc.to_dict(),
            )

        log.debug(
            "Running action '%s' (%s): %s",
            action.name,
            action.type.value,
            sanitize_for_logs(impl.describe(ctx.config)),
        )
        try:
            while attempts < policy.max_attempts:
                cancel.raise_if_cancelled()
                attempts += 1
                attempt = impl.execute(ctx)
                if attempt.ok or not attempt.transient or attempts >= policy.max_attempts:
                    break
                delay = policy.delay_for(attempts)
                log.warning(
                    "Action '%s' failed (attempt %d/%d), retrying in %.1fs: %s",
                    action.name,
                    attempts,
                    policy.max_attempts,
                    delay,
                    attempt.detail,
                )
                if cancel.wait(delay):
                    cancel.raise_if_cancelled()
        except CancelledError as exc:
            log.warning("Action '%s' cancelled after %d attempt(s)", action.name, attempts)
            return ActionResult(
                id=action.id,
                type=action.type,
                attempts=attempts,
                outcome=ActionOutcome.CANCELLED,
                error=exc.to_dict(),
            )

        if attempt is not None and attempt.ok:
            log.info("Action '%s' succeeded after %d attempt(s): %s", action.name, attempts, attempt.detail)
            return ActionResult(
                id=action.id,
                type=action.type,
                attempts=attempts,
                outcome=ActionOutcome.SUCCESS,
                detail=attempt.detail,
            )

        error = attempt.error if attempt is not None else DeployError("action did not run")
        if isinstance(error, AuthError):
            self._flag(cert, action)
        log.error(
            "Action '%s' failed after %d attempt(s): %s",
            action.name,
            attempts,
            error.detail,
            extra={"action_id": action.id, "transient": error.transient},
        )
        return ActionResult(
            id=action.id,
            type=action.type,
            attempts=attempts,
            outcome=ActionOutcome.FAILED,
            error=error.to_dict(),
        )

    def _flag(self, cert: Certificate, action: DeploymentAction) -> None:
        try:
            self._store.flag_credential(cert.fingerprint, action.id)
        except CertKeeperError as exc:
            log.warning("Could not flag credential of '%s': %s", action.name, exc.detail)

    def _publish(self, cert: Certificate, report: DeploymentReport) -> None:
        status = report.status
        if status in (ReportStatus.SUCCESS, ReportStatus.EMPTY):
            kind = EventKind.DEPLOYMENT_SUCCEEDED
            log.info("Deployment of '%s' finished: %s", cert.name, status.value)
        else:
            kind = EventKind.DEPLOYMENT_FAILED
            log.warning("Deployment of '%s' finished: %s", cert.name, status.value)
        if self._events is not None:
            payload = report.to_dict()
            payload["name"] = cert.name
            self._events.publish(kind, payload)

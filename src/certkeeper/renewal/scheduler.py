"""Renewal scheduler.

Decides when certificates must be renewed and drives store, issuer and
deployment pipeline for each of them.  Three triggers feed it:

- the :class:`~certkeeper.renewal.cron.CronTrigger` periodic tick;
- :meth:`RenewalScheduler.run_now` (operator initiated full scan);
- the :class:`~certkeeper.renewal.watcher.CertificateWatcher`.

Each certificate moves through ``idle → scheduled → renewing →
deploying → idle`` (or ``failed``), enforced by
:data:`certkeeper.core.state.RENEWAL_TRANSITIONS`.  Renewals run on a
bounded thread pool; the scheduler thread itself only decides.
"""

from __future__ import annotations

import collections
import contextlib
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from certkeeper.app.shutdown import ShutdownCoordinator
from certkeeper.core.errors import (
    CancelledError,
    CertKeeperError,
    DecryptError,
    NotFoundError,
    ValidationError,
)
from certkeeper.core.locks import CancelToken
from certkeeper.core.state import assert_transition, log_transition
from certkeeper.core.types import CertificateType, RecordStatus, RenewalOutcome, RenewalState, ReportStatus
from certkeeper.logging import certificate_context
from certkeeper.renewal.cron import CronTrigger
from certkeeper.renewal.watcher import CertificateWatcher

if TYPE_CHECKING:
    from collections.abc import Callable

    from certkeeper.config.settings import CertKeeperSettings
    from certkeeper.deploy.pipeline import DeploymentPipeline
    from certkeeper.events.bus import EventBus
    from certkeeper.models.certificate import Certificate
    from certkeeper.models.deployment import DeploymentReport
    from certkeeper.store.store import CertificateStore

log = logging.getLogger(__name__)

# Errors the next tick cannot fix by trying again
_FATAL_ERRORS = (ValidationError, NotFoundError, DecryptError)


@dataclass(frozen=True)
class RenewalResult:
    """Terminal outcome of one scheduled renewal."""

    fingerprint: str
    name: str
    outcome: RenewalOutcome
    at: datetime
    new_fingerprint: str | None = None
    error: dict | None = None
    report: DeploymentReport | None = None

    def to_dict(self) -> dict:
        data = {
            "fingerprint": self.fingerprint,
            "name": self.name,
            "outcome": self.outcome.value,
            "at": self.at.isoformat(),
        }
        if self.new_fingerprint:
            data["newFingerprint"] = self.new_fingerprint
        if self.error is not None:
            data["error"] = self.error
        if self.report is not None:
            data["deployment"] = self.report.status.value
        return data


def needs_renewal(cert: Certificate, now: datetime, *, force_all: bool = False) -> bool:
    """Renew when ``now + renewDaysBeforeExpiry >= notAfter`` and auto-renew is on."""
    if force_all:
        return True
    if not cert.config.auto_renew:
        return False
    return now + timedelta(days=cert.config.renew_days_before_expiry) >= cert.validity.not_after


def is_orphan(cert: Certificate) -> bool:
    """A non-root certificate whose issuer is not in the store."""
    return cert.type != CertificateType.ROOT_CA and cert.issuer_fingerprint is None


class RenewalScheduler:
    """Own the renewal state machine and its worker pool.

    Parameters
    ----------
    store / pipeline:
        Collaborators driven by each renewal.
    settings:
        Engine settings; the ``scheduler`` section sizes the pool and
        the shutdown grace period.
    events:
        Passed on to the file watcher for logging only; renewals and
        deployments publish through the store and pipeline.
    coordinator:
        Tracks in-flight work for graceful shutdown.
    clock:
        Returns the current UTC time; replaced in tests.

    """

    def __init__(
        self,
        store: CertificateStore,
        pipeline: DeploymentPipeline,
        settings: CertKeeperSettings,
        events: EventBus | None = None,
        *,
        coordinator: ShutdownCoordinator | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._settings = settings
        self._events = events
        sched = settings.scheduler
        self._coordinator = coordinator or ShutdownCoordinator(sched.shutdown_timeout_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cancel = CancelToken()
        self._lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._states: dict[str, RenewalState] = {}
        self._pending: set[Future] = set()
        self._recent: collections.deque[RenewalResult] = collections.deque(maxlen=sched.recent_results)
        self._last_run: datetime | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._cron = CronTrigger(sched.schedule, self.tick)
        self._watcher: CertificateWatcher | None = None
        self._stopped = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def cancel_token(self) -> CancelToken:
        return self._cancel

    @property
    def cron(self) -> CronTrigger:
        return self._cron

    @property
    def watcher(self) -> CertificateWatcher | None:
        return self._watcher

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._settings.scheduler.max_concurrent_renewals,
                    thread_name_prefix="certkeeper-renewal",
                )
            return self._executor

    def start(self) -> None:
        """Start the cron trigger and file watcher as configured."""
        sched = self._settings.scheduler
        self._pool()
        if sched.enabled:
            self._cron.start()
        else:
            log.info("Automatic renewal job disabled")
        if sched.watch_files:
            self.restart_watcher()

    def stop(self, timeout: float | None = None) -> bool:
        """Stop triggers, drop queued work and wait for in-flight work.

        In-flight renewals get up to *timeout* (default
        ``shutdownTimeoutSeconds``) to finish; after that they are
        cancelled and any unfinished issuance removes its working
        directory.

        Returns
        -------
        bool
            ``True`` if all work finished within the grace period.

        """
        if self._stopped:
            return True
        self._stopped = True
        self._cron.stop()
        if self._watcher is not None:
            self._watcher.stop()

        with self._lock:
            pending = list(self._pending)
            executor = self._executor
        dropped = sum(1 for f in pending if f.cancel())
        if dropped:
            log.info("Dropped %d queued renewal(s)", dropped)

        drained = self._coordinator.initiate(timeout)
        if not drained:
            self._cancel.cancel("shutdown timeout")
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=True)
        log.info("Renewal scheduler stopped")
        return drained

    def restart_watcher(self) -> None:
        """(Re)create the file watcher over the current store directories."""
        if self._watcher is not None:
            self._watcher.stop()
        self._watcher = CertificateWatcher(
            self._store,
            root=self._store.layout.root,
            debounce_ms=self._settings.scheduler.watcher_debounce_ms,
            on_superseded=self._on_superseded,
            on_missing=self._on_missing,
        )
        self._watcher.start()

    def reschedule(self, expression: str) -> None:
        """Atomically switch the cron expression; raises ``ValidationError``."""
        self._cron.reschedule(expression)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict:
        """``{enabled, schedule, lastRun, nextRun, inFlight, recentResults}``."""
        next_run = self._cron.next_run
        with self._lock:
            in_flight = sorted(
                fp
                for fp, state in self._states.items()
                if state in (RenewalState.SCHEDULED, RenewalState.RENEWING, RenewalState.DEPLOYING)
            )
            return {
                "enabled": self._settings.scheduler.enabled,
                "schedule": self._cron.expression,
                "lastRun": self._last_run.isoformat() if self._last_run else None,
                "nextRun": next_run.isoformat() if next_run else None,
                "inFlight": in_flight,
                "recentResults": [r.to_dict() for r in reversed(self._recent)],
            }

    def state_of(self, fingerprint: str) -> RenewalState:
        with self._lock:
            return self._states.get(fingerprint, RenewalState.IDLE)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, fingerprint: str, target: RenewalState, reason: str | None = None) -> None:
        with self._lock:
            current = self._states.get(fingerprint, RenewalState.IDLE)
            assert_transition(current, target)
            if target == RenewalState.IDLE:
                self._states.pop(fingerprint, None)
            else:
                self._states[fingerprint] = target
        log_transition(fingerprint, current, target, reason=reason)

    def _claim(self, fingerprint: str) -> bool:
        """Move *fingerprint* to ``scheduled`` unless it is already in flight."""
        with self._lock:
            current = self._states.get(fingerprint, RenewalState.IDLE)
            if current not in (RenewalState.IDLE, RenewalState.FAILED):
                return False
            self._states[fingerprint] = RenewalState.SCHEDULED
        log_transition(fingerprint, current, RenewalState.SCHEDULED)
        return True

    def _record(self, result: RenewalResult) -> RenewalResult:
        with self._lock:
            self._recent.append(result)
        return result

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """Cron callback: scan with the renewal policy."""
        self.run_now(force_all=False)

    def candidates(self, *, force_all: bool = False) -> list[Certificate]:
        """Certificates due for renewal, soonest expiry first."""
        now = self._clock()
        due = []
        for cert in self._store.list():
            if is_orphan(cert):
                log.debug("Skipping '%s': issuer unknown to the store", cert.name)
                continue
            if needs_renewal(cert, now, force_all=force_all):
                due.append(cert)
        due.sort(key=lambda c: c.validity.not_after)
        return due

    def run_now(self, force_all: bool = False, *, wait_for: bool = True) -> list[RenewalResult]:  # noqa: FBT001, FBT002
        """Scan the store and renew every due certificate (``checkAll``).

        Certificates already in flight are skipped.  With *wait_for*
        the call blocks until the submitted renewals finish and returns
        their results; otherwise it returns an empty list.
        """
        if self._stopped:
            log.warning("Scheduler stopped; ignoring scan request")
            return []
        with self._scan_lock:
            with self._lock:
                self._last_run = self._clock()
                # Failures of earlier ticks are reconsidered now
                for fp, state in list(self._states.items()):
                    if state == RenewalState.FAILED:
                        del self._states[fp]
            due = self.candidates(force_all=force_all)
            log.info("Renewal scan: %d certificate(s) due (forceAll=%s)", len(due), force_all)
            futures = [f for f in (self.submit(cert.fingerprint, reason="scheduled") for cert in due) if f]

        if not wait_for:
            return []
        wait(futures)
        return [f.result() for f in futures if not f.cancelled()]

    def submit(self, fingerprint: str, *, reason: str = "manual") -> Future[RenewalResult] | None:
        """Queue one renewal; ``None`` if the certificate is already in flight."""
        if not self._claim(fingerprint):
            log.debug("Renewal of %s already in flight", fingerprint[:16])
            return None
        try:
            future = self._pool().submit(self._renew_one, fingerprint, reason)
        except RuntimeError:
            self._transition(fingerprint, RenewalState.IDLE, "executor shut down")
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def deploy(self, fingerprint: str, *, event: str) -> Future[DeploymentReport] | None:
        """Run the deployment pipeline of *fingerprint* on the worker pool.

        The certificate is ``deploying`` until the run ends, so a renewal
        submitted meanwhile is refused.  ``None`` if the scheduler is
        stopped or the certificate is already in flight.
        """
        if self._stopped:
            return None
        with contextlib.suppress(NotFoundError):
            fingerprint = self._store.resolve(fingerprint)
        with self._lock:
            current = self._states.get(fingerprint, RenewalState.IDLE)
            if current not in (RenewalState.IDLE, RenewalState.FAILED):
                log.debug("Deployment of %s skipped: %s", fingerprint[:16], current.value)
                return None
            self._states[fingerprint] = RenewalState.DEPLOYING
        log_transition(fingerprint, current, RenewalState.DEPLOYING, reason=event)

        def job() -> DeploymentReport:
            with self._coordinator.track(f"deploy {fingerprint[:16]}"):
                try:
                    report = self._pipeline.run(fingerprint, cancel=self._cancel, event=event)
                except Exception as exc:
                    self._transition(fingerprint, RenewalState.FAILED, str(exc))
                    raise
                self._transition(fingerprint, RenewalState.IDLE, f"deployment {report.status.value}")
                return report

        try:
            future = self._pool().submit(job)
        except RuntimeError:
            self._transition(fingerprint, RenewalState.IDLE, "executor shut down")
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _renew_one(self, fingerprint: str, reason: str) -> RenewalResult:
        """Worker body: renew, then deploy; never raises."""
        name = fingerprint[:16]
        with self._coordinator.track(f"renew {name}"):
            if self._cancel.cancelled:
                self._transition(fingerprint, RenewalState.IDLE, "cancelled before start")
                return self._record(
                    RenewalResult(fingerprint, name, RenewalOutcome.SKIPPED, self._clock()),
                )
            try:
                cert = self._store.get_by_fingerprint(fingerprint)
                name = cert.name
            except CertKeeperError:
                cert = None

            with certificate_context(fingerprint, name):
                try:
                    renewed = self._store.renew(
                        fingerprint,
                        cancel=self._cancel,
                        on_locked=lambda: self._transition(fingerprint, RenewalState.RENEWING, reason),
                    )
                except CancelledError as exc:
                    return self._fail(fingerprint, name, exc, RenewalOutcome.SKIPPED)
                except _FATAL_ERRORS as exc:
                    return self._fail(fingerprint, name, exc, RenewalOutcome.FAILED_FATAL)
                except CertKeeperError as exc:
                    return self._fail(fingerprint, name, exc, RenewalOutcome.FAILED_RETRYABLE)
                except Exception as exc:
                    log.exception("Unexpected error renewing '%s'", name)
                    return self._fail(fingerprint, name, CertKeeperError(str(exc)), RenewalOutcome.FAILED_FATAL)

                if self.state_of(fingerprint) == RenewalState.SCHEDULED:
                    # A concurrent caller renewed it while we waited for the lock
                    self._transition(fingerprint, RenewalState.RENEWING, "completed concurrently")
                self._move(fingerprint, renewed.fingerprint)
                try:
                    report = self._pipeline.run(
                        renewed.fingerprint,
                        cancel=self._cancel,
                        event="certificate-renewed",
                    )
                except CertKeeperError as exc:
                    log.error("Deployment of '%s' could not start: %s", name, exc.detail)
                    self._transition(renewed.fingerprint, RenewalState.FAILED, exc.detail)
                    return self._record(
                        RenewalResult(
                            fingerprint,
                            name,
                            RenewalOutcome.DEPLOY_PARTIAL,
                            self._clock(),
                            new_fingerprint=renewed.fingerprint,
                            error=exc.to_dict(),
                        ),
                    )

            self._transition(renewed.fingerprint, RenewalState.IDLE, f"deployment {report.status.value}")
            outcome = (
                RenewalOutcome.RENEWED
                if report.status in (ReportStatus.SUCCESS, ReportStatus.EMPTY)
                else RenewalOutcome.DEPLOY_PARTIAL
            )
            return self._record(
                RenewalResult(
                    fingerprint,
                    name,
                    outcome,
                    self._clock(),
                    new_fingerprint=renewed.fingerprint,
                    report=report,
                ),
            )

    def _move(self, old: str, new: str) -> None:
        """Carry the in-flight state over to the renewed fingerprint as ``deploying``."""
        with self._lock:
            current = self._states.pop(old, RenewalState.RENEWING)
            assert_transition(current, RenewalState.DEPLOYING)
            self._states[new] = RenewalState.DEPLOYING
        log_transition(new, current, RenewalState.DEPLOYING, reason=f"renewed from {old[:16]}")

    def _fail(
        self,
        fingerprint: str,
        name: str,
        exc: CertKeeperError,
        outcome: RenewalOutcome,
    ) -> RenewalResult:
        if outcome == RenewalOutcome.SKIPPED:
            log.warning("Renewal of '%s' cancelled", name)
        else:
            log.error("Renewal of '%s' failed (%s): %s", name, outcome.value, exc.detail)
        self._transition(fingerprint, RenewalState.FAILED, exc.detail)
        return self._record(
            RenewalResult(fingerprint, name, outcome, self._clock(), error=exc.to_dict()),
        )

    # ------------------------------------------------------------------
    # Watcher callbacks
    # ------------------------------------------------------------------

    def _on_superseded(self, fingerprint: str) -> None:
        log.info("Certificate %s changed on disk; redeploying", fingerprint[:16])
        self.deploy(fingerprint, event="watcher-reload")

    def _on_missing(self, fingerprint: str) -> None:
        try:
            cert = self._store.get_by_fingerprint(fingerprint)
        except NotFoundError:
            return
        if cert.status != RecordStatus.MISSING or not cert.config.auto_renew:
            return
        log.warning("Files of '%s' disappeared; attempting renewal", cert.name)
        self.submit(fingerprint, reason="files missing")

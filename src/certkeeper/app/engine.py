"""Engine: the explicitly constructed set of collaborators.

:meth:`Engine.from_settings` builds keyring, vault, event bus, issuer,
store, deployment pipeline and renewal scheduler, wiring them together
without module-level singletons.  Tests usually construct the pieces
individually instead.

Startup order matters: the store index is loaded before the master
keyring so that a missing keyring can be told apart from a fresh store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from certkeeper.app.shutdown import ShutdownCoordinator
from certkeeper.ca.issuer import Issuer
from certkeeper.ca.registry import load_toolchain
from certkeeper.config.settings import CertKeeperSettings
from certkeeper.core.errors import CertKeeperError, DecryptError, StartupError, StoreIOError
from certkeeper.core.types import EventKind
from certkeeper.deploy.pipeline import DeploymentPipeline
from certkeeper.events.bus import EventBus
from certkeeper.renewal.scheduler import RenewalScheduler
from certkeeper.store.layout import StoreLayout
from certkeeper.store.store import CertificateStore
from certkeeper.vault.keyring import MasterKeyring
from certkeeper.vault.service import KeyEncryptionService

log = logging.getLogger(__name__)


def open_keyring(keyring: MasterKeyring, store: CertificateStore) -> None:
    """Load the master keyring, creating it only for a store without handles.

    Raises
    ------
    StartupError
        Exit code 3 when the file is missing but wrapped secrets exist;
        exit code 1 when it exists but cannot be read.

    """
    if not keyring.exists():
        if store.has_handles():
            msg = (
                f"Master key file {keyring.path} is missing but the store holds "
                "encrypted secrets; restore the file from backup"
            )
            raise StartupError(msg, exit_code=StartupError.EXIT_MASTER_KEY_MISSING)
        keyring.create()
        return
    try:
        keyring.load()
    except (DecryptError, StoreIOError) as exc:
        raise StartupError(exc.detail, exit_code=StartupError.EXIT_CONFIG) from exc

    unknown = store.referenced_key_versions() - set(keyring.versions)
    if unknown:
        msg = f"Store references master key version(s) {sorted(unknown)} absent from {keyring.path}"
        raise StartupError(msg, exit_code=StartupError.EXIT_MASTER_KEY_MISSING)


@dataclass
class Engine:
    """Running certificate lifecycle engine."""

    settings: CertKeeperSettings
    keyring: MasterKeyring
    vault: KeyEncryptionService
    events: EventBus
    issuer: Issuer
    store: CertificateStore
    pipeline: DeploymentPipeline
    scheduler: RenewalScheduler
    coordinator: ShutdownCoordinator

    @classmethod
    def from_settings(cls, settings: CertKeeperSettings) -> Engine:
        """Build and load every component.

        Raises
        ------
        StartupError
            Corrupt index (exit code 2), missing master key (3) or an
            unusable toolchain (1).

        """
        events = EventBus(settings.events)
        try:
            toolchain = load_toolchain(settings.issuer)
        except CertKeeperError as exc:
            events.shutdown(wait=False)
            raise StartupError(exc.detail, exit_code=StartupError.EXIT_CONFIG) from exc

        keyring = MasterKeyring(settings.master_key_path)
        vault = KeyEncryptionService(keyring)
        issuer = Issuer(settings.issuer, toolchain, StoreLayout(settings.store_dir).work_root)
        store = CertificateStore(
            settings,
            issuer=issuer,
            vault=vault,
            events=events,
        )
        try:
            store.load()
            open_keyring(keyring, store)
        except StoreIOError as exc:
            events.shutdown(wait=False)
            raise StartupError(exc.detail, exit_code=StartupError.EXIT_CONFIG) from exc
        except StartupError:
            events.shutdown(wait=False)
            raise
        vault.register_owner(store)
        vault.on_rotated(
            lambda version: events.publish(EventKind.MASTER_KEY_ROTATED, {"keyVersion": version}),
        )

        coordinator = ShutdownCoordinator(settings.scheduler.shutdown_timeout_seconds)
        pipeline = DeploymentPipeline(store, settings, events)
        scheduler = RenewalScheduler(store, pipeline, settings, events, coordinator=coordinator)
        return cls(
            settings=settings,
            keyring=keyring,
            vault=vault,
            events=events,
            issuer=issuer,
            store=store,
            pipeline=pipeline,
            scheduler=scheduler,
            coordinator=coordinator,
        )

    def start(self) -> None:
        """Reconcile the store with the disk, prune backups and start triggers."""
        changes = self.store.refresh_from_disk()
        if changes:
            log.info("Startup reconciliation applied %d change(s)", len(changes))
        pruned = self.store.prune_backups()
        if pruned:
            log.info("Pruned %d expired backup(s)", pruned)
        self.scheduler.start()
        log.info("CertKeeper engine started (store=%s)", self.settings.store_dir)

    def shutdown(self) -> bool:
        """Stop the scheduler (graceful, then cancelling) and the event bus."""
        drained = self.scheduler.stop()
        self.events.drain(timeout=5)
        self.events.shutdown()
        log.info("CertKeeper engine stopped")
        return drained

    def run_forever(self) -> None:
        """Start, block until SIGTERM/SIGINT, then shut down."""
        self.coordinator.register_signals()
        self.start()
        try:
            while not self.coordinator.wait_for_request(timeout=1.0):
                pass
        finally:
            self.shutdown()


"""Certificate store: the single source of truth for managed certificates.

The store owns the in-memory index, the ``certificates.json`` file and
the per-certificate directories.  Every mutation follows the same
discipline:

1. build the new index state as a fresh dict (the current one is never
   mutated in place);
2. write it with :meth:`IndexFile.write` (temp sibling, fsync, rename);
3. only then swap it in as the live state.

Mutations serialise on a store-wide :class:`threading.RLock`; lifecycle
work on one certificate (renew, delete, restore, SAN re-issue and
deployment) also holds :meth:`CertificateStore.lifecycle_lock`.  Reads return
deep copies, so callers always see a consistent snapshot.
"""

from __future__ import annotations

import copy
import logging
import os
import shutil
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from certkeeper.ca.base import SignerRef
from certkeeper.ca.convert import build_bundle, export_to, read_pem
from certkeeper.ca.parsing import load_certificate, load_private_key, public_key_matches
from certkeeper.ca.requests import IssuanceRequest, classify_san, validate_name
from certkeeper.core.errors import (
    CertKeeperError,
    ConflictError,
    InUseError,
    IssuerError,
    NotFoundError,
    StartupError,
    StoreIOError,
    ValidationError,
)
from certkeeper.core.fileio import atomic_write_bytes
from certkeeper.core.locks import KeyedLock
from certkeeper.core.types import (
    CertificateType,
    CredentialStatus,
    DeployActionType,
    EventKind,
    ExportFormat,
    RecordStatus,
    SanMode,
    SnapshotKind,
)
from certkeeper.deploy.registry import get_action_class
from certkeeper.logging.setup import certificate_context
from certkeeper.models.certificate import (
    Certificate,
    CertificateConfig,
    PreviousVersion,
    SanSet,
    Snapshot,
    Subject,
    Validity,
)
from certkeeper.models.deployment import DeploymentAction, RetryPolicy
from certkeeper.store import snapshots
from certkeeper.store.index import IndexFile
from certkeeper.store.layout import (
    CERT_FILE,
    CHAIN_FILE,
    CSR_FILE,
    DER_FILE,
    FULLCHAIN_FILE,
    KEY_FILE,
    P12_FILE,
    StoreLayout,
    paths_in,
)
from certkeeper.store.reconcile import (
    CHANGE_MISSING,
    CHANGE_NEW,
    CHANGE_RESTORED,
    CHANGE_SUPERSEDED,
    FingerprintCache,
    ReconcileChange,
    key_is_encrypted,
)
from certkeeper.vault.masking import (
    find_plaintext_secrets,
    iter_handles,
    mask_secrets,
    merge_secrets,
    replace_handles,
    reveal_secrets,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Generator, Iterable

    from certkeeper.ca.issuer import IssuedMaterial, Issuer
    from certkeeper.ca.parsing import ParsedCertificate
    from certkeeper.config.settings import CertKeeperSettings
    from certkeeper.core.locks import CancelToken
    from certkeeper.events.bus import EventBus
    from certkeeper.models.certificate import PassphraseHandle
    from certkeeper.vault.service import KeyEncryptionService

log = logging.getLogger(__name__)

_CONFIG_BOOL_KEYS = ("autoRenew", "backupOnRenew", "passphraseProtected")
_MAX_RENEW_DAYS = 3650
_MAX_VALIDITY_DAYS = 36500
_MAX_ATTEMPTS = 20


class CertificateStore:
    """Index, persist, mutate and query certificates.

    Parameters
    ----------
    settings:
        Full engine settings (store dir, defaults, timeouts).
    issuer:
        Issuer used by :meth:`create` and :meth:`renew`.
    vault:
        Key-encryption service for passphrases and action secrets.
    events:
        Optional event bus receiving lifecycle events.

    """

    def __init__(
        self,
        settings: CertKeeperSettings,
        *,
        issuer: Issuer,
        vault: KeyEncryptionService,
        events: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._issuer = issuer
        self._vault = vault
        self._events = events
        self._layout = StoreLayout(settings.store_dir)
        self._index = IndexFile(self._layout.index_path)
        self._lock = threading.RLock()
        self._lifecycle_locks = KeyedLock("certificate lock")
        self._fingerprints = FingerprintCache()
        self._records: dict[str, Certificate] = {}
        self._superseded: dict[str, str] = {}
        self._loaded = False

    @property
    def layout(self) -> StoreLayout:
        return self._layout

    @contextmanager
    def lifecycle_lock(
        self,
        fingerprint: str,
        *,
        timeout: float | None = None,
    ) -> Generator[bool, None, None]:
        """Hold the per-certificate lock shared with the deployment pipeline.

        Keyed by certificate directory, which survives supersession, so a
        stale fingerprint and its successor contend for the same entry.
        Yields ``False`` when the caller had to wait.

        Raises
        ------
        NotFoundError
            *fingerprint* does not resolve to a known certificate.
        InUseError
            The lock was not obtained within *timeout* seconds.

        """
        with self._lock:
            directory = self._records[self.resolve(fingerprint)].directory
        with self._lifecycle_locks.hold(directory, timeout=timeout) as uncontended:
            yield uncontended

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Read the index from disk.

        Raises
        ------
        StartupError
            With exit code 2 when the index is corrupt.

        """
        self._layout.ensure()
        stale = self._layout.clean_work()
        if stale:
            log.warning("Removed %d stale working director(ies)", stale)
        raw = self._index.load()
        records = {}
        for fingerprint, data in raw.items():
            try:
                records[fingerprint] = Certificate.from_record(
                    fingerprint,
                    data,
                    default_renew_days=self._settings.renew_days_before_expiry,
                )
            except (KeyError, ValueError, TypeError) as exc:
                msg = f"Index entry {fingerprint[:16]} is malformed: {exc}"
                raise StartupError(msg, exit_code=StartupError.EXIT_CORRUPT_INDEX) from exc
        with self._lock:
            self._records = records
            self._superseded = self._supersession_map(records)
            self._loaded = True
        log.info("Certificate store loaded: %d certificate(s)", len(records))
        return len(records)

    @staticmethod
    def _supersession_map(records: dict[str, Certificate]) -> dict[str, str]:
        edges: dict[str, str] = {}
        for fingerprint, cert in records.items():
            for previous in cert.previous_versions:
                if previous.fingerprint not in records:
                    edges[previous.fingerprint] = fingerprint
        return edges

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _emit(self, kind: EventKind, payload: dict) -> None:
        if self._events is not None:
            self._events.publish(kind, payload)

    def _commit(self, records: dict[str, Certificate]) -> None:
        """Persist *records* and make them the live state."""
        with self._lock:
            self._index.write({fp: cert.to_record() for fp, cert in records.items()})
            self._records = records
            self._superseded = self._supersession_map(records)

    def _live(self, fingerprint: str) -> Certificate:
        cert = self._records.get(fingerprint)
        if cert is None:
            successor = self._superseded.get(fingerprint)
            if successor:
                msg = f"Certificate {fingerprint[:16]} was superseded by {successor[:16]}"
            else:
                msg = f"Certificate {fingerprint[:16]} not found"
            raise NotFoundError(msg)
        return cert

    def _active(self, fingerprint: str) -> Certificate:
        cert = self._live(fingerprint)
        if cert.status != RecordStatus.ACTIVE:
            msg = f"Certificate '{cert.name}' is missing from disk"
            raise NotFoundError(msg)
        return cert

    def _renewable(self, fingerprint: str) -> Certificate:
        """Like :meth:`_active`, but a missing leaf may be reissued with a new key."""
        cert = self._live(fingerprint)
        if cert.status == RecordStatus.ACTIVE:
            return cert
        if cert.is_ca and not os.path.isfile(cert.paths.key):
            msg = f"CA '{cert.name}' lost its private key and cannot be renewed"
            raise NotFoundError(msg)
        return cert

    def _check_fingerprint(self, cert: Certificate) -> Certificate:
        """Re-derive the fingerprint of *cert* from its file."""
        if cert.status != RecordStatus.ACTIVE:
            return cert
        try:
            parsed = self._fingerprints.parse(cert.paths.crt)
        except IssuerError:
            log.warning("Certificate file of '%s' does not parse", cert.name)
            return cert
        if parsed is None or parsed.fingerprint == cert.fingerprint:
            return cert
        change = self._supersede_external(cert, parsed)
        return self._records[change.fingerprint]

    def _name_taken(self, name: str, *, exclude: str | None = None) -> bool:
        return any(
            c.name == name and fp != exclude and c.status == RecordStatus.ACTIVE
            for fp, c in self._records.items()
        )

    def _wrap(self, fingerprint: str | None) -> Callable[[str], PassphraseHandle]:
        return lambda secret: self._vault.wrap(secret, fingerprint=fingerprint)

    def _signer_for(self, issuer_fingerprint: str) -> tuple[Certificate, SignerRef]:
        try:
            ca = self._active(self.resolve(issuer_fingerprint))
        except NotFoundError as exc:
            msg = f"Signing CA {issuer_fingerprint[:16]} is not in the store"
            raise IssuerError(msg) from exc
        if not ca.is_ca:
            msg = f"Certificate '{ca.name}' is not a CA"
            raise IssuerError(msg)
        passphrase = None
        if ca.passphrase is not None:
            passphrase = self._vault.unwrap(ca.passphrase)
        elif ca.needs_passphrase:
            msg = f"Key of CA '{ca.name}' is encrypted but no passphrase is stored"
            raise IssuerError(msg)
        parsed = load_certificate(ca.paths.crt)
        return ca, SignerRef(
            cert_path=ca.paths.crt,
            key_path=ca.paths.key,
            certificate=parsed.certificate,
            passphrase=passphrase,
        )

    def _chain_bytes(self, signer: Certificate | None) -> bytes:
        """Issuer chain for a certificate signed by *signer*."""
        if signer is None:
            return b""
        parts = [read_pem(signer.paths.crt)]
        if signer.paths.chain and os.path.isfile(signer.paths.chain):
            parts.append(read_pem(signer.paths.chain))
        return build_bundle(*parts)

    def _install(self, material: IssuedMaterial, directory: str, chain: bytes) -> None:
        """Move verified material into *directory*; ``cert.crt`` goes last."""
        try:
            os.makedirs(directory, mode=0o700, exist_ok=True)
            os.replace(material.key_path, os.path.join(directory, KEY_FILE))
            os.replace(material.csr_path, os.path.join(directory, CSR_FILE))
        except OSError as exc:
            msg = f"Cannot install key material into {directory}: {exc}"
            raise StoreIOError(msg) from exc
        leaf = read_pem(material.cert_path)
        chain_path = os.path.join(directory, CHAIN_FILE)
        if chain:
            atomic_write_bytes(chain_path, chain)
        elif os.path.exists(chain_path):
            try:
                os.unlink(chain_path)
            except OSError as exc:
                msg = f"Cannot remove stale chain in {directory}: {exc}"
                raise StoreIOError(msg) from exc
        atomic_write_bytes(os.path.join(directory, FULLCHAIN_FILE), build_bundle(leaf, chain))
        try:
            os.replace(material.cert_path, os.path.join(directory, CERT_FILE))
        except OSError as exc:
            msg = f"Cannot install certificate into {directory}: {exc}"
            raise StoreIOError(msg) from exc
        self._fingerprints.invalidate(os.path.join(directory, CERT_FILE))

    @staticmethod
    def _repoint_children(records: dict[str, Certificate], old: str, new: str) -> int:
        moved = 0
        for fingerprint, cert in list(records.items()):
            if cert.issuer_fingerprint == old:
                records[fingerprint] = replace(cert, issuer_fingerprint=new)
                moved += 1
        return moved

    def _certificate_from(
        self,
        parsed: ParsedCertificate,
        *,
        name: str,
        cert_type: CertificateType,
        directory: str,
        issuer_fingerprint: str | None,
        config: CertificateConfig,
        sans: SanSet,
        passphrase: PassphraseHandle | None,
        needs_passphrase: bool,
        base: Certificate | None = None,
    ) -> Certificate:
        paths = paths_in(directory, chain=issuer_fingerprint is not None)
        if base is not None:
            paths = replace(paths, p12=base.paths.p12, der=base.paths.der)
        return Certificate(
            fingerprint=parsed.fingerprint,
            name=name,
            type=cert_type,
            subject=parsed.subject,
            sans=sans,
            key_algorithm=parsed.key_algorithm,
            key_size=parsed.key_size,
            curve=parsed.curve,
            validity=Validity(parsed.not_before, parsed.not_after),
            paths=paths,
            config=config,
            issuer_fingerprint=issuer_fingerprint,
            needs_passphrase=needs_passphrase,
            passphrase=passphrase,
            previous_versions=base.previous_versions if base else (),
            snapshots=base.snapshots if base else (),
            status=RecordStatus.ACTIVE,
            raw=copy.deepcopy(base.raw) if base else {},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(
        self,
        *,
        type: CertificateType | str | None = None,  # noqa: A002
        name: str | None = None,
        expiring_within: timedelta | int | None = None,
        include_missing: bool = False,
    ) -> list[Certificate]:
        """Return a snapshot of the certificates matching every filter.

        Parameters
        ----------
        type:
            Only certificates of this type.
        name:
            Case-insensitive substring of the name.
        expiring_within:
            Only certificates whose ``notAfter`` falls within this
            window (a :class:`timedelta` or a number of days).
        include_missing:
            Also return soft-deleted records.

        """
        if isinstance(expiring_within, int):
            expiring_within = timedelta(days=expiring_within)
        cutoff = datetime.now(UTC) + expiring_within if expiring_within is not None else None
        wanted_type = CertificateType(type) if type is not None else None
        needle = name.lower() if name else None

        with self._lock:
            for cert in list(self._records.values()):
                self._check_fingerprint(cert)
            result = []
            for cert in self._records.values():
                if cert.status != RecordStatus.ACTIVE and not include_missing:
                    continue
                if wanted_type is not None and cert.type != wanted_type:
                    continue
                if needle is not None and needle not in cert.name.lower():
                    continue
                if cutoff is not None and cert.validity.not_after > cutoff:
                    continue
                result.append(copy.deepcopy(cert))
        result.sort(key=lambda c: (c.name.lower(), c.fingerprint))
        return result

    def get_by_fingerprint(self, fingerprint: str) -> Certificate:
        with self._lock:
            cert = self._check_fingerprint(self._live(fingerprint))
            return copy.deepcopy(cert)

    def get_by_name(self, name: str) -> Certificate:
        with self._lock:
            for cert in list(self._records.values()):
                if cert.name == name and cert.status == RecordStatus.ACTIVE:
                    return copy.deepcopy(self._check_fingerprint(cert))
        msg = f"No certificate named '{name}'"
        raise NotFoundError(msg)

    def resolve(self, fingerprint: str) -> str:
        """Follow supersession edges from *fingerprint* to the live one."""
        with self._lock:
            seen = set()
            current = fingerprint
            while current not in self._records:
                if current in seen or current not in self._superseded:
                    msg = f"Certificate {fingerprint[:16]} not found"
                    raise NotFoundError(msg)
                seen.add(current)
                current = self._superseded[current]
            return current

    def children_of(self, fingerprint: str) -> list[Certificate]:
        with self._lock:
            self._live(fingerprint)
            return [
                copy.deepcopy(c)
                for c in self._records.values()
                if c.issuer_fingerprint == fingerprint and c.status == RecordStatus.ACTIVE
            ]

    def chain_for(self, fingerprint: str) -> list[Certificate]:
        """Issuers of *fingerprint*, nearest first, up to the root."""
        with self._lock:
            chain = []
            seen = {fingerprint}
            current = self._live(fingerprint)
            while current.issuer_fingerprint:
                issuer = self._records.get(current.issuer_fingerprint)
                if issuer is None or issuer.fingerprint in seen:
                    break
                chain.append(copy.deepcopy(issuer))
                seen.add(issuer.fingerprint)
                current = issuer
            return chain

    def public_view(self, cert: Certificate) -> dict:
        """API representation of *cert*: no handles, secrets masked."""
        record = cert.to_record()
        record.pop("passphrase", None)
        record["fingerprint"] = cert.fingerprint
        record["hasPassphrase"] = cert.passphrase is not None
        return mask_secrets(record)

    def reveal_action_config(self, fingerprint: str, action_id: str) -> dict:
        """Action config with every secret unwrapped, for deployment only."""
        with self._lock:
            action = self._find_action(self._live(fingerprint), action_id)
            config = copy.deepcopy(action.config)
        return reveal_secrets(config, self._vault.unwrap_text)

    def key_passphrase(self, fingerprint: str) -> bytes | None:
        with self._lock:
            handle = self._live(fingerprint).passphrase
        return self._vault.unwrap(handle) if handle is not None else None

    def watch_directories(self) -> list[str]:
        with self._lock:
            return sorted({c.directory for c in self._records.values()})

    # ------------------------------------------------------------------
    # Creation and renewal
    # ------------------------------------------------------------------

    def create(
        self,
        request: IssuanceRequest | dict,
        *,
        cancel: CancelToken | None = None,
    ) -> Certificate:
        """Issue a new certificate and add it to the store.

        Raises
        ------
        ValidationError
            Malformed request or config.
        ConflictError
            The name is already in use.
        IssuerError
            Toolchain or verification failure.

        """
        if isinstance(request, dict):
            request = IssuanceRequest.from_dict(request)
        requested_days = request.validity_days
        request = request.validated(self._settings.issuer, self._settings.ca_validity)

        with self._lock:
            if self._name_taken(request.name):
                msg = f"A certificate named '{request.name}' already exists"
                raise ConflictError(msg)
            config_record = self._apply_config_patch(
                CertificateConfig(
                    renew_days_before_expiry=self._settings.renew_days_before_expiry,
                    passphrase_protected=request.passphrase_protected,
                ),
                request.config,
                None,
            )
            if requested_days is not None and "validityDays" not in config_record:
                config_record["validityDays"] = request.validity_days
            config = CertificateConfig.from_record(
                config_record,
                default_renew_days=self._settings.renew_days_before_expiry,
            )
            signer_cert, signer = (None, None)
            if request.issuer_fingerprint:
                signer_cert, signer = self._signer_for(request.issuer_fingerprint)

        with certificate_context(None, request.name):
            material = self._issuer.issue(request, signer=signer, cancel=cancel)

        try:
            with self._lock:
                if self._name_taken(request.name):
                    msg = f"A certificate named '{request.name}' already exists"
                    raise ConflictError(msg)
                if material.fingerprint in self._records:
                    msg = f"Certificate {material.fingerprint[:16]} is already indexed"
                    raise ConflictError(msg)

                directory = self._layout.directory_for(request.name, material.fingerprint)
                try:
                    cert = self._install_new(material, request, directory, signer_cert, config)
                except Exception:
                    shutil.rmtree(directory, ignore_errors=True)
                    raise
        finally:
            self._issuer.discard(material)

        log.info("Created %s certificate '%s' (%s)", cert.type.value, cert.name, cert.fingerprint[:16])
        self._emit(
            EventKind.CERTIFICATE_CREATED,
            {"fingerprint": cert.fingerprint, "name": cert.name, "type": cert.type.value},
        )
        return copy.deepcopy(cert)

    def _install_new(
        self,
        material: IssuedMaterial,
        request: IssuanceRequest,
        directory: str,
        signer_cert: Certificate | None,
        config: CertificateConfig,
    ) -> Certificate:
        self._install(material, directory, self._chain_bytes(signer_cert))
        passphrase = None
        if material.key_passphrase:
            passphrase = self._vault.wrap(material.key_passphrase, fingerprint=material.fingerprint)
        cert = self._certificate_from(
            material.parsed,
            name=request.name,
            cert_type=request.type,
            directory=directory,
            issuer_fingerprint=signer_cert.fingerprint if signer_cert else None,
            config=config,
            sans=SanSet(domains=request.domains, ips=request.ips),
            passphrase=passphrase,
            needs_passphrase=material.key_passphrase is not None,
        )
        records = dict(self._records)
        records[cert.fingerprint] = cert
        self._commit(records)
        return cert

    def renew(
        self,
        fingerprint: str,
        *,
        force_include_idle: bool = True,
        cancel: CancelToken | None = None,
        on_locked: Callable[[], None] | None = None,
    ) -> Certificate:
        """Re-issue a certificate, superseding *fingerprint*.

        Concurrent calls for one fingerprint are serialised: the first
        proceeds to the issuer, the others wait and then return the
        certificate that superseded it.  A leaf whose files went missing
        is reissued with a fresh key.

        Parameters
        ----------
        force_include_idle:
            Union idle SANs into the new certificate (and clear them).
        on_locked:
            Called once the per-certificate lock is held.

        Raises
        ------
        NotFoundError
            Unknown fingerprint.
        InUseError
            The lock was not obtained within ``lockTimeoutSeconds``.
        IssuerError
            Toolchain or verification failure.

        """
        timeout = self._settings.scheduler.lock_timeout_seconds
        with self.lifecycle_lock(fingerprint, timeout=timeout) as uncontended:
            with self._lock:
                if fingerprint not in self._records and fingerprint in self._superseded:
                    log.info(
                        "Renewal of %s already completed%s",
                        fingerprint[:16],
                        "" if uncontended else " by a concurrent caller",
                    )
                    return copy.deepcopy(self._records[self.resolve(fingerprint)])
            if on_locked is not None:
                on_locked()
            with self._lock:
                cert = self._renewable(fingerprint)
            sans = cert.sans.with_idle_applied() if force_include_idle else cert.sans
            return self._reissue(cert, sans, reason="renewal", cancel=cancel)

    def _reissue(
        self,
        cert: Certificate,
        sans: SanSet,
        *,
        reason: str,
        cancel: CancelToken | None = None,
    ) -> Certificate:
        """Issue a replacement for *cert* with *sans*; caller holds the lifecycle lock."""
        validity_days = cert.config.extra.get("validityDays")
        request = IssuanceRequest(
            name=cert.name,
            type=cert.type,
            subject=cert.subject,
            domains=sans.domains,
            ips=sans.ips,
            key_algorithm=cert.key_algorithm,
            key_size=cert.key_size,
            curve=cert.curve,
            validity_days=validity_days if isinstance(validity_days, int) else None,
            issuer_fingerprint=cert.issuer_fingerprint,
            passphrase_protected=cert.config.passphrase_protected or cert.needs_passphrase,
        ).validated(self._settings.issuer, self._settings.ca_validity)

        with self._lock:
            signer_cert, signer = (None, None)
            if cert.issuer_fingerprint:
                signer_cert, signer = self._signer_for(cert.issuer_fingerprint)
            existing_key = None
            existing_passphrase = None
            if cert.is_ca:
                # Children must keep verifying against the renewed CA
                existing_key = cert.paths.key
                if cert.passphrase is not None:
                    existing_passphrase = self._vault.unwrap(cert.passphrase)

        with certificate_context(cert.fingerprint, cert.name):
            material = self._issuer.issue(
                request,
                signer=signer,
                existing_key_path=existing_key,
                existing_key_passphrase=existing_passphrase,
                cancel=cancel,
            )
            try:
                new_cert = self._commit_reissue(cert, material, sans, signer_cert, reason)
            finally:
                self._issuer.discard(material)

        self._emit(
            EventKind.CERTIFICATE_RENEWED,
            {
                "fingerprint": new_cert.fingerprint,
                "previousFingerprint": cert.fingerprint,
                "name": new_cert.name,
                "reason": reason,
            },
        )
        return copy.deepcopy(new_cert)

    def _commit_reissue(
        self,
        cert: Certificate,
        material: IssuedMaterial,
        sans: SanSet,
        signer_cert: Certificate | None,
        reason: str,
    ) -> Certificate:
        now = datetime.now(UTC)
        with self._lock:
            current = self._renewable(cert.fingerprint)
            rollback_dir = os.path.join(material.work_dir, "previous")
            snapshots.copy_material(current.directory, rollback_dir)

            snapshot = None
            if current.config.backup_on_renew:
                snapshot = snapshots.take_snapshot(
                    current,
                    SnapshotKind.VERSION,
                    description=f"pre-{reason}",
                    now=now,
                )
            previous = PreviousVersion(
                fingerprint=current.fingerprint,
                archived_at=now,
                paths=snapshots.snapshot_files(snapshot) if snapshot else None,
            )

            passphrase = current.passphrase
            if material.key_passphrase and not current.is_ca:
                passphrase = self._vault.wrap(
                    material.key_passphrase,
                    fingerprint=material.fingerprint,
                )
            # Idle entries not applied by this issuance stay queued
            remaining = SanSet(
                domains=sans.domains,
                ips=sans.ips,
                idle_domains=tuple(d for d in sans.idle_domains if d not in sans.domains),
                idle_ips=tuple(i for i in sans.idle_ips if i not in sans.ips),
            )
            new_cert = self._certificate_from(
                material.parsed,
                name=current.name,
                cert_type=current.type,
                directory=current.directory,
                issuer_fingerprint=signer_cert.fingerprint if signer_cert else None,
                config=current.config,
                sans=remaining,
                passphrase=passphrase,
                needs_passphrase=material.key_passphrase is not None,
                base=current,
            )
            new_cert = replace(
                new_cert,
                previous_versions=(*current.previous_versions, previous),
                snapshots=(*current.snapshots, snapshot) if snapshot else current.snapshots,
            )

            records = dict(self._records)
            del records[current.fingerprint]
            records[new_cert.fingerprint] = new_cert
            if current.is_ca:
                moved = self._repoint_children(records, current.fingerprint, new_cert.fingerprint)
                if moved:
                    log.info("Re-pointed %d child certificate(s) to the renewed CA", moved)
            # Files and index change together or not at all
            try:
                self._install(material, current.directory, self._chain_bytes(signer_cert))
                self._commit(records)
            except Exception:
                log.exception("Reissue of '%s' failed; restoring previous files", current.name)
                snapshots.restore_material(rollback_dir, current.directory)
                self._fingerprints.invalidate(current.paths.crt)
                if snapshot is not None:
                    snapshots.remove_snapshot(snapshot)
                raise

        log.info(
            "Renewed '%s': %s -> %s",
            new_cert.name,
            current.fingerprint[:16],
            new_cert.fingerprint[:16],
        )
        return new_cert

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _apply_config_patch(
        self,
        config: CertificateConfig,
        patch: dict,
        fingerprint: str | None,
    ) -> dict:
        """Validate *patch* and return the merged config record."""
        if not isinstance(patch, dict):
            msg = "Config patch must be an object"
            raise ValidationError(msg)
        record = config.to_record()
        for key, value in patch.items():
            if key in _CONFIG_BOOL_KEYS:
                if not isinstance(value, bool):
                    msg = f"'{key}' must be a boolean"
                    raise ValidationError(msg)
            elif key == "renewDaysBeforeExpiry":
                if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _MAX_RENEW_DAYS:
                    msg = f"'renewDaysBeforeExpiry' must be an integer between 0 and {_MAX_RENEW_DAYS}"
                    raise ValidationError(msg)
            elif key == "validityDays":
                if isinstance(value, bool) or not isinstance(value, int) or not 0 < value <= _MAX_VALIDITY_DAYS:
                    msg = f"'validityDays' must be an integer between 1 and {_MAX_VALIDITY_DAYS}"
                    raise ValidationError(msg)
            elif key == "deployActions":
                if not isinstance(value, list):
                    msg = "'deployActions' must be a list"
                    raise ValidationError(msg)
                existing = {a.id: a for a in config.deploy_actions}
                actions = []
                for idx, data in enumerate(value):
                    if not isinstance(data, dict):
                        msg = f"deployActions[{idx}] must be an object"
                        raise ValidationError(msg)
                    previous = existing.get(str(data.get("id"))) if data.get("id") else None
                    actions.append(
                        self._build_action(data, previous, fingerprint, default_order=idx),
                    )
                ids = [a.id for a in actions]
                if len(set(ids)) != len(ids):
                    msg = "Duplicate deployment action ids"
                    raise ValidationError(msg)
                value = [a.to_record() for a in actions]  # noqa: PLW2901
            record[key] = copy.deepcopy(value)
        return record

    def update_config(self, fingerprint: str, patch: dict) -> Certificate:
        """Shallow-merge *patch* into the certificate's config.

        Untouched keys keep their exact stored values.
        """
        with self._lock:
            cert = self._live(fingerprint)
            record = self._apply_config_patch(cert.config, patch, fingerprint)
            config = CertificateConfig.from_record(
                record,
                default_renew_days=self._settings.renew_days_before_expiry,
            )
            updated = replace(cert, config=config)
            records = dict(self._records)
            records[fingerprint] = updated
            self._commit(records)
        log.info("Updated config of '%s': %s", cert.name, sorted(patch))
        return copy.deepcopy(updated)

    def rename(self, fingerprint: str, new_name: str) -> Certificate:
        new_name = validate_name(new_name)
        with self._lock:
            cert = self._live(fingerprint)
            if self._name_taken(new_name, exclude=fingerprint):
                msg = f"A certificate named '{new_name}' already exists"
                raise ConflictError(msg)
            updated = replace(cert, name=new_name)
            records = dict(self._records)
            records[fingerprint] = updated
            self._commit(records)
        log.info("Renamed '%s' to '%s'", cert.name, new_name)
        return copy.deepcopy(updated)

    # ------------------------------------------------------------------
    # Deployment actions
    # ------------------------------------------------------------------

    def _build_action(
        self,
        data: dict,
        previous: DeploymentAction | None,
        fingerprint: str | None,
        *,
        default_order: int = 0,
    ) -> DeploymentAction:
        raw_type = data.get("type", previous.type.value if previous else None)
        try:
            action_type = DeployActionType(raw_type)
        except ValueError:
            msg = f"Unknown deployment action type {raw_type!r}"
            raise ValidationError(msg) from None
        if previous is not None and previous.type != action_type:
            previous = None
        action_cls = get_action_class(action_type)

        config = data.get("config", copy.deepcopy(previous.config) if previous else {})
        if not isinstance(config, dict):
            msg = "Action 'config' must be an object"
            raise ValidationError(msg)
        merged = merge_secrets(
            config,
            previous.config if previous else None,
            self._wrap(fingerprint),
            declared=action_cls.secret_fields,
        )
        leaked = find_plaintext_secrets(merged)
        if leaked:
            msg = f"Secrets must not be stored in plain text: {leaked}"
            raise ValidationError(msg)
        action_cls.validate_config(mask_secrets(merged))
        if action_type == DeployActionType.COPY:
            self._reject_store_destinations(merged)

        defaults = RetryPolicy(
            max_attempts=self._settings.deployment.max_attempts,
            backoff=self._settings.deployment.backoff_initial_seconds,
            max_backoff=self._settings.deployment.backoff_max_seconds,
        )
        try:
            policy = RetryPolicy.from_record(
                data.get("retryPolicy"),
                defaults=previous.retry_policy if previous else defaults,
            )
        except (TypeError, ValueError) as exc:
            msg = f"Invalid retryPolicy: {exc}"
            raise ValidationError(msg) from exc
        if not 1 <= policy.max_attempts <= _MAX_ATTEMPTS or policy.backoff < 0:
            msg = f"retryPolicy.maxAttempts must be between 1 and {_MAX_ATTEMPTS}"
            raise ValidationError(msg)

        order = data.get("order", previous.order if previous else default_order)
        if isinstance(order, bool) or not isinstance(order, int):
            msg = "Action 'order' must be an integer"
            raise ValidationError(msg)
        enabled = data.get("enabled", previous.enabled if previous else True)
        if not isinstance(enabled, bool):
            msg = "Action 'enabled' must be a boolean"
            raise ValidationError(msg)

        credential_status = previous.credential_status if previous else CredentialStatus.OK
        if "config" in data:
            credential_status = CredentialStatus.OK

        return DeploymentAction(
            id=str(data.get("id") or (previous.id if previous else _new_action_id())),
            type=action_type,
            name=str(data.get("name", previous.name if previous else action_type.value)),
            enabled=enabled,
            order=order,
            config=merged,
            retry_policy=policy,
            credential_status=credential_status,
            extra=previous.extra if previous else {},
        )

    def _reject_store_destinations(self, config: dict) -> None:
        """The store directory is written by the store only."""
        root = os.path.realpath(self._layout.root)
        dest = config["destination"]
        for path in [dest] if isinstance(dest, str) else dest:
            real = os.path.realpath(path)
            if real == root or real.startswith(root + os.sep):
                msg = f"copy destination '{path}' is inside the certificate store"
                raise ValidationError(msg)

    @staticmethod
    def _find_action(cert: Certificate, action_id: str) -> DeploymentAction:
        action = cert.find_action(action_id)
        if action is None:
            msg = f"Deployment action '{action_id}' not found on '{cert.name}'"
            raise NotFoundError(msg)
        return action

    def _replace_actions(
        self,
        cert: Certificate,
        actions: Iterable[DeploymentAction],
    ) -> Certificate:
        config = replace(cert.config, deploy_actions=tuple(actions))
        updated = replace(cert, config=config)
        records = dict(self._records)
        records[cert.fingerprint] = updated
        self._commit(records)
        return updated

    def add_action(self, fingerprint: str, data: dict) -> DeploymentAction:
        if not isinstance(data, dict):
            msg = "Action must be an object"
            raise ValidationError(msg)
        with self._lock:
            cert = self._live(fingerprint)
            next_order = max((a.order for a in cert.config.deploy_actions), default=-1) + 1
            action = self._build_action(
                {k: v for k, v in data.items() if k != "id"},
                None,
                fingerprint,
                default_order=next_order,
            )
            self._replace_actions(cert, (*cert.config.deploy_actions, action))
        log.info("Added %s action '%s' to '%s'", action.type.value, action.name, cert.name)
        return action

    def update_action(self, fingerprint: str, action_id: str, patch: dict) -> DeploymentAction:
        if not isinstance(patch, dict):
            msg = "Action patch must be an object"
            raise ValidationError(msg)
        with self._lock:
            cert = self._live(fingerprint)
            previous = self._find_action(cert, action_id)
            data = {k: v for k, v in patch.items() if k != "id"}
            data["id"] = action_id
            action = self._build_action(data, previous, fingerprint)
            if action.type != previous.type:
                msg = "The type of a deployment action cannot be changed"
                raise ValidationError(msg)
            self._replace_actions(
                cert,
                (action if a.id == action_id else a for a in cert.config.deploy_actions),
            )
        return action

    def remove_action(self, fingerprint: str, action_id: str) -> None:
        with self._lock:
            cert = self._live(fingerprint)
            self._find_action(cert, action_id)
            self._replace_actions(
                cert,
                (a for a in cert.config.deploy_actions if a.id != action_id),
            )
        log.info("Removed action %s from '%s'", action_id, cert.name)

    def reorder_actions(self, fingerprint: str, ordered_ids: list[str]) -> list[DeploymentAction]:
        """Assign ``order`` from the position of each id in *ordered_ids*."""
        with self._lock:
            cert = self._live(fingerprint)
            current = {a.id: a for a in cert.config.deploy_actions}
            if sorted(ordered_ids) != sorted(current):
                msg = "Reorder must list every action id exactly once"
                raise ValidationError(msg)
            actions = [replace(current[aid], order=idx) for idx, aid in enumerate(ordered_ids)]
            self._replace_actions(cert, actions)
        return actions

    def flag_credential(
        self,
        fingerprint: str,
        action_id: str,
        status: CredentialStatus = CredentialStatus.INVALID,
    ) -> None:
        """Mark the stored credential of an action for operator attention."""
        with self._lock:
            cert = self._live(fingerprint)
            action = self._find_action(cert, action_id)
            if action.credential_status == status:
                return
            flagged = replace(action, credential_status=CredentialStatus(status))
            self._replace_actions(
                cert,
                (flagged if a.id == action_id else a for a in cert.config.deploy_actions),
            )
        log.warning("Credential of action '%s' on '%s' flagged %s", action.name, cert.name, status)

    # ------------------------------------------------------------------
    # SANs
    # ------------------------------------------------------------------

    def add_san(
        self,
        fingerprint: str,
        entry: str,
        mode: SanMode | str = SanMode.IDLE,
        *,
        cancel: CancelToken | None = None,
    ) -> Certificate:
        """Add a domain or IP.

        ``idle`` queues it for the next renewal; ``active`` re-issues
        the certificate now so the active set matches what was issued.
        """
        try:
            mode = SanMode(mode)
        except ValueError:
            msg = f"SAN mode must be 'active' or 'idle', not {mode!r}"
            raise ValidationError(msg) from None
        kind, value = classify_san(entry)

        if mode == SanMode.IDLE:
            with self._lock:
                cert = self._active(fingerprint)
                sans = cert.sans
                active = sans.ips if kind == "ip" else sans.domains
                idle = sans.idle_ips if kind == "ip" else sans.idle_domains
                if value in active or value in idle:
                    return copy.deepcopy(cert)
                if kind == "ip":
                    sans = replace(sans, idle_ips=(*sans.idle_ips, value))
                else:
                    sans = replace(sans, idle_domains=(*sans.idle_domains, value))
                updated = replace(cert, sans=sans)
                records = dict(self._records)
                records[fingerprint] = updated
                self._commit(records)
            log.info("Queued idle SAN %s on '%s'", value, cert.name)
            return copy.deepcopy(updated)

        timeout = self._settings.scheduler.lock_timeout_seconds
        with self.lifecycle_lock(fingerprint, timeout=timeout):
            with self._lock:
                cert = self._active(fingerprint)
            sans = cert.sans
            if kind == "ip":
                if value in sans.ips:
                    return copy.deepcopy(cert)
                sans = replace(
                    sans,
                    ips=(*sans.ips, value),
                    idle_ips=tuple(i for i in sans.idle_ips if i != value),
                )
            else:
                if value in sans.domains:
                    return copy.deepcopy(cert)
                sans = replace(
                    sans,
                    domains=(*sans.domains, value),
                    idle_domains=tuple(d for d in sans.idle_domains if d != value),
                )
            return self._reissue(cert, sans, reason="san-change", cancel=cancel)

    def remove_san(
        self,
        fingerprint: str,
        entry: str,
        *,
        cancel: CancelToken | None = None,
    ) -> Certificate:
        """Remove a SAN; an active entry re-issues the certificate."""
        kind, value = classify_san(entry)
        with self._lock:
            cert = self._active(fingerprint)
            sans = cert.sans
            idle = sans.idle_ips if kind == "ip" else sans.idle_domains
            if value in idle:
                if kind == "ip":
                    sans = replace(sans, idle_ips=tuple(i for i in idle if i != value))
                else:
                    sans = replace(sans, idle_domains=tuple(d for d in idle if d != value))
                updated = replace(cert, sans=sans)
                records = dict(self._records)
                records[fingerprint] = updated
                self._commit(records)
                return copy.deepcopy(updated)
            active = sans.ips if kind == "ip" else sans.domains
            if value not in active:
                msg = f"'{value}' is not a SAN of '{cert.name}'"
                raise NotFoundError(msg)

        timeout = self._settings.scheduler.lock_timeout_seconds
        with self.lifecycle_lock(fingerprint, timeout=timeout):
            with self._lock:
                cert = self._active(fingerprint)
            sans = cert.sans
            if kind == "ip":
                sans = replace(sans, ips=tuple(i for i in sans.ips if i != value))
            else:
                sans = replace(sans, domains=tuple(d for d in sans.domains if d != value))
            if not cert.is_ca and not sans.domains and not sans.ips:
                msg = "A leaf certificate needs at least one SAN"
                raise ValidationError(msg)
            return self._reissue(cert, sans, reason="san-change", cancel=cancel)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete(self, fingerprint: str) -> str | None:
        """Archive the certificate directory and drop the record.

        Returns the archive path (``None`` for a record whose files
        were already gone).

        Raises
        ------
        InUseError
            Other certificates name this one as their issuer.

        """
        timeout = self._settings.scheduler.lock_timeout_seconds
        with self.lifecycle_lock(fingerprint, timeout=timeout), self._lock:
            cert = self._live(fingerprint)
            children = [
                c.name
                for c in self._records.values()
                if c.issuer_fingerprint == fingerprint and c.status == RecordStatus.ACTIVE
            ]
            if children:
                msg = f"'{cert.name}' is the issuer of {sorted(children)}"
                raise InUseError(msg)

            archive = None
            if os.path.isdir(cert.directory):
                stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
                archive = os.path.join(
                    self._layout.archive_root,
                    f"{os.path.basename(cert.directory)}-{stamp}",
                )
                try:
                    shutil.move(cert.directory, archive)
                except OSError as exc:
                    msg = f"Cannot archive {cert.directory}: {exc}"
                    raise StoreIOError(msg) from exc

            records = dict(self._records)
            del records[fingerprint]
            try:
                self._commit(records)
            except StoreIOError:
                if archive is not None:
                    shutil.move(archive, cert.directory)
                raise
            self._fingerprints.invalidate(cert.paths.crt)

        log.info("Deleted '%s' (%s)", cert.name, fingerprint[:16])
        self._emit(
            EventKind.CERTIFICATE_DELETED,
            {"fingerprint": fingerprint, "name": cert.name, "archive": archive},
        )
        return archive

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def create_backup(self, fingerprint: str, description: str = "") -> Snapshot:
        with self._lock:
            cert = self._active(fingerprint)
            snapshot = snapshots.take_snapshot(cert, SnapshotKind.BACKUP, description=description)
            updated = replace(cert, snapshots=(*cert.snapshots, snapshot))
            records = dict(self._records)
            records[fingerprint] = updated
            try:
                self._commit(records)
            except StoreIOError:
                snapshots.remove_snapshot(snapshot)
                raise
        return snapshot

    def list_snapshots(
        self,
        fingerprint: str,
        kind: SnapshotKind | str | None = None,
    ) -> list[Snapshot]:
        wanted = SnapshotKind(kind) if kind else None
        with self._lock:
            cert = self._live(fingerprint)
        found = [s for s in cert.snapshots if wanted is None or s.kind == wanted]
        return sorted(found, key=lambda s: s.created_at, reverse=True)

    def restore_snapshot(self, fingerprint: str, snapshot_id: str) -> Certificate:
        """Put a snapshot's files back, taking a restore point first.

        The record is re-indexed under the fingerprint of the restored
        certificate.
        """
        timeout = self._settings.scheduler.lock_timeout_seconds
        with self.lifecycle_lock(fingerprint, timeout=timeout), self._lock:
            cert = self._active(fingerprint)
            target = next((s for s in cert.snapshots if s.id == snapshot_id), None)
            if target is None or not os.path.isdir(target.directory):
                msg = f"Snapshot '{snapshot_id}' not found for '{cert.name}'"
                raise NotFoundError(msg)

            restore_point = snapshots.take_snapshot(
                cert,
                SnapshotKind.VERSION,
                description=f"pre-restore {snapshot_id}",
            )
            snapshots.restore_material(target.directory, cert.directory)
            self._fingerprints.invalidate(cert.paths.crt)
            try:
                parsed = load_certificate(cert.paths.crt)
                key = load_private_key(cert.paths.key, self._restored_passphrase(cert))
                if not public_key_matches(parsed.certificate, key):
                    msg = "Restored key does not match the restored certificate"
                    raise IssuerError(msg)
            except CertKeeperError:
                snapshots.restore_material(restore_point.directory, cert.directory)
                self._fingerprints.invalidate(cert.paths.crt)
                snapshots.remove_snapshot(restore_point)
                raise

            updated = replace(
                cert,
                fingerprint=parsed.fingerprint,
                subject=parsed.subject,
                validity=Validity(parsed.not_before, parsed.not_after),
                sans=replace(cert.sans, domains=parsed.domains, ips=parsed.ips),
                snapshots=(*cert.snapshots, restore_point),
            )
            records = dict(self._records)
            if parsed.fingerprint != fingerprint:
                previous = PreviousVersion(
                    fingerprint=fingerprint,
                    archived_at=restore_point.created_at,
                    paths=snapshots.snapshot_files(restore_point),
                )
                updated = replace(
                    updated,
                    previous_versions=tuple(
                        v for v in cert.previous_versions if v.fingerprint != parsed.fingerprint
                    )
                    + (previous,),
                )
                del records[fingerprint]
                if cert.is_ca:
                    self._repoint_children(records, fingerprint, parsed.fingerprint)
            records[parsed.fingerprint] = updated
            self._commit(records)

        log.info("Restored '%s' from snapshot %s", cert.name, snapshot_id)
        return copy.deepcopy(updated)

    def _restored_passphrase(self, cert: Certificate) -> bytes | None:
        if cert.passphrase is None or not key_is_encrypted(cert.paths.key):
            return None
        return self._vault.unwrap(cert.passphrase)

    def delete_snapshot(self, fingerprint: str, snapshot_id: str) -> None:
        with self._lock:
            cert = self._live(fingerprint)
            target = next((s for s in cert.snapshots if s.id == snapshot_id), None)
            if target is None:
                msg = f"Snapshot '{snapshot_id}' not found for '{cert.name}'"
                raise NotFoundError(msg)
            updated = replace(
                cert,
                snapshots=tuple(s for s in cert.snapshots if s.id != snapshot_id),
                previous_versions=_detach_snapshot(cert.previous_versions, target),
            )
            records = dict(self._records)
            records[fingerprint] = updated
            self._commit(records)
            snapshots.remove_snapshot(target)

    def prune_backups(self, now: datetime | None = None) -> int:
        """Delete snapshots older than ``backupRetention`` days."""
        retention = self._settings.backup_retention_days
        now = now or datetime.now(UTC)
        with self._lock:
            records = dict(self._records)
            doomed: list[Snapshot] = []
            for fingerprint, cert in records.items():
                expired = [s for s in cert.snapshots if snapshots.is_expired(s, retention, now)]
                if not expired:
                    continue
                versions = cert.previous_versions
                for snapshot in expired:
                    versions = _detach_snapshot(versions, snapshot)
                records[fingerprint] = replace(
                    cert,
                    snapshots=tuple(s for s in cert.snapshots if s not in expired),
                    previous_versions=versions,
                )
                doomed.extend(expired)
            if not doomed:
                return 0
            self._commit(records)
        for snapshot in doomed:
            snapshots.remove_snapshot(snapshot)
        log.info("Pruned %d snapshot(s) older than %d day(s)", len(doomed), retention)
        return len(doomed)

    # ------------------------------------------------------------------
    # Encodings
    # ------------------------------------------------------------------

    def export(
        self,
        fingerprint: str,
        fmt: ExportFormat | str,
        *,
        passphrase: str | None = None,
    ) -> str:
        """Write the certificate in another encoding; returns the path."""
        try:
            fmt = ExportFormat(fmt)
        except ValueError:
            msg = f"Unsupported export format {fmt!r}"
            raise ValidationError(msg) from None
        with self._lock:
            cert = self._active(fingerprint)
            out_path = {
                ExportFormat.DER: os.path.join(cert.directory, DER_FILE),
                ExportFormat.P12: os.path.join(cert.directory, P12_FILE),
                ExportFormat.PEM: cert.paths.pem,
            }[fmt]
            key_passphrase = self._vault.unwrap(cert.passphrase) if cert.passphrase else None
            export_to(
                self._issuer.toolchain,
                fmt,
                cert_path=cert.paths.crt,
                key_path=cert.paths.key,
                chain_path=cert.paths.chain if cert.paths.chain and os.path.isfile(cert.paths.chain) else None,
                out_path=out_path,
                friendly_name=cert.name,
                key_passphrase=key_passphrase,
                export_passphrase=passphrase.encode("utf-8") if passphrase else None,
            )
            paths = cert.paths
            if fmt == ExportFormat.DER:
                paths = replace(paths, der=out_path)
            elif fmt == ExportFormat.P12:
                paths = replace(paths, p12=out_path)
            if paths != cert.paths:
                records = dict(self._records)
                records[fingerprint] = replace(cert, paths=paths)
                self._commit(records)
        log.info("Exported '%s' as %s", cert.name, fmt.value)
        return out_path

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _supersede_external(self, cert: Certificate, parsed: ParsedCertificate) -> ReconcileChange:
        """Re-index *cert* under the fingerprint now found on disk."""
        with self._lock:
            sans = SanSet(
                domains=parsed.domains,
                ips=parsed.ips,
                idle_domains=tuple(d for d in cert.sans.idle_domains if d not in parsed.domains),
                idle_ips=tuple(i for i in cert.sans.idle_ips if i not in parsed.ips),
            )
            updated = replace(
                cert,
                fingerprint=parsed.fingerprint,
                subject=parsed.subject,
                sans=sans,
                key_algorithm=parsed.key_algorithm,
                key_size=parsed.key_size,
                curve=parsed.curve,
                validity=Validity(parsed.not_before, parsed.not_after),
                needs_passphrase=key_is_encrypted(cert.paths.key),
                previous_versions=(
                    *cert.previous_versions,
                    PreviousVersion(cert.fingerprint, datetime.now(UTC), None),
                ),
                status=RecordStatus.ACTIVE,
            )
            records = dict(self._records)
            del records[cert.fingerprint]
            if parsed.fingerprint in records:
                # Same certificate is indexed twice; keep the existing entry
                log.warning(
                    "'%s' now holds the certificate already indexed as %s",
                    cert.name,
                    parsed.fingerprint[:16],
                )
            else:
                records[parsed.fingerprint] = updated
            if cert.is_ca:
                self._repoint_children(records, cert.fingerprint, parsed.fingerprint)
            self._commit(records)

        log.warning(
            "Reconciled '%s': fingerprint on disk changed %s -> %s",
            cert.name,
            cert.fingerprint[:16],
            parsed.fingerprint[:16],
        )
        change = ReconcileChange(
            change=CHANGE_SUPERSEDED,
            fingerprint=parsed.fingerprint,
            name=cert.name,
            path=cert.paths.crt,
            previous_fingerprint=cert.fingerprint,
        )
        self._emit(EventKind.WATCHER_RELOAD, change.to_dict())
        return change

    def _adopt(self, directory: str, parsed: ParsedCertificate, records: dict) -> Certificate:
        """Build a record for a certificate directory found on disk."""
        base_name = os.path.basename(directory)
        name = base_name
        suffix = 2
        taken = {c.name for c in records.values()}
        while name in taken:
            name = f"{base_name}-{suffix}"
            suffix += 1

        issuer_fp = None
        if not parsed.self_signed:
            for candidate in records.values():
                if not candidate.is_ca or candidate.status != RecordStatus.ACTIVE:
                    continue
                issuer = self._fingerprints.parse(candidate.paths.crt)
                if issuer is not None and parsed.issued_by(issuer.certificate):
                    issuer_fp = candidate.fingerprint
                    break

        key_path = os.path.join(directory, KEY_FILE)
        paths = paths_in(directory, chain=os.path.isfile(os.path.join(directory, CHAIN_FILE)))
        return Certificate(
            fingerprint=parsed.fingerprint,
            name=name,
            type=parsed.guess_type(),
            subject=parsed.subject or Subject(common_name=""),
            sans=SanSet(domains=parsed.domains, ips=parsed.ips),
            key_algorithm=parsed.key_algorithm,
            key_size=parsed.key_size,
            curve=parsed.curve,
            validity=Validity(parsed.not_before, parsed.not_after),
            paths=paths,
            config=CertificateConfig(renew_days_before_expiry=self._settings.renew_days_before_expiry),
            issuer_fingerprint=issuer_fp,
            needs_passphrase=key_is_encrypted(key_path),
        )

    def refresh_from_disk(self) -> list[ReconcileChange]:
        """Reconcile the index with the certificate directories.

        - files found without a record become new records;
        - records whose files vanished are soft-deleted (``missing``);
        - records whose file now holds another certificate are
          superseded by it.
        """
        changes: list[ReconcileChange] = []
        superseded: list[tuple[str, ParsedCertificate]] = []
        with self._lock:
            records = dict(self._records)
            known_dirs = {c.directory for c in records.values()}

            for fingerprint, cert in list(records.items()):
                present = os.path.isfile(cert.paths.crt) and os.path.isfile(cert.paths.key)
                if not present:
                    if cert.status == RecordStatus.ACTIVE:
                        records[fingerprint] = replace(cert, status=RecordStatus.MISSING)
                        changes.append(
                            ReconcileChange(CHANGE_MISSING, fingerprint, cert.name, cert.paths.crt),
                        )
                    continue
                try:
                    parsed = self._fingerprints.parse(cert.paths.crt)
                except IssuerError:
                    log.warning("Skipping '%s': certificate file does not parse", cert.name)
                    continue
                if parsed is None:
                    continue
                if parsed.fingerprint != fingerprint:
                    superseded.append((fingerprint, parsed))
                elif cert.status == RecordStatus.MISSING:
                    records[fingerprint] = replace(cert, status=RecordStatus.ACTIVE)
                    changes.append(
                        ReconcileChange(CHANGE_RESTORED, fingerprint, cert.name, cert.paths.crt),
                    )

            for directory in self._layout.certificate_dirs():
                if directory in known_dirs:
                    continue
                try:
                    parsed = self._fingerprints.parse(os.path.join(directory, CERT_FILE))
                except IssuerError:
                    log.warning("Ignoring %s: cert.crt does not parse", directory)
                    continue
                if parsed is None or parsed.fingerprint in records:
                    continue
                if not os.path.isfile(os.path.join(directory, KEY_FILE)):
                    log.warning("Ignoring %s: no key.key next to cert.crt", directory)
                    continue
                adopted = self._adopt(directory, parsed, records)
                records[adopted.fingerprint] = adopted
                changes.append(
                    ReconcileChange(CHANGE_NEW, adopted.fingerprint, adopted.name, adopted.paths.crt),
                )

            if changes:
                self._commit(records)
            for change in changes:
                log.info("Reconciled %s: %s (%s)", change.name, change.change, change.fingerprint[:16])
                self._emit(EventKind.WATCHER_RELOAD, change.to_dict())

            for fingerprint, parsed in superseded:
                cert = self._records.get(fingerprint)
                if cert is not None:
                    changes.append(self._supersede_external(cert, parsed))
        return changes

    def reconcile_path(self, path: str) -> ReconcileChange | None:
        """Reconcile the single certificate owning *path*.

        Used by the filesystem watcher after a debounced change.
        """
        directory = os.path.dirname(os.path.abspath(path))
        with self._lock:
            cert = next(
                (c for c in self._records.values() if c.directory == directory),
                None,
            )
            if cert is None:
                crt = os.path.join(directory, CERT_FILE)
                if os.path.dirname(directory) != self._layout.root or not os.path.isfile(crt):
                    return None
                try:
                    parsed = self._fingerprints.parse(crt)
                except IssuerError:
                    return None
                if parsed is None or parsed.fingerprint in self._records:
                    return None
                if not os.path.isfile(os.path.join(directory, KEY_FILE)):
                    return None
                records = dict(self._records)
                adopted = self._adopt(directory, parsed, records)
                records[adopted.fingerprint] = adopted
                self._commit(records)
                change = ReconcileChange(CHANGE_NEW, adopted.fingerprint, adopted.name, crt)
            else:
                self._fingerprints.invalidate(cert.paths.crt)
                present = os.path.isfile(cert.paths.crt) and os.path.isfile(cert.paths.key)
                if not present:
                    if cert.status == RecordStatus.MISSING:
                        return None
                    records = dict(self._records)
                    records[cert.fingerprint] = replace(cert, status=RecordStatus.MISSING)
                    self._commit(records)
                    change = ReconcileChange(CHANGE_MISSING, cert.fingerprint, cert.name, path)
                else:
                    try:
                        parsed = self._fingerprints.parse(cert.paths.crt)
                    except IssuerError:
                        log.warning("Changed file %s does not parse; ignoring", cert.paths.crt)
                        return None
                    if parsed is None:
                        return None
                    if parsed.fingerprint != cert.fingerprint:
                        return self._supersede_external(cert, parsed)
                    if cert.status != RecordStatus.MISSING:
                        return None
                    records = dict(self._records)
                    records[cert.fingerprint] = replace(cert, status=RecordStatus.ACTIVE)
                    self._commit(records)
                    change = ReconcileChange(CHANGE_RESTORED, cert.fingerprint, cert.name, path)

        log.info("Reconciled %s: %s", change.name, change.change)
        self._emit(EventKind.WATCHER_RELOAD, change.to_dict())
        return change

    # ------------------------------------------------------------------
    # HandleOwner protocol (master key rotation)
    # ------------------------------------------------------------------

    def _handles(self) -> Iterable[PassphraseHandle]:
        for cert in self._records.values():
            if cert.passphrase is not None:
                yield cert.passphrase
            for action in cert.config.deploy_actions:
                for _, handle in iter_handles(action.config):
                    yield handle

    def has_handles(self) -> bool:
        with self._lock:
            return next(iter(self._handles()), None) is not None

    def referenced_key_versions(self) -> set[str]:
        with self._lock:
            return {h.key_version for h in self._handles()}

    def rewrap_handles(self, rewrap: Callable[[PassphraseHandle], PassphraseHandle]) -> int:
        """Re-wrap every handle and commit the index in one write."""
        with self._lock:
            count = 0
            records = {}
            for fingerprint, cert in self._records.items():
                passphrase = cert.passphrase
                if passphrase is not None:
                    passphrase = rewrap(passphrase)
                    count += 1
                actions = []
                for action in cert.config.deploy_actions:
                    count += sum(1 for _ in iter_handles(action.config))
                    actions.append(replace(action, config=replace_handles(action.config, rewrap)))
                records[fingerprint] = replace(
                    cert,
                    passphrase=passphrase,
                    config=replace(cert.config, deploy_actions=tuple(actions)),
                )
            self._commit(records)
        return count


def _new_action_id() -> str:
    return uuid.uuid4().hex[:12]


def _detach_snapshot(
    versions: tuple[PreviousVersion, ...],
    snapshot: Snapshot,
) -> tuple[PreviousVersion, ...]:
    """Drop file references into *snapshot* from previous versions."""
    prefix = snapshot.directory + os.sep
    result = []
    for version in versions:
        paths = version.paths or {}
        if any(str(p).startswith(prefix) for p in paths.values()):
            version = replace(version, paths=None)  # noqa: PLW2901
        result.append(version)
    return tuple(result)


"""Operator subcommands over the store, scheduler and vault.

Each handler builds the engine without starting its triggers, performs
one operation and prints JSON to stdout.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime

from certkeeper.app.engine import Engine
from certkeeper.core.errors import ConflictError, NotFoundError

log = logging.getLogger(__name__)


def _print_json(data) -> None:
    json.dump(data, sys.stdout, indent=2, sort_keys=True, default=str)
    sys.stdout.write("\n")


def resolve_fingerprint(engine: Engine, value: str) -> str:
    """Accept a full fingerprint, a unique prefix or a certificate name."""
    value = value.strip().lower().replace(":", "")
    certs = engine.store.list(include_missing=True)
    exact = [c for c in certs if c.fingerprint == value]
    if exact:
        return exact[0].fingerprint
    by_name = [c for c in certs if c.name.lower() == value]
    if len(by_name) == 1:
        return by_name[0].fingerprint
    matches = [c for c in certs if c.fingerprint.startswith(value)]
    if not matches:
        try:
            return engine.store.resolve(value)
        except NotFoundError:
            msg = f"No certificate matches '{value}'"
            raise NotFoundError(msg) from None
    if len(matches) > 1:
        msg = f"'{value}' matches {len(matches)} certificates; use a longer prefix"
        raise ConflictError(msg)
    return matches[0].fingerprint


def run_store_command(config, args) -> int:
    """Dispatch a one-shot subcommand; returns the process exit status."""
    engine = Engine.from_settings(config.settings)
    try:
        handler = _HANDLERS[args.command]
        return handler(engine, args)
    finally:
        engine.scheduler.stop(timeout=engine.settings.scheduler.shutdown_timeout_seconds)
        engine.events.drain(timeout=5)
        engine.events.shutdown()


def _list(engine: Engine, args) -> int:
    certs = engine.store.list(
        type=args.cert_type,
        expiring_within=args.expiring,
        include_missing=args.include_missing,
    )
    _print_json(
        [
            {
                "fingerprint": c.fingerprint,
                "name": c.name,
                "type": c.type.value,
                "notAfter": c.validity.not_after.isoformat(),
                "status": c.status.value,
                "issuerFingerprint": c.issuer_fingerprint,
            }
            for c in certs
        ],
    )
    return 0


def _status(engine: Engine, args) -> int:
    status = engine.scheduler.status()
    # Triggers are not started for one-shot commands
    status["nextRun"] = engine.scheduler.cron.next_after(datetime.now().astimezone()).isoformat()
    status["certificates"] = len(engine.store.list(include_missing=True))
    status["masterKeyVersion"] = engine.keyring.current_version
    _print_json(status)
    return 0


def _check(engine: Engine, args) -> int:
    results = engine.scheduler.run_now(force_all=args.force)
    _print_json([r.to_dict() for r in results])
    return 0 if all(r.outcome.value in ("renewed", "skipped") for r in results) else 1


def _renew(engine: Engine, args) -> int:
    fingerprint = resolve_fingerprint(engine, args.fingerprint)
    renewed = engine.store.renew(fingerprint)
    result = {"previousFingerprint": fingerprint, "fingerprint": renewed.fingerprint}
    if not args.no_deploy:
        report = engine.pipeline.run(renewed.fingerprint, event="certificate-renewed")
        result["deployment"] = report.to_dict()
    _print_json(result)
    return 0


def _deploy(engine: Engine, args) -> int:
    report = engine.pipeline.run(resolve_fingerprint(engine, args.fingerprint))
    _print_json(report.to_dict())
    return 0 if report.status.value in ("success", "empty") else 1


def _refresh(engine: Engine, args) -> int:
    changes = engine.store.refresh_from_disk()
    _print_json([c.to_dict() for c in changes])
    return 0


def _rotate_key(engine: Engine, args) -> int:
    version = engine.vault.rotate()
    _print_json({"keyVersion": version})
    return 0


_HANDLERS = {
    "list": _list,
    "status": _status,
    "check": _check,
    "renew": _renew,
    "deploy": _deploy,
    "refresh": _refresh,
    "rotate-key": _rotate_key,
}

"""CertKeeper command-line entry point.

Usage::

    certkeeper -c /etc/certkeeper/config.yaml run
    certkeeper -c config.yaml --validate-only
    certkeeper -c config.yaml list [--expiring 30]
    certkeeper -c config.yaml status
    certkeeper -c config.yaml check [--force]
    certkeeper -c config.yaml renew <fingerprint>
    certkeeper -c config.yaml deploy <fingerprint>
    certkeeper -c config.yaml refresh
    certkeeper -c config.yaml rotate-key
    python -m certkeeper -c config.yaml run
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from certkeeper.core.errors import CertKeeperError, StartupError
from certkeeper.core.types import CertificateType

log = logging.getLogger(__name__)


def _get_version() -> str:
    from certkeeper import __version__  # noqa: PLC0415

    return __version__


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="certkeeper",
        description="CertKeeper: X.509 certificate lifecycle engine",
    )
    parser.add_argument(
        "-c",
        "--config",
        required=True,
        metavar="PATH",
        help="Path to the configuration file (YAML or JSON).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug output (full tracebacks, verbose logging).",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        default=False,
        help="Validate the configuration file and exit.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the engine and block until SIGTERM/SIGINT")

    list_parser = subparsers.add_parser("list", help="List certificates")
    list_parser.add_argument(
        "--type",
        dest="cert_type",
        default=None,
        choices=[t.value for t in CertificateType],
        help="Filter by certificate type",
    )
    list_parser.add_argument("--expiring", type=int, default=None, metavar="DAYS", help="Only those expiring within DAYS")
    list_parser.add_argument("--all", dest="include_missing", action="store_true", help="Include missing certificates")

    subparsers.add_parser("status", help="Show scheduler configuration and store summary")

    check_parser = subparsers.add_parser("check", help="Renew every due certificate now")
    check_parser.add_argument("--force", action="store_true", default=False, help="Renew all certificates")

    renew_parser = subparsers.add_parser("renew", help="Renew one certificate and deploy it")
    renew_parser.add_argument("fingerprint", help="Certificate fingerprint (or unique prefix)")
    renew_parser.add_argument("--no-deploy", action="store_true", default=False, help="Skip deployment")

    deploy_parser = subparsers.add_parser("deploy", help="Run the deployment actions of a certificate")
    deploy_parser.add_argument("fingerprint", help="Certificate fingerprint (or unique prefix)")

    subparsers.add_parser("refresh", help="Reconcile the index with the files on disk")
    subparsers.add_parser("rotate-key", help="Rotate the master key and re-wrap all secrets")

    return parser


def _print_error(message: str) -> None:
    """Print a user-facing error to stderr."""
    print(f"certkeeper: error: {message}", file=sys.stderr)  # noqa: T201


def main(argv: list[str] | None = None) -> None:
    """CLI entry point.  Parses arguments, loads config, dispatches."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    config_path = Path(args.config)
    if not config_path.is_file():
        _print_error(f"configuration file not found: {config_path}")
        sys.exit(StartupError.EXIT_CONFIG)

    # Basic stderr logging until the config is loaded
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    from certkeeper.config import CertKeeperConfig, ConfigValidationError  # noqa: PLC0415

    try:
        config = CertKeeperConfig(config_file=config_path)
    except ConfigValidationError as exc:
        _print_error(str(exc))
        sys.exit(StartupError.EXIT_CONFIG)

    from certkeeper.logging import configure_logging  # noqa: PLC0415

    configure_logging(config.settings.logging)

    if args.validate_only:
        _print_settings_summary(config)
        sys.exit(0)

    command = args.command or "run"
    try:
        if command == "run":
            from certkeeper.cli.commands.run import run_engine  # noqa: PLC0415

            run_engine(config, args)
        else:
            from certkeeper.cli.commands.store import run_store_command  # noqa: PLC0415

            sys.exit(run_store_command(config, args))
    except StartupError as exc:
        _print_error(exc.detail)
        sys.exit(exc.exit_code)
    except CertKeeperError as exc:
        if args.debug:
            raise
        _print_error(f"{exc.code}: {exc.detail}")
        sys.exit(1)


def _print_settings_summary(config) -> None:
    """Print a short summary of the loaded configuration."""
    s = config.settings
    lines = [
        f"store:        {s.store_dir}",
        f"master key:   {s.master_key_path}",
        f"toolchain:    {s.issuer.toolchain}",
        f"schedule:     {s.scheduler.schedule} (enabled={s.scheduler.enabled})",
        f"file watch:   {s.scheduler.watch_files}",
        f"renew before: {s.renew_days_before_expiry} days",
        f"subscribers:  {sum(1 for e in s.events.subscribers if e.enabled)}",
    ]
    print("\n".join(lines))  # noqa: T201

"""Structured logging configuration for CertKeeper.

Provides JSON and text formatters, a certificate-context filter that
injects the fingerprint and name of the certificate being worked on
into every log record, and a one-call ``configure_logging`` function
driven by config settings.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Generator

    from certkeeper.config.settings import LoggingSettings

ACTIVITY_LOGGER = "certkeeper.activity"

_current_fingerprint: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "certkeeper_fingerprint",
    default=None,
)
_current_cert_name: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "certkeeper_cert_name",
    default=None,
)

# Attributes that are part of the standard LogRecord; everything
# else is considered "extra" and gets included in structured output.
_STANDARD_ATTRS = frozenset(
    {
        "args",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
        # Context attributes (handled explicitly):
        "fingerprint",
        "cert_name",
    }
)


@contextmanager
def certificate_context(
    fingerprint: str | None,
    name: str | None = None,
) -> Generator[None, None, None]:
    """Tag every log record emitted inside the block with a certificate."""
    fp_token = _current_fingerprint.set(fingerprint)
    name_token = _current_cert_name.set(name)
    try:
        yield
    finally:
        _current_fingerprint.reset(fp_token)
        _current_cert_name.reset(name_token)


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class StructuredFormatter(logging.Formatter):
    """JSON-lines formatter used when ``jsonOutput`` is enabled.

    Every record becomes a single JSON object on one line containing
    the standard fields plus any *extra* attributes passed by the
    caller or injected by filters.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        data: dict = {
            "timestamp": datetime.fromtimestamp(
                record.created,
                tz=UTC,
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        fingerprint = getattr(record, "fingerprint", None)
        if fingerprint not in (None, "-"):
            data["fingerprint"] = fingerprint

        cert_name = getattr(record, "cert_name", None)
        if cert_name not in (None, "-"):
            data["cert_name"] = cert_name

        # Caller-supplied extra fields
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                data.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            data["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for console use."""

    _FMT = "%(asctime)s %(levelname)-8s [%(cert_name)s] %(name)s: %(message)s"

    def __init__(self) -> None:
        super().__init__(fmt=self._FMT, datefmt="%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class CertificateContextFilter(logging.Filter):
    """Inject ``fingerprint`` and ``cert_name`` into every log record.

    Values come from :func:`certificate_context`; records emitted
    outside any certificate operation get ``"-"``.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if not hasattr(record, "fingerprint"):
            record.fingerprint = _current_fingerprint.get() or "-"  # type: ignore[attr-defined]
        if not hasattr(record, "cert_name"):
            record.cert_name = _current_cert_name.get() or "-"  # type: ignore[attr-defined]
        return True


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Configure the ``certkeeper`` logger hierarchy from settings.

    Replaces any bootstrap handlers with properly formatted output and
    attaches the optional activity log file.

    Returns the root ``certkeeper`` logger.
    """
    level = getattr(logging, settings.level.upper(), logging.INFO)

    root = logging.getLogger("certkeeper")
    root.setLevel(level)
    root.handlers.clear()
    root.propagate = False

    formatter: logging.Formatter
    formatter = StructuredFormatter() if settings.format == "json" else TextFormatter()

    ctx_filter = CertificateContextFilter()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console.addFilter(ctx_filter)
    root.addHandler(console)

    # Activity events always reach the console through the root logger;
    # the optional file copy is JSON lines.
    activity = logging.getLogger(ACTIVITY_LOGGER)
    activity.setLevel(logging.INFO)
    activity.handlers.clear()

    if settings.activity_file:
        try:
            from logging.handlers import RotatingFileHandler

            fh = RotatingFileHandler(
                settings.activity_file,
                maxBytes=settings.activity_max_bytes,
                backupCount=settings.activity_backup_count,
            )
            fh.setFormatter(StructuredFormatter())
            fh.addFilter(ctx_filter)
            activity.addHandler(fh)
        except OSError as exc:
            root.warning(
                "Could not open activity log file %s: %s",
                settings.activity_file,
                exc,
            )

    # Quieten noisy third-party loggers
    for lib in ("paramiko", "paramiko.transport", "docker", "urllib3", "watchdog"):
        logging.getLogger(lib).setLevel(logging.WARNING)

    return root

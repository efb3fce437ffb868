"""``run`` subcommand: start the engine in the foreground."""

from __future__ import annotations

import logging

from certkeeper.app.engine import Engine

log = logging.getLogger(__name__)


def run_engine(config, args) -> None:
    """Build the engine, run until signalled, then shut down gracefully."""
    engine = Engine.from_settings(config.settings)
    log.info("Starting CertKeeper (config=%s)", config.config_file)
    engine.run_forever()

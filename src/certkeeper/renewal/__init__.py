"""Renewal triggers: cron tick, manual scan and filesystem watcher.

Usage::

    from certkeeper.renewal import RenewalScheduler

    scheduler = RenewalScheduler(store, pipeline, settings, events)
    scheduler.start()
"""

from certkeeper.renewal.cron import CronTrigger
from certkeeper.renewal.scheduler import RenewalResult, RenewalScheduler
from certkeeper.renewal.watcher import CertificateWatcher

__all__ = ["CertificateWatcher", "CronTrigger", "RenewalResult", "RenewalScheduler"]

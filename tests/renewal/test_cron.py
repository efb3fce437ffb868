"""Tests for certkeeper.renewal.cron."""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime

import pytest

from certkeeper.core.errors import ValidationError
from certkeeper.renewal.cron import CronTrigger


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture()
def triggers():
    created: list[CronTrigger] = []

    def make(*args, **kwargs) -> CronTrigger:
        trigger = CronTrigger(*args, **kwargs)
        created.append(trigger)
        return trigger

    yield make
    for trigger in created:
        trigger.stop()


# Just before a minute boundary, so "* * * * *" fires within 0.1s
_ALMOST = datetime(2030, 1, 1, 9, 59, 59, 900000, tzinfo=UTC)


class TestExpression:
    def test_invalid_expression_rejected(self):
        with pytest.raises(ValidationError):
            CronTrigger("every day", lambda: None)

    def test_next_after(self):
        trigger = CronTrigger("30 2 * * *", lambda: None)
        after = trigger.next_after(datetime(2030, 1, 1, 10, 0, tzinfo=UTC))
        assert after == datetime(2030, 1, 2, 2, 30, tzinfo=UTC)

    def test_reschedule_validates(self):
        trigger = CronTrigger("0 0 * * *", lambda: None)
        with pytest.raises(ValidationError):
            trigger.reschedule("61 * * * *")
        assert trigger.expression == "0 0 * * *"
        trigger.reschedule("*/5 * * * *")
        assert trigger.expression == "*/5 * * * *"


class TestRunning:
    def test_fires_callback(self, triggers):
        fired = threading.Event()
        trigger = triggers("* * * * *", fired.set, clock=lambda: _ALMOST)

        trigger.start()

        assert fired.wait(5)
        assert trigger.running
        assert trigger.last_run == _ALMOST

    def test_failing_callback_keeps_thread_alive(self, triggers):
        calls = []
        second = threading.Event()

        def callback():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first tick fails")
            second.set()

        trigger = triggers("* * * * *", callback, clock=lambda: _ALMOST)
        trigger.start()

        assert second.wait(5)
        assert trigger.running

    def test_stop_clears_next_run(self, triggers):
        trigger = triggers("0 0 1 1 *", lambda: None)
        trigger.start()
        assert _wait_until(lambda: trigger.next_run is not None)

        trigger.stop()

        assert not trigger.running
        assert trigger.next_run is None

    def test_reschedule_recomputes_pending_wait(self, triggers):
        trigger = triggers("0 0 1 1 *", lambda: None)
        trigger.start()
        assert _wait_until(lambda: trigger.next_run is not None)
        yearly = trigger.next_run

        trigger.reschedule("* * * * *")

        assert _wait_until(lambda: trigger.next_run is not None and trigger.next_run < yearly)
        assert (trigger.next_run - datetime.now().astimezone()).total_seconds() <= 60

"""Unit tests for certkeeper.app.shutdown: graceful shutdown coordinator."""

from __future__ import annotations

import signal
import threading
import time
from unittest.mock import patch

from certkeeper.app.shutdown import ShutdownCoordinator

# ---------------------------------------------------------------------------
# TestShutdownCoordinator
# ---------------------------------------------------------------------------


class TestShutdownCoordinator:
    def test_is_shutting_down_starts_false(self):
        sc = ShutdownCoordinator()
        assert sc.is_shutting_down is False

    def test_initiate_with_nothing_in_flight(self):
        sc = ShutdownCoordinator()
        assert sc.initiate() is True
        assert sc.initiate() is True
        assert sc.is_shutting_down is True

    def test_track_names_operations(self):
        sc = ShutdownCoordinator()
        with sc.track("renew web"), sc.track("deploy web"):
            assert sc.in_flight_count == 2
            assert sorted(sc.in_flight()) == ["deploy web", "renew web"]
        assert sc.in_flight_count == 0

    def test_track_releases_on_error(self):
        sc = ShutdownCoordinator()
        try:
            with sc.track("failing"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert sc.in_flight_count == 0

    def test_shutdown_waits_for_tracked(self):
        sc = ShutdownCoordinator(graceful_timeout=5)
        started = threading.Event()
        completed = threading.Event()

        def slow_op():
            with sc.track("slow"):
                started.set()
                time.sleep(0.1)
            completed.set()

        t = threading.Thread(target=slow_op)
        t.start()
        started.wait(timeout=2)
        assert sc.initiate() is True
        assert completed.is_set()
        t.join(timeout=5)

    def test_shutdown_timeout_expires(self):
        sc = ShutdownCoordinator(graceful_timeout=30)
        started = threading.Event()
        stop = threading.Event()

        def blocking_op():
            with sc.track("blocker"):
                started.set()
                stop.wait(timeout=5)

        t = threading.Thread(target=blocking_op, daemon=True)
        t.start()
        started.wait(timeout=2)

        start_time = time.monotonic()
        assert sc.initiate(timeout=0.05) is False
        assert time.monotonic() - start_time < 2

        stop.set()
        t.join(timeout=2)

    def test_work_started_during_shutdown_is_tracked(self, caplog):
        sc = ShutdownCoordinator()
        sc.initiate()
        with sc.track("late"):
            assert sc.in_flight_count == 1
        assert "starting during shutdown" in caplog.text


# ---------------------------------------------------------------------------
# TestShutdownRequests
# ---------------------------------------------------------------------------


class TestShutdownRequests:
    def test_request_wakes_waiter(self):
        sc = ShutdownCoordinator()
        assert sc.wait_for_request(timeout=0.01) is False
        threading.Timer(0.05, sc.request).start()
        assert sc.wait_for_request(timeout=5) is True
        assert sc.is_shutting_down is False

    def test_signal_handler_requests_shutdown(self):
        sc = ShutdownCoordinator()
        sc._signal_handler(signal.SIGTERM, None)
        assert sc.wait_for_request(timeout=0) is True

    def test_register_signals_outside_main_thread(self):
        sc = ShutdownCoordinator()
        with patch("certkeeper.app.shutdown.signal.signal", side_effect=ValueError("not main thread")):
            sc.register_signals()

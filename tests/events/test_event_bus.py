"""Tests for the event bus, subscriber plugins and the activity sink."""

from __future__ import annotations

import json
import logging
import threading

import pytest

from certkeeper.config.settings import EventSettings, SubscriberEntrySettings
from certkeeper.events import ActivitySink, EventBus, Subscriber
from certkeeper.events.kinds import KIND_METHOD_MAP, KNOWN_KINDS

_received: list[dict] = []


class RecordingSubscriber(Subscriber):
    """Plugin used by the loading tests; records renewals."""

    def on_certificate_renewed(self, event: dict) -> None:
        _received.append({"event": event, "config": self.config})


class PickySubscriber(Subscriber):
    @classmethod
    def validate_config(cls, config: dict) -> None:
        if "channel" not in config:
            msg = "channel is required"
            raise ValueError(msg)


class NotASubscriber:
    pass


def _entry(cls_name: str, **kwargs) -> SubscriberEntrySettings:
    return SubscriberEntrySettings(
        class_path=kwargs.pop("class_path", f"{__name__}.{cls_name}"),
        enabled=kwargs.pop("enabled", True),
        events=tuple(kwargs.pop("events", ())),
        config=kwargs.pop("config", {}),
    )


@pytest.fixture()
def bus():
    b = EventBus()
    yield b
    b.shutdown(wait=True)


@pytest.fixture(autouse=True)
def _clear_received():
    _received.clear()
    yield
    _received.clear()


# ---------------------------------------------------------------------------
# TestKinds
# ---------------------------------------------------------------------------


class TestKinds:
    def test_every_kind_maps_to_a_subscriber_method(self):
        assert len(KNOWN_KINDS) == 7
        for method in KIND_METHOD_MAP.values():
            assert callable(getattr(Subscriber, method))

    def test_unknown_kind_rejected(self, bus):
        with pytest.raises(ValueError, match="Unknown event kind"):
            bus.publish("certificate-exploded", {})

    def test_listener_with_unknown_kind_rejected(self, bus):
        with pytest.raises(ValueError, match="unknown events"):
            bus.subscribe(lambda e: None, kinds=["certificate-renewed", "nope"])


# ---------------------------------------------------------------------------
# TestListeners
# ---------------------------------------------------------------------------


class TestListeners:
    def test_envelope_and_filtering(self, bus):
        renewed, everything = [], []
        bus.subscribe(renewed.append, kinds=["certificate-renewed"])
        bus.subscribe(everything.append)

        bus.publish("certificate-renewed", {"fingerprint": "ab", "name": "web"}, actor="cli")
        assert bus.drain(5)
        bus.publish("certificate-deleted", {"fingerprint": "ab", "name": "web"})
        assert bus.drain(5)

        assert len(renewed) == 1
        envelope = renewed[0]
        assert envelope["kind"] == "certificate-renewed"
        assert envelope["actor"] == "cli"
        assert envelope["payload"] == {"fingerprint": "ab", "name": "web"}
        assert "timestamp" in envelope
        assert [e["kind"] for e in everything] == ["certificate-renewed", "certificate-deleted"]
        assert everything[1]["actor"] == "system"

    def test_receivers_get_private_copies(self, bus):
        payload = {"tags": ["a"]}
        seen = []

        def mutate(event):
            event["payload"]["tags"].append("mutated")
            seen.append(event)

        bus.subscribe(mutate)
        bus.publish("certificate-created", payload)
        assert bus.drain(5)
        assert payload == {"tags": ["a"]}
        assert seen[0]["payload"]["tags"] == ["a", "mutated"]

    def test_unsubscribe(self, bus):
        received = []
        unsubscribe = bus.subscribe(received.append)
        unsubscribe()
        unsubscribe()
        bus.publish("certificate-created", {})
        assert bus.drain(5)
        assert received == []

    def test_failing_receiver_is_isolated(self, bus, caplog):
        ok = []

        def boom(event):
            raise RuntimeError("receiver down")

        bus.subscribe(boom)
        bus.subscribe(ok.append)
        bus.publish("master-key-rotated", {"keyVersion": "v2"})

        assert bus.drain(5)
        assert len(ok) == 1
        assert bus.error_count == 1
        assert "receiver down" in caplog.text

    def test_publish_does_not_wait_for_receivers(self, bus):
        release = threading.Event()
        bus.subscribe(lambda e: release.wait(5))

        bus.publish("certificate-created", {})

        assert not bus.drain(0.05)
        release.set()
        assert bus.drain(5)

    def test_publish_after_shutdown_only_records(self, caplog):
        b = EventBus()
        received = []
        b.subscribe(received.append)
        b.shutdown()
        b.shutdown()
        with caplog.at_level(logging.INFO, logger="certkeeper.activity"):
            b.publish("certificate-created", {"name": "late"})
        assert received == []
        assert any('"late"' in r.getMessage() for r in caplog.records)


# ---------------------------------------------------------------------------
# TestSubscriberPlugins
# ---------------------------------------------------------------------------


class TestSubscriberPlugins:
    def test_loaded_plugin_receives_its_kinds(self):
        settings = EventSettings(
            max_workers=1,
            subscribers=(
                _entry("RecordingSubscriber", events=["certificate-renewed"], config={"room": "ops"}),
                _entry("NotASubscriber", enabled=False),
            ),
        )
        b = EventBus(settings)
        try:
            b.publish("certificate-renewed", {"fingerprint": "cd"})
            b.publish("certificate-created", {"fingerprint": "cd"})
            assert b.drain(5)
        finally:
            b.shutdown()
        assert len(_received) == 1
        assert _received[0]["event"]["payload"] == {"fingerprint": "cd"}
        assert _received[0]["config"] == {"room": "ops"}

    @pytest.mark.parametrize(
        ("entry", "error", "match"),
        [
            (_entry("x", class_path="nodots"), ValueError, "Invalid subscriber class path"),
            (_entry("NotASubscriber"), TypeError, "must be a subclass"),
            (_entry("PickySubscriber"), ValueError, "channel is required"),
            (_entry("RecordingSubscriber", events=["bogus"]), ValueError, "unknown events"),
            (_entry("x", class_path="certkeeper_missing_module.Plugin"), ImportError, "certkeeper_missing_module"),
        ],
    )
    def test_bad_plugins_are_fatal(self, entry, error, match):
        with pytest.raises(error, match=match):
            EventBus(EventSettings(max_workers=1, subscribers=(entry,)))


# ---------------------------------------------------------------------------
# TestActivitySink
# ---------------------------------------------------------------------------


class TestActivitySink:
    def test_json_line_with_secrets_redacted(self, caplog):
        sink = ActivitySink()
        with caplog.at_level(logging.INFO, logger="certkeeper.activity"):
            sink.emit("deployment-failed", {"name": "web", "config": {"password": "hunter2"}}, actor="cli")

        (record,) = [r for r in caplog.records if r.name == "certkeeper.activity"]
        entry = json.loads(record.getMessage())
        assert entry["kind"] == "deployment-failed"
        assert entry["actor"] == "cli"
        assert entry["payload"]["name"] == "web"
        assert entry["payload"]["config"]["password"] == "[REDACTED]"
        assert "hunter2" not in record.getMessage()

    def test_bus_writes_every_event_to_the_sink(self, caplog):
        b = EventBus(sink=ActivitySink(logging.getLogger("certkeeper.activity.test")))
        try:
            with caplog.at_level(logging.INFO, logger="certkeeper.activity.test"):
                b.publish("watcher-reload", {"change": "missing"})
        finally:
            b.shutdown()
        kinds = [json.loads(r.getMessage())["kind"] for r in caplog.records if r.name == "certkeeper.activity.test"]
        assert kinds == ["watcher-reload"]

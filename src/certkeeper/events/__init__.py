"""Engine events: kinds, subscriber plugins, bus and activity sink."""

from certkeeper.events.activity import ActivitySink
from certkeeper.events.base import Subscriber
from certkeeper.events.bus import EventBus
from certkeeper.events.kinds import KNOWN_KINDS

__all__ = ["KNOWN_KINDS", "ActivitySink", "EventBus", "Subscriber"]

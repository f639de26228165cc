"""Tests for the notification fanout."""
import sys
import os
import threading
import time

import pytest
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alerts.engine import decide
from models.enums import EventKind
from models.events import MonitorEvent
from notifications.fanout import NotificationFanout
from conftest import FIXED_NOW, RecordingChannel, make_rule


def _event(kind=EventKind.ALERT_CREATED, value=92.5):
    alert = decide(make_rule(), "server-001", value, None, FIXED_NOW).alert
    return MonitorEvent(kind=kind, subject=alert, timestamp=FIXED_NOW)


class BlockingChannel:
    def __init__(self):
        self.release = threading.Event()
        self.events = []

    def send(self, event):
        self.release.wait(5)
        self.events.append(event)


class BrokenChannel:
    def send(self, event):
        raise ConnectionError("socket closed")


@pytest.fixture
def fanout(context):
    fanout = NotificationFanout(context=context, queue_size=3)
    yield fanout
    fanout.close()


def test_every_subscriber_gets_events_in_order(fanout):
    a, b = RecordingChannel(), RecordingChannel()
    fanout.subscribe(a, name="a")
    fanout.subscribe(b, name="b")

    events = [_event(value=v) for v in (91.0, 92.0, 93.0)]
    for e in events:
        assert fanout.publish(e) == 2
    assert fanout.flush()

    assert a.events == events
    assert b.events == events


def test_slow_subscriber_does_not_block_others(fanout):
    slow, fast = BlockingChannel(), RecordingChannel()
    slow_sub = fanout.subscribe(slow, name="slow")
    fanout.subscribe(fast, name="fast")

    start = time.monotonic()
    for v in range(10):
        fanout.publish(_event(value=81.0 + v))
    elapsed = time.monotonic() - start

    assert elapsed < 1
    assert fanout.subscribers()[1].drain(5)
    assert len(fast.events) == 10
    assert slow_sub.dropped > 0

    slow.release.set()
    assert slow_sub.drain(5)
    assert len(slow.events) == 10 - slow_sub.dropped


def test_failing_channel_is_isolated(fanout):
    good = RecordingChannel()
    broken = fanout.subscribe(BrokenChannel(), name="broken")
    fanout.subscribe(good, name="good")

    fanout.publish(_event())
    fanout.publish(_event(EventKind.ALERT_RESOLVED))
    assert fanout.flush()

    assert good.kinds == ["alert.created", "alert.resolved"]
    assert broken.failed == 2
    assert broken.alive


def test_unsubscribed_channel_stops_receiving(fanout):
    rec = RecordingChannel()
    sub = fanout.subscribe(rec, name="rec")
    fanout.publish(_event())
    fanout.flush()

    assert fanout.unsubscribe(sub)
    assert not fanout.unsubscribe(sub)
    fanout.publish(_event(EventKind.ALERT_RESOLVED))

    assert rec.kinds == ["alert.created"]
    assert fanout.subscribers() == []


def test_publish_without_subscribers(fanout):
    assert fanout.publish(_event()) == 0
    assert fanout.published == 1


def test_duplicate_subscriber_name(fanout):
    fanout.subscribe(RecordingChannel(), name="ws")
    with pytest.raises(ValueError, match="already in use"):
        fanout.subscribe(RecordingChannel(), name="ws")


def test_close_delivers_queued_events(context):
    fanout = NotificationFanout(context=context)
    rec = RecordingChannel()
    sub = fanout.subscribe(rec)
    for _ in range(5):
        fanout.publish(_event())
    fanout.close()
    assert len(rec.events) == 5
    assert not sub.alive

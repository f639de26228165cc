"""Shared test fixtures."""
import os
import sys
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alerts.rule_store import RuleStore, StaticRuleSource, parse_rule
from alerts.store import AlertStore
from monitor.sources.base import Series, TimeSeriesResult
from utils.context import RuntimeContext

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

CPU_RULE = {
    "id": "cpu-high",
    "name": "High CPU",
    "type": "prometheus",
    "query": "cpu_usage_percent",
    "severity": "warning",
    "threshold": {"operator": ">", "value": 80},
    "evaluation_interval_seconds": 60,
}

DISK_RULE = {
    "id": "disk-low",
    "name": "Low disk",
    "type": "prometheus",
    "query": "disk_free_percent",
    "severity": "critical",
    "threshold": {"operator": "<", "value": 10},
    "evaluation_interval_seconds": 300,
}


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=FIXED_NOW):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, seconds):
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)


class RecordingChannel:
    """Channel that keeps every event it receives."""

    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)

    @property
    def kinds(self):
        return [e.kind.value for e in self.events]


class FakeAdapter:
    """Data source adapter returning canned series or raising a canned error."""

    def __init__(self, values=None, error=None, delay=0, selector="instance"):
        self.values = values or {}
        self.error = error
        self.delay = delay
        self.selector = selector
        self.calls = []
        self._lock = threading.Lock()

    def query(self, source, query_string, time_range, step, timeout=None):
        with self._lock:
            self.calls.append({"source": source, "query": query_string, "time_range": time_range,
                               "step": step, "timeout": timeout})
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        series = [
            Series(labels={self.selector: rid}, points=[(time_range.end, float(v))])
            for rid, v in self.values.items()
        ]
        return TimeSeriesResult(source=source, series=series)


def make_rule(**overrides):
    raw = dict(CPU_RULE)
    raw.update(overrides)
    return parse_rule(raw)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def context(clock):
    return RuntimeContext(config={}, clock=clock)


@pytest.fixture
def temp_store(context):
    """AlertStore on a temporary SQLite file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    store = AlertStore(db_path, context=context)
    store.connect()
    yield store
    store.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def cpu_rule():
    return make_rule()


@pytest.fixture
def rule_store(context):
    store = RuleStore(StaticRuleSource([CPU_RULE, DISK_RULE]), context=context)
    store.load()
    return store

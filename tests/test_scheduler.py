"""Tests for the evaluation scheduler."""
import logging
import sys
import os
import threading
import time
from unittest.mock import MagicMock

import pytest
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alerts.engine import AlertEngine
from alerts.lifecycle import Action
from alerts.rule_store import StaticRuleSource
from models.enums import AlertStatus, Reducer, SourceKind
from monitor.scheduler import EvaluationScheduler, extract_samples
from monitor.sources import SourceRegistry
from monitor.sources.base import Series, TimeSeriesResult
from utils.errors import QueryError
from conftest import CPU_RULE, DISK_RULE, FIXED_NOW, FakeAdapter, make_rule


def _wait_for(predicate, timeout=5):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def adapter():
    return FakeAdapter(values={"server-001": 95.0, "server-002": 40.0})


@pytest.fixture
def engine(temp_store, context):
    return AlertEngine(temp_store, context=context)


@pytest.fixture
def scheduler(rule_store, adapter, engine, context):
    registry = SourceRegistry({SourceKind.PROMETHEUS: adapter})
    sched = EvaluationScheduler(rule_store, registry, engine, context=context,
                                max_concurrency=4, poll_interval=0.01)
    yield sched
    sched.stop()


# ── Samples ─────────────────────────────────────────────

def test_extract_samples_uses_resource_label_and_reducer():
    rule = make_rule(reducer="max")
    result = TimeSeriesResult(source="prometheus", series=[
        Series(labels={"instance": "server-001"}, points=[(FIXED_NOW, 70.0), (FIXED_NOW, 90.0), (FIXED_NOW, 80.0)]),
        Series(labels={"job": "node"}, points=[(FIXED_NOW, 99.0)]),
        Series(labels={"instance": "server-002"}, points=[]),
    ])
    assert extract_samples(rule, result) == [("server-001", 90.0)]


@pytest.mark.parametrize("reducer,expected", [
    (Reducer.LAST, 80.0), (Reducer.AVG, 80.0), (Reducer.MIN, 70.0), (Reducer.MAX, 90.0),
])
def test_series_reducers(reducer, expected):
    series = Series(points=[(FIXED_NOW, 70.0), (FIXED_NOW, 90.0), (FIXED_NOW, float("nan")), (FIXED_NOW, 80.0)])
    assert series.reduce(reducer) == expected


# ── Ticks ───────────────────────────────────────────────

def test_tick_evaluates_every_matched_resource(scheduler, rule_store, adapter, temp_store):
    result = scheduler.run_tick(rule_store.get("cpu-high"))

    assert result.ok
    assert result.samples == 2
    assert [t.action for t in result.transitions] == [Action.CREATE, Action.NOOP]
    alerts, total = temp_store.list()
    assert total == 1 and alerts[0].resource_id == "server-001"


def test_tick_builds_query_from_rule(scheduler, rule_store, adapter):
    scheduler.run_tick(rule_store.get("cpu-high"))
    call = adapter.calls[0]
    assert call["source"] == "prometheus"
    assert call["query"] == "cpu_usage_percent"
    assert call["time_range"].end == FIXED_NOW
    assert call["time_range"].seconds == 300
    assert call["step"] == 60
    assert call["timeout"] == 30


def test_query_failure_records_status_and_leaves_alerts(scheduler, rule_store, adapter, temp_store):
    rule = rule_store.get("cpu-high")
    scheduler.run_tick(rule)
    before = temp_store.list()[0][0]

    adapter.error = QueryError(QueryError.BACKEND_ERROR, "HTTP 503", source="prometheus")
    result = scheduler.run_tick(rule)

    assert not result.ok
    assert result.error.kind == QueryError.BACKEND_ERROR
    after = temp_store.get(before.id)
    assert after.status is AlertStatus.ACTIVE
    assert after.value == before.value
    status = scheduler.status()["cpu-high"]
    assert status.consecutive_failures == 1
    assert status.failures == 1
    assert status.evaluations == 2
    assert "HTTP 503" in status.last_error


def test_success_resets_failure_streak(scheduler, rule_store, adapter):
    rule = rule_store.get("cpu-high")
    adapter.error = QueryError(QueryError.TIMEOUT, "slow")
    scheduler.run_tick(rule)
    scheduler.run_tick(rule)
    adapter.error = None
    scheduler.run_tick(rule)
    status = scheduler.status()["cpu-high"]
    assert status.consecutive_failures == 0
    assert status.failures == 2
    assert status.last_error is None


def test_unexpected_adapter_exception_becomes_backend_error(scheduler, rule_store, adapter):
    adapter.error = RuntimeError("boom")
    result = scheduler.run_tick(rule_store.get("cpu-high"))
    assert result.error.kind == QueryError.BACKEND_ERROR
    assert "boom" in str(result.error)


def test_adapter_timeout(rule_store, engine, context):
    slow = FakeAdapter(values={"server-001": 99.0}, delay=0.5)
    sched = EvaluationScheduler(rule_store, SourceRegistry({"prometheus": slow}), engine, context=context)
    try:
        result = sched.run_tick(make_rule(timeout_seconds=0.05))
    finally:
        sched.stop()
    assert not result.ok
    assert result.error.kind == QueryError.TIMEOUT
    assert engine.store.list()[1] == 0


def test_unregistered_source_kind(scheduler):
    rule = make_rule(type="gcp", query={"metric_type": "compute.googleapis.com/instance/cpu/utilization"})
    result = scheduler.run_tick(rule)
    assert result.error.kind == QueryError.BACKEND_ERROR
    assert result.error.source == "gcp"


def test_failure_streak_escalates_once(scheduler, rule_store, adapter, caplog):
    adapter.error = QueryError(QueryError.BACKEND_ERROR, "down")
    rule = rule_store.get("cpu-high")
    with caplog.at_level(logging.WARNING, logger="infrawatch"):
        for _ in range(7):
            scheduler.run_tick(rule)
    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert len(critical) == 1
    assert "cpu-high" in critical[0].getMessage()


def test_one_bad_sample_does_not_stop_the_others(rule_store, adapter, context):
    engine = MagicMock()
    engine.process.side_effect = [RuntimeError("db locked"), MagicMock(action=Action.CREATE)]
    sched = EvaluationScheduler(rule_store, SourceRegistry({"prometheus": adapter}), engine, context=context)
    try:
        result = sched.run_tick(rule_store.get("cpu-high"))
    finally:
        sched.stop()
    assert result.ok
    assert result.failed_samples == 1
    assert len(result.transitions) == 1
    assert engine.process.call_count == 2


def test_evaluate_all_runs_enabled_rules(scheduler):
    results = scheduler.evaluate_all()
    assert sorted(r.rule_id for r in results) == ["cpu-high", "disk-low"]


# ── Background scheduling ───────────────────────────────

def test_start_runs_every_rule_immediately(scheduler, adapter):
    scheduler.start()
    assert _wait_for(lambda: len(scheduler.status()) == 2 and not scheduler.in_flight())
    assert len(adapter.calls) == 2
    scheduler.stop()
    assert not scheduler.running


def test_overrun_reruns_once_after_completion(rule_store, engine, context):
    release = threading.Event()
    calls = []

    class BlockingAdapter(FakeAdapter):
        def query(self, *args, **kwargs):
            calls.append(time.monotonic())
            if len(calls) == 1:
                release.wait(5)
            return super().query(*args, **kwargs)

    sched = EvaluationScheduler(rule_store, SourceRegistry({"prometheus": BlockingAdapter()}), engine,
                                context=context)
    try:
        sched._dispatch("cpu-high")
        assert _wait_for(lambda: len(calls) == 1)
        # three missed ticks fold into one re-run
        sched._dispatch("cpu-high")
        sched._dispatch("cpu-high")
        sched._dispatch("cpu-high")
        assert len(calls) == 1
        release.set()
        assert _wait_for(lambda: len(calls) == 2 and not sched.in_flight())
        time.sleep(0.05)
        assert len(calls) == 2
    finally:
        sched.stop()


def test_reload_unschedules_removed_rules(scheduler, rule_store):
    scheduler.start()
    assert len(scheduler._jobs.get_jobs("disk-low")) == 1

    rule_store.reload(StaticRuleSource([CPU_RULE, dict(DISK_RULE, id="mem-high", query="mem_used")]))

    assert scheduler._jobs.get_jobs("disk-low") == []
    assert len(scheduler._jobs.get_jobs("cpu-high")) == 1
    assert len(scheduler._jobs.get_jobs("mem-high")) == 1


def test_reload_reschedules_changed_rules(scheduler, rule_store):
    scheduler.start()
    rule_store.reload(StaticRuleSource([dict(CPU_RULE, evaluation_interval_seconds=15), DISK_RULE]))
    jobs = scheduler._jobs.get_jobs("cpu-high")
    assert len(jobs) == 1
    assert jobs[0].interval == 15


def test_removed_rule_is_not_dispatched(scheduler, rule_store, adapter):
    rule_store.reload(StaticRuleSource([DISK_RULE]))
    assert scheduler._dispatch("cpu-high") is not None
    assert adapter.calls == []


def test_stop_prevents_new_ticks(scheduler, adapter):
    scheduler.stop()
    scheduler._dispatch("cpu-high")
    assert adapter.calls == []

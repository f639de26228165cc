"""Tests for rule parsing, loading and hot reload."""
import dataclasses
import sys
import os

import pytest
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alerts.rule_store import RuleStore, StaticRuleSource, YamlRuleSource, parse_rule, parse_rules
from config import DEFAULT_RULES
from models.enums import Reducer, Severity, SourceKind
from models.rules import AzureMonitorQuery, PrometheusQuery
from utils.errors import ConfigError
from conftest import CPU_RULE, DISK_RULE


def _with(**overrides):
    raw = dict(CPU_RULE)
    raw.update(overrides)
    return raw


def _without(field):
    raw = dict(CPU_RULE)
    del raw[field]
    return raw


# ── Parsing ─────────────────────────────────────────────

def test_parse_rule_defaults():
    rule = parse_rule({k: v for k, v in CPU_RULE.items() if k != "severity"})
    assert rule.name == "High CPU"
    assert rule.severity is Severity.WARNING
    assert rule.type is SourceKind.PROMETHEUS
    assert rule.query == PrometheusQuery("cpu_usage_percent")
    assert rule.resource_selector == "instance"
    assert rule.resource_type == "server"
    assert rule.window_seconds == 300
    assert rule.reducer is Reducer.LAST
    assert rule.timeout_seconds is None
    assert rule.enabled


def test_parse_rule_threshold_comparison():
    rule = parse_rule(CPU_RULE)
    assert rule.is_breached(92.5)
    assert not rule.is_breached(80)
    assert not rule.is_breached(None)


def test_severity_is_case_insensitive():
    assert parse_rule(_with(severity="CRITICAL")).severity is Severity.CRITICAL


@pytest.mark.parametrize("field", ["id", "name", "type", "query", "threshold", "evaluation_interval_seconds"])
def test_missing_required_field(field):
    with pytest.raises(ValueError, match=field):
        parse_rule(_without(field))


def test_invalid_operator():
    with pytest.raises(ValueError, match="invalid operator"):
        parse_rule(_with(threshold={"operator": "=>", "value": 1}))


def test_non_numeric_threshold():
    with pytest.raises(ValueError, match="numeric"):
        parse_rule(_with(threshold={"operator": ">", "value": "high"}))


@pytest.mark.parametrize("interval", [0, -5, "soon"])
def test_non_positive_interval(interval):
    with pytest.raises(ValueError, match="evaluation_interval_seconds"):
        parse_rule(_with(evaluation_interval_seconds=interval))


@pytest.mark.parametrize("interval", [1.5, True])
def test_interval_must_be_whole_seconds(interval):
    with pytest.raises(ValueError, match="evaluation_interval_seconds"):
        parse_rule(_with(evaluation_interval_seconds=interval))


def test_whole_float_interval_is_accepted():
    assert parse_rule(_with(evaluation_interval_seconds=30.0)).evaluation_interval_seconds == 30


@pytest.mark.parametrize("enabled", ["false", 0, "no"])
def test_enabled_must_be_boolean(enabled):
    with pytest.raises(ValueError, match="enabled must be true or false"):
        parse_rule(_with(enabled=enabled))


def test_unknown_source_kind():
    with pytest.raises(ValueError, match="unknown type"):
        parse_rule(_with(type="datadog"))


def test_azure_query_mapping():
    rule = parse_rule(_with(type="azure", query={
        "resource_uri": "/subscriptions/s/vm/web-1", "metric_name": "Percentage CPU",
    }))
    assert isinstance(rule.query, AzureMonitorQuery)
    assert rule.query.aggregation == "Average"
    assert "metricnames=Percentage CPU" in rule.query.render()


def test_azure_query_needs_mapping():
    with pytest.raises(ValueError, match="mapping"):
        parse_rule(_with(type="azure", query="cpu"))


def test_gcp_query_missing_field():
    with pytest.raises(ValueError, match="metric_type"):
        parse_rule(_with(type="gcp", query={"filter": "resource.type=gce_instance"}))


def test_unknown_query_field():
    with pytest.raises(ValueError, match="unknown query fields"):
        parse_rule(_with(query={"expr": "up", "lang": "promql"}))


def test_parse_rules_collects_every_error():
    bad = [_without("query"), _with(id="x", threshold={"operator": "~", "value": 1})]
    with pytest.raises(ConfigError) as exc:
        parse_rules(bad)
    assert len(exc.value.errors) == 2


def test_duplicate_rule_id():
    with pytest.raises(ConfigError, match="duplicate rule id 'cpu-high'"):
        parse_rules([CPU_RULE, dict(CPU_RULE)])


def test_rules_are_immutable():
    rule = parse_rule(_with(labels={"team": "infra"}))
    with pytest.raises(dataclasses.FrozenInstanceError):
        rule.severity = Severity.CRITICAL
    with pytest.raises(TypeError):
        rule.labels["team"] = "other"


# ── Sources ─────────────────────────────────────────────

def test_bundled_rules_file_is_valid():
    rules = parse_rules(YamlRuleSource(DEFAULT_RULES).read())
    ids = {r.id for r in rules}
    assert "cpu-high" in ids
    assert any(not r.enabled for r in rules)


def test_yaml_source_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        YamlRuleSource(tmp_path / "nope.yaml").read()


def test_yaml_source_invalid_yaml(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("rules: [unclosed\n")
    with pytest.raises(ConfigError, match="not valid YAML"):
        YamlRuleSource(path).read()


def test_yaml_source_needs_rules_list(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("rules: cpu-high\n")
    with pytest.raises(ConfigError, match="'rules' list"):
        YamlRuleSource(path).read()


# ── Rule store ──────────────────────────────────────────

def test_load_and_get(context):
    store = RuleStore(StaticRuleSource([CPU_RULE, DISK_RULE]), context=context)
    rules = store.load()
    assert [r.id for r in rules] == ["cpu-high", "disk-low"]
    assert store.get("cpu-high").threshold.value == 80
    assert store.get("missing") is None
    assert "disk-low" in store
    assert len(store) == 2
    assert store.version == 1


def test_disabled_rules_are_loaded_but_not_enabled(context):
    store = RuleStore(StaticRuleSource([CPU_RULE, dict(DISK_RULE, enabled=False)]), context=context)
    store.load()
    assert len(store.get_all_rules()) == 2
    assert [r.id for r in store.get_enabled_rules()] == ["cpu-high"]


def test_load_without_source(context):
    with pytest.raises(ConfigError, match="No rule source"):
        RuleStore(context=context).load()


def test_rejected_reload_keeps_previous_set(rule_store):
    before = rule_store.snapshot()
    with pytest.raises(ConfigError):
        rule_store.reload(StaticRuleSource([_without("threshold")]))
    assert rule_store.snapshot() is before
    assert rule_store.get("cpu-high") is not None
    assert rule_store.version == 1


def test_reload_swaps_atomically_and_notifies(rule_store):
    seen = []
    rule_store.on_reload(lambda old, new: seen.append((set(old), set(new))))

    rule_store.reload(StaticRuleSource([_with(threshold={"operator": ">", "value": 90})]))

    assert seen == [({"cpu-high", "disk-low"}, {"cpu-high"})]
    assert rule_store.get("disk-low") is None
    assert rule_store.get("cpu-high").threshold.value == 90
    assert rule_store.version == 2

"""Alert rule loading, validation and hot reload."""
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Protocol, runtime_checkable

import yaml

from models.enums import Reducer, Severity, SourceKind
from models.rules import QUERY_TYPES, Rule, Threshold
from utils.constants import (
    DEFAULT_EVALUATION_WINDOW_SECONDS, DEFAULT_RESOURCE_SELECTOR, DEFAULT_RESOURCE_TYPE, VALID_OPERATORS,
)
from utils.context import RuntimeContext
from utils.errors import ConfigError

REQUIRED_FIELDS = ("id", "name", "type", "query", "threshold", "evaluation_interval_seconds")

_QUERY_FIELDS = {
    SourceKind.PROMETHEUS: ("expr",),
    SourceKind.AZURE: ("resource_uri", "metric_name"),
    SourceKind.GCP: ("metric_type",),
}


@runtime_checkable
class RuleSource(Protocol):
    def read(self) -> list: ...


class YamlRuleSource:
    """Rules from a YAML file with a top-level ``rules:`` list."""

    def __init__(self, path):
        self.path = Path(path)

    def read(self):
        if not self.path.exists():
            raise ConfigError(f"Rules file not found: {self.path}")
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Rules file {self.path} is not valid YAML", [str(e)]) from e
        if not isinstance(data, dict) or not isinstance(data.get("rules", []), list):
            raise ConfigError(f"Rules file {self.path} must contain a 'rules' list")
        return data.get("rules", [])

    def __repr__(self):
        return f"YamlRuleSource({str(self.path)!r})"


class StaticRuleSource:
    """Rules supplied in memory, e.g. by an API or a test."""

    def __init__(self, rules):
        self.rules = list(rules)

    def read(self):
        return list(self.rules)


def _parse_query(kind, raw, where):
    if isinstance(raw, str):
        if kind is not SourceKind.PROMETHEUS:
            raise ValueError(f"{where}: {kind.value} queries need a mapping, not a string")
        raw = {"expr": raw}
    if not isinstance(raw, dict):
        raise ValueError(f"{where}: query must be a string or mapping")
    missing = [k for k in _QUERY_FIELDS[kind] if not raw.get(k)]
    if missing:
        raise ValueError(f"{where}: query is missing {', '.join(missing)}")
    query_cls = QUERY_TYPES[kind]
    allowed = set(query_cls.__dataclass_fields__)
    unknown = set(raw) - allowed
    if unknown:
        raise ValueError(f"{where}: unknown query fields {sorted(unknown)}")
    return query_cls(**raw)


def _parse_threshold(raw, where):
    if not isinstance(raw, dict):
        raise ValueError(f"{where}: threshold must be a mapping with operator and value")
    op = raw.get("operator")
    if op not in VALID_OPERATORS:
        raise ValueError(f"{where}: invalid operator {op!r}")
    try:
        value = float(raw["value"])
    except (KeyError, TypeError, ValueError):
        raise ValueError(f"{where}: threshold value must be numeric") from None
    return Threshold(operator=op, value=value)


def _positive_number(raw, name, where, cast=int):
    if isinstance(raw, bool):
        raise ValueError(f"{where}: {name} must be a number")
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{where}: {name} must be a number") from None
    if cast is int and float(raw) != value:
        raise ValueError(f"{where}: {name} must be a whole number of seconds")
    if value <= 0:
        raise ValueError(f"{where}: {name} must be positive")
    return value


def parse_rule(r):
    """Build one Rule from a raw mapping. Raises ValueError on any violation."""
    if not isinstance(r, dict):
        raise ValueError("rule entry must be a mapping")
    where = f"rule {r.get('id', '<no id>')!r}"
    missing = [f for f in REQUIRED_FIELDS if r.get(f) in (None, "")]
    if missing:
        raise ValueError(f"{where}: missing required field(s) {', '.join(missing)}")

    try:
        kind = SourceKind(r["type"])
    except ValueError:
        raise ValueError(f"{where}: unknown type {r['type']!r}") from None
    try:
        severity = Severity(str(r.get("severity", "warning")).lower())
    except ValueError:
        raise ValueError(f"{where}: unknown severity {r.get('severity')!r}") from None
    try:
        reducer = Reducer(r.get("reducer", "last"))
    except ValueError:
        raise ValueError(f"{where}: unknown reducer {r.get('reducer')!r}") from None

    enabled = r.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ValueError(f"{where}: enabled must be true or false, not {enabled!r}")

    timeout = r.get("timeout_seconds")
    labels = r.get("labels") or {}
    if not isinstance(labels, dict):
        raise ValueError(f"{where}: labels must be a mapping")

    return Rule(
        id=str(r["id"]),
        name=str(r["name"]),
        type=kind,
        query=_parse_query(kind, r["query"], where),
        severity=severity,
        threshold=_parse_threshold(r["threshold"], where),
        evaluation_interval_seconds=_positive_number(
            r["evaluation_interval_seconds"], "evaluation_interval_seconds", where),
        resource_selector=r.get("resource_selector", DEFAULT_RESOURCE_SELECTOR),
        resource_type=r.get("resource_type", DEFAULT_RESOURCE_TYPE),
        description=r.get("description", ""),
        enabled=enabled,
        timeout_seconds=None if timeout is None else _positive_number(timeout, "timeout_seconds", where, float),
        window_seconds=_positive_number(
            r.get("window_seconds", DEFAULT_EVALUATION_WINDOW_SECONDS), "window_seconds", where),
        reducer=reducer,
        labels={str(k): str(v) for k, v in labels.items()},
    )


def parse_rules(raw_rules):
    """Validate a whole rule set. Returns rules in input order.

    Every violation is collected before raising, so one ConfigError lists
    all of them.
    """
    errors = []
    rules = []
    seen = set()
    for index, raw in enumerate(raw_rules):
        try:
            rule = parse_rule(raw)
        except ValueError as e:
            errors.append(f"#{index}: {e}")
            continue
        if rule.id in seen:
            errors.append(f"#{index}: duplicate rule id {rule.id!r}")
            continue
        seen.add(rule.id)
        rules.append(rule)
    if errors:
        raise ConfigError("Invalid rule set", errors)
    return rules


class RuleStore:
    """Holds the active, immutable rule set.

    A load or reload replaces the whole set atomically; readers always see
    either the old or the new set. Listeners registered with
    ``on_reload(callback)`` are called with ``(old_rules, new_rules)``
    dicts after every accepted swap.
    """

    def __init__(self, source=None, context=None):
        self.context = context or RuntimeContext()
        self.logger = self.context.get_logger("alerts.rules")
        self.source = source
        self._rules = MappingProxyType({})
        self._lock = threading.Lock()
        self._listeners = []
        self.version = 0

    def on_reload(self, callback):
        self._listeners.append(callback)

    def load(self, source=None):
        """Read, validate and activate a rule set. Raises ConfigError."""
        source = source or self.source
        if source is None:
            raise ConfigError("No rule source configured")
        rules = parse_rules(source.read())
        new = MappingProxyType({r.id: r for r in rules})
        with self._lock:
            old = self._rules
            self._rules = new
            self.source = source
            self.version += 1
        self.logger.info(f"Loaded {len(new)} rules ({sum(r.enabled for r in rules)} enabled) from {source!r}")
        for callback in list(self._listeners):
            callback(old, new)
        return tuple(rules)

    def reload(self, source=None):
        """Like load, but a rejected set is logged and the old set kept."""
        try:
            return self.load(source)
        except ConfigError as e:
            self.logger.error(f"Rejected rule reload, keeping {len(self._rules)} active rules: {e}")
            raise

    def get(self, rule_id):
        return self._rules.get(rule_id)

    def get_all_rules(self):
        return list(self._rules.values())

    def get_enabled_rules(self):
        return [r for r in self._rules.values() if r.enabled]

    def snapshot(self):
        """Current rule mapping. Immutable."""
        return self._rules

    def __contains__(self, rule_id):
        return rule_id in self._rules

    def __len__(self):
        return len(self._rules)

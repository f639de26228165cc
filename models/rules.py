"""Immutable rule definitions and their per-source query payloads."""
import operator as _op
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Union

from models.enums import Reducer, Severity, SourceKind
from utils.constants import (
    DEFAULT_EVALUATION_WINDOW_SECONDS, DEFAULT_RESOURCE_SELECTOR, DEFAULT_RESOURCE_TYPE,
)

OPERATOR_MAP = {
    "<": _op.lt,
    ">": _op.gt,
    "<=": _op.le,
    ">=": _op.ge,
    "==": _op.eq,
    "!=": _op.ne,
}


@dataclass(frozen=True)
class PrometheusQuery:
    expr: str
    kind = SourceKind.PROMETHEUS

    def render(self):
        return self.expr


@dataclass(frozen=True)
class AzureMonitorQuery:
    resource_uri: str
    metric_name: str
    aggregation: str = "Average"
    kind = SourceKind.AZURE

    def render(self):
        return f"{self.resource_uri}?metricnames={self.metric_name}&aggregation={self.aggregation}"


@dataclass(frozen=True)
class GcpMonitoringQuery:
    metric_type: str
    filter: str = ""
    aligner: str = "ALIGN_MEAN"
    kind = SourceKind.GCP

    def render(self):
        clause = f'metric.type="{self.metric_type}"'
        if self.filter:
            clause = f"{clause} AND {self.filter}"
        return f"{clause} | {self.aligner}"


QuerySpec = Union[PrometheusQuery, AzureMonitorQuery, GcpMonitoringQuery]

QUERY_TYPES = {
    SourceKind.PROMETHEUS: PrometheusQuery,
    SourceKind.AZURE: AzureMonitorQuery,
    SourceKind.GCP: GcpMonitoringQuery,
}


@dataclass(frozen=True)
class Threshold:
    operator: str
    value: float

    def breached_by(self, value):
        if value is None:
            return False
        return OPERATOR_MAP[self.operator](value, self.value)

    def __str__(self):
        return f"{self.operator} {self.value:g}"


@dataclass(frozen=True)
class Rule:
    id: str
    name: str
    type: SourceKind
    query: QuerySpec
    severity: Severity
    threshold: Threshold
    evaluation_interval_seconds: int
    resource_selector: str = DEFAULT_RESOURCE_SELECTOR
    resource_type: str = DEFAULT_RESOURCE_TYPE
    description: str = ""
    enabled: bool = True
    timeout_seconds: Optional[float] = None
    window_seconds: int = DEFAULT_EVALUATION_WINDOW_SECONDS
    reducer: Reducer = Reducer.LAST
    labels: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        # frozen: freeze the label map too
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))

    def is_breached(self, value):
        return self.threshold.breached_by(value)

"""Data models."""
from models.enums import Severity, SourceKind, AlertStatus, InsightType, Reducer, EventKind
from models.rules import (
    Rule, Threshold, PrometheusQuery, AzureMonitorQuery, GcpMonitoringQuery, QUERY_TYPES, OPERATOR_MAP,
)
from models.alerts import Alert, AlertHistoryEntry
from models.insights import Insight
from models.events import MonitorEvent

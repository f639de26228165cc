"""Enums for rules, alerts, insights and events."""
from enum import Enum


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SourceKind(str, Enum):
    PROMETHEUS = "prometheus"
    AZURE = "azure"
    GCP = "gcp"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"

    @property
    def is_open(self):
        return self is not AlertStatus.RESOLVED


class InsightType(str, Enum):
    ANOMALY = "anomaly"
    TREND = "trend"
    RECOMMENDATION = "recommendation"


class Reducer(str, Enum):
    LAST = "last"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


class EventKind(str, Enum):
    ALERT_CREATED = "alert.created"
    ALERT_REFRESHED = "alert.refreshed"
    ALERT_ACKNOWLEDGED = "alert.acknowledged"
    ALERT_RESOLVED = "alert.resolved"
    INSIGHT_ATTACHED = "insight.attached"

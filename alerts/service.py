"""In-process alert and insight operations for the CLI and API layers."""
from dataclasses import dataclass, field

from models.enums import AlertStatus, EventKind, InsightType, Severity, SourceKind
from models.events import MonitorEvent
from utils.context import RuntimeContext


@dataclass
class AlertPage:
    alerts: list = field(default_factory=list)
    total: int = 0


@dataclass
class InsightPage:
    insights: list = field(default_factory=list)
    total: int = 0


def _health(open_total):
    if open_total == 0:
        return "healthy"
    if open_total <= 5:
        return "warning"
    return "critical"


class AlertService:
    """Typed operations over the alert store.

    Errors (NotFoundError, InvalidTransitionError) propagate to the caller
    unchanged; mapping them to a transport is not this layer's concern.
    """

    def __init__(self, store, fanout=None, context=None):
        self.store = store
        self.fanout = fanout
        self.context = context or RuntimeContext()
        self.logger = self.context.get_logger("alerts.service")

    def list_alerts(self, severity=None, type=None, status=None, rule_id=None, resource_id=None,
                    limit=50, offset=0):
        alerts, total = self.store.list(
            severity=Severity(severity) if severity else None,
            type=SourceKind(type) if type else None,
            status=AlertStatus(status) if status else None,
            rule_id=rule_id,
            resource_id=resource_id,
            limit=limit,
            offset=offset,
        )
        return AlertPage(alerts=alerts, total=total)

    def get_alert(self, alert_id):
        return self.store.get(alert_id)

    def acknowledge_alert(self, alert_id, comment=None, actor="anonymous"):
        transition = self.store.acknowledge(
            alert_id, actor, comment,
            on_commit=lambda t: self._publish(EventKind.ALERT_ACKNOWLEDGED, t.alert),
        )
        self.logger.info(f"Alert {alert_id} acknowledged by {actor}")
        return transition.alert

    def resolve_alert(self, alert_id, resolution, root_cause=None, actor="anonymous"):
        transition = self.store.resolve(
            alert_id, actor, resolution, root_cause,
            on_commit=lambda t: self._publish(EventKind.ALERT_RESOLVED, t.alert),
        )
        self.logger.info(f"Alert {alert_id} resolved by {actor}: {resolution}")
        return transition.alert

    def list_insights(self, type=None, resource_id=None, limit=50, offset=0):
        insights, total = self.store.list_insights(
            type=InsightType(type) if type else None,
            resource_id=resource_id,
            limit=limit,
            offset=offset,
        )
        return InsightPage(insights=insights, total=total)

    def get_insight(self, insight_id):
        return self.store.get_insight(insight_id)

    def summary(self):
        stats = self.store.stats()
        stats["system_health"] = _health(stats["open_total"])
        return stats

    def _publish(self, kind, alert):
        if self.fanout is None:
            return
        self.fanout.publish(MonitorEvent(kind=kind, subject=alert, timestamp=self.context.now()))

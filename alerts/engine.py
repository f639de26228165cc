"""Alert evaluation engine: threshold decisions, dedup and correlation."""
import hashlib
import math
import uuid
from dataclasses import replace
from datetime import timedelta

from alerts.lifecycle import Action, Decision
from models.alerts import Alert, AlertHistoryEntry
from models.enums import AlertStatus, EventKind
from models.events import MonitorEvent
from utils.constants import (
    AUTO_RESOLUTION, CORRELATION_LOOKBACK_SECONDS, HISTORY_NOISE_FLOOR, HISTORY_NOISE_TOLERANCE,
    SYSTEM_ACTOR,
)
from utils.context import RuntimeContext


def make_fingerprint(rule_id, resource_id):
    """Stable dedup key for a (rule, resource) pair."""
    raw = f"{rule_id}\x1f{resource_id}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


def value_changed(previous, current, tolerance=HISTORY_NOISE_TOLERANCE):
    return not math.isclose(current, previous, rel_tol=tolerance, abs_tol=HISTORY_NOISE_FLOOR)


def _summary(rule, resource_id, value):
    return f"{rule.name}: {resource_id} = {value:g} ({rule.threshold})"


def decide(rule, resource_id, value, current, now, tolerance=HISTORY_NOISE_TOLERANCE):
    """Next state for one sample given the open alert (or None).

    Pure: reads nothing and writes nothing.
    """
    breached = rule.is_breached(value)

    if current is None:
        if not breached:
            return Decision.noop()
        alert = Alert(
            id=str(uuid.uuid4()),
            fingerprint=make_fingerprint(rule.id, resource_id),
            rule_id=rule.id,
            name=rule.name,
            description=rule.description or _summary(rule, resource_id, value),
            severity=rule.severity,
            type=rule.type,
            status=AlertStatus.ACTIVE,
            created_at=now,
            last_seen_at=now,
            resource_id=resource_id,
            resource_type=rule.resource_type,
            value=value,
            threshold=rule.threshold.value,
            labels=dict(rule.labels),
        )
        return Decision(Action.CREATE, alert, AlertHistoryEntry(now, AlertStatus.ACTIVE, value))

    if breached:
        refreshed = replace(current, value=value, last_seen_at=now)
        last_recorded = current.history[-1].value if current.history else current.value
        if value_changed(last_recorded, value, tolerance):
            return Decision(Action.REFRESH_WITH_HISTORY, refreshed,
                            AlertHistoryEntry(now, current.status, value))
        return Decision(Action.REFRESH, refreshed)

    # Acknowledged alerts belong to a human and are only closed by resolve.
    if current.status is AlertStatus.ACTIVE:
        resolved = replace(
            current,
            status=AlertStatus.RESOLVED,
            value=value,
            last_seen_at=now,
            resolved_at=now,
            resolved_by=SYSTEM_ACTOR,
            resolution=AUTO_RESOLUTION,
        )
        return Decision(Action.AUTO_RESOLVE, resolved, AlertHistoryEntry(now, AlertStatus.RESOLVED, value))

    return Decision.noop()


class AlertEngine:
    """Turns (rule, resource, value) samples into alert transitions.

    Writes go through the AlertStore, notifications through the fanout and
    new alerts are handed to the insight enricher when one is configured.
    """

    def __init__(self, store, fanout=None, enricher=None, context=None,
                 history_noise_tolerance=None, correlation_lookback_seconds=None):
        self.store = store
        self.fanout = fanout
        self.enricher = enricher
        self.context = context or RuntimeContext()
        self.logger = self.context.get_logger("alerts.engine")

        cfg = self.context.section("alerts")
        self.tolerance = history_noise_tolerance if history_noise_tolerance is not None else \
            cfg.get("history_noise_tolerance", HISTORY_NOISE_TOLERANCE)
        lookback = correlation_lookback_seconds if correlation_lookback_seconds is not None else \
            self.context.section("insights").get("correlation_lookback_seconds", CORRELATION_LOOKBACK_SECONDS)
        self.correlation_lookback = timedelta(seconds=lookback)

    def process(self, rule, resource_id, value):
        """Apply one sample and return the resulting Transition."""
        fingerprint = make_fingerprint(rule.id, resource_id)
        transition = self.store.upsert(
            fingerprint,
            lambda current: decide(rule, resource_id, value, current, self.context.now(), self.tolerance),
            on_commit=self._publish_transition,
        )

        if transition.action is Action.CREATE:
            self.logger.info(f"Alert {transition.alert.id} created: {_summary(rule, resource_id, value)}")
        elif transition.action is Action.AUTO_RESOLVE:
            self.logger.info(f"Alert {transition.alert.id} auto-resolved: {rule.id} on {resource_id} = {value:g}")

        if transition.action is Action.CREATE:
            self._link_recent_insights(transition.alert)
            if self.enricher is not None:
                self.enricher.submit(transition.alert)
        return transition

    def preview(self, rule, resource_id, value):
        """The decision process() would apply right now, without writing."""
        current = self.store.find_open(make_fingerprint(rule.id, resource_id))
        return decide(rule, resource_id, value, current, self.context.now(), self.tolerance)

    # --- Insights ---

    def attach_insight(self, insight):
        """Store an insight, link it to open alerts on its resource, publish it."""
        saved = self.store.save_insight(insight)
        try:
            saved = self.correlate(saved)
        except Exception as e:
            self.logger.warning(f"Correlation failed for insight {saved.id}: {e}")
        self._publish(EventKind.INSIGHT_ATTACHED, saved)
        return saved

    def correlate(self, insight):
        """Add every open alert sharing the insight's resource to relatedAlerts."""
        open_ids = {a.id for a in self.store.open_alerts_for_resource(insight.resource_id)}
        missing = open_ids - insight.related_alerts
        if not missing:
            return insight
        self.logger.debug(f"Linking insight {insight.id} to alerts {sorted(missing)}")
        return self.store.link_insight(insight.id, missing)

    def _link_recent_insights(self, alert):
        try:
            since = alert.created_at - self.correlation_lookback
            insights, _ = self.store.list_insights(resource_id=alert.resource_id, since=since, limit=-1)
            for insight in insights:
                updated = self.store.link_insight(insight.id, {alert.id})
                self._publish(EventKind.INSIGHT_ATTACHED, updated)
        except Exception as e:
            self.logger.warning(f"Correlation failed for alert {alert.id}: {e}")

    def _publish_transition(self, transition):
        if transition.event_kind is not None:
            self._publish(transition.event_kind, transition.alert)

    def _publish(self, kind, subject):
        if self.fanout is None:
            return
        self.fanout.publish(MonitorEvent(kind=kind, subject=subject, timestamp=self.context.now()))

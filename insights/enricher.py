"""Asynchronous insight enrichment for newly created alerts."""
from concurrent.futures import ThreadPoolExecutor

from models.insights import Insight
from utils.context import RuntimeContext
from utils.errors import AdapterError


class InsightEnricher:
    """Runs the insight adapter off the evaluation path.

    ``submit(alert)`` returns at once; when the adapter answers, each
    insight is handed to ``on_insight`` (normally AlertEngine.attach_insight).
    A failing adapter only costs the insights of that call.
    """

    def __init__(self, adapter, on_insight=None, context=None, max_workers=None):
        self.adapter = adapter
        self.on_insight = on_insight
        self.context = context or RuntimeContext()
        self.logger = self.context.get_logger("insights.enricher")
        workers = max_workers or self.context.section("insights").get("max_workers", 2)
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="insights")
        self._closed = False

    def submit(self, alert):
        if self._closed:
            self.logger.debug(f"Enricher closed, skipping alert {alert.id}")
            return None
        return self._executor.submit(self.enrich, alert)

    def enrich(self, alert):
        """Ask the adapter about the alert's resource and attach the results."""
        context = {
            "alert_id": alert.id,
            "rule_id": alert.rule_id,
            "name": alert.name,
            "severity": alert.severity.value,
            "value": alert.value,
            "threshold": alert.threshold,
            "labels": dict(alert.labels),
            "created_at": alert.created_at.isoformat(),
        }
        try:
            insights = self.adapter.analyze(alert.resource_id, alert.resource_type, context) or []
        except AdapterError as e:
            self.logger.warning(f"Insight adapter failed for {alert.resource_id}: {e}")
            return []
        except Exception as e:
            self.logger.warning(f"Insight adapter raised unexpectedly for {alert.resource_id}: {e}")
            return []

        attached = []
        for insight in insights:
            if not isinstance(insight, Insight):
                self.logger.warning(f"Ignoring non-Insight result from adapter: {type(insight).__name__}")
                continue
            try:
                attached.append(self.on_insight(insight) if self.on_insight else insight)
            except Exception as e:
                self.logger.warning(f"Could not attach insight {insight.id}: {e}")
        self.logger.debug(f"Attached {len(attached)} insights for alert {alert.id}")
        return attached

    def close(self, wait=True):
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

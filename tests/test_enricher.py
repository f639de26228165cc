"""Tests for insight enrichment."""
import sys
import os
from datetime import timedelta

import pytest
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alerts.engine import decide
from insights.base import InsightAdapter
from insights.enricher import InsightEnricher
from models.enums import InsightType
from models.insights import Insight
from utils.errors import AdapterError
from conftest import FIXED_NOW, make_rule


def _alert():
    return decide(make_rule(labels={"team": "infra"}), "server-001", 92.5, None, FIXED_NOW).alert


def _insight(**kwargs):
    fields = dict(type="anomaly", description="Unusual CPU pattern", confidence=0.9,
                  resource_id="server-001", resource_type="server", created_at=FIXED_NOW)
    fields.update(kwargs)
    return Insight(**fields)


class StaticAdapter:
    def __init__(self, results=None, error=None):
        self.results = results or []
        self.error = error
        self.seen = []

    def analyze(self, resource_id, resource_type, context):
        self.seen.append((resource_id, resource_type, context))
        if self.error:
            raise self.error
        return self.results


@pytest.fixture
def attached():
    return []


def test_adapter_protocol():
    assert isinstance(StaticAdapter(), InsightAdapter)


def test_enrich_passes_alert_context_and_attaches(context, attached):
    adapter = StaticAdapter([_insight(), _insight(type="recommendation", confidence=0.4)])
    enricher = InsightEnricher(adapter, on_insight=lambda i: attached.append(i) or i, context=context)

    result = enricher.enrich(_alert())
    enricher.close()

    assert len(result) == 2
    assert attached == result
    resource_id, resource_type, ctx = adapter.seen[0]
    assert (resource_id, resource_type) == ("server-001", "server")
    assert ctx["rule_id"] == "cpu-high"
    assert ctx["labels"] == {"team": "infra"}
    assert ctx["value"] == 92.5


def test_adapter_error_omits_insights(context, attached, caplog):
    enricher = InsightEnricher(StaticAdapter(error=AdapterError("model unavailable")),
                               on_insight=attached.append, context=context)
    assert enricher.enrich(_alert()) == []
    enricher.close()
    assert attached == []
    assert "model unavailable" in caplog.text


def test_unexpected_adapter_exception_is_contained(context):
    enricher = InsightEnricher(StaticAdapter(error=KeyError("oops")), context=context)
    assert enricher.enrich(_alert()) == []
    enricher.close()


def test_non_insight_results_are_skipped(context, attached):
    adapter = StaticAdapter([{"type": "anomaly"}, _insight()])
    enricher = InsightEnricher(adapter, on_insight=lambda i: attached.append(i) or i, context=context)
    assert len(enricher.enrich(_alert())) == 1
    enricher.close()


def test_submit_runs_in_background_and_stops_after_close(context, attached):
    enricher = InsightEnricher(StaticAdapter([_insight()]), on_insight=lambda i: attached.append(i) or i,
                               context=context)
    future = enricher.submit(_alert())
    assert len(future.result(timeout=5)) == 1
    enricher.close()
    assert enricher.submit(_alert()) is None
    assert len(attached) == 1


@pytest.mark.parametrize("confidence", [-0.1, 1.5])
def test_insight_confidence_must_be_a_probability(confidence):
    with pytest.raises(ValueError, match="confidence"):
        _insight(confidence=confidence)


def test_insight_to_dict():
    insight = _insight(related_alerts={"b", "a"}, created_at=FIXED_NOW + timedelta(minutes=5))
    d = insight.to_dict()
    assert d["type"] == "anomaly"
    assert d["related_alerts"] == ["a", "b"]
    assert d["created_at"] == "2024-05-01T12:05:00+00:00"
    assert insight.type is InsightType.ANOMALY

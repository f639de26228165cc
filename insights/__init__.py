"""AI insight enrichment."""
from insights.base import InsightAdapter
from insights.enricher import InsightEnricher

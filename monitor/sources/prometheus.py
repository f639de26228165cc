"""Prometheus HTTP API adapter."""
import logging
import math
from datetime import datetime, timezone

from models.enums import SourceKind
from monitor.sources.base import Series, TimeSeriesResult
from utils.errors import QueryError
from utils.http_client import HTTPClient
from utils.rate_limiter import RateLimiter

logger = logging.getLogger("infrawatch.sources.prometheus")


def _point(ts, raw):
    try:
        value = float(raw)
    except (TypeError, ValueError):
        value = math.nan
    return datetime.fromtimestamp(float(ts), tz=timezone.utc), value


class PrometheusAdapter:
    """Runs range queries against ``/api/v1/query_range``."""

    source = SourceKind.PROMETHEUS.value

    def __init__(self, base_url, rate_limit=120, timeout=30, headers=None):
        self.client = HTTPClient(
            base_url=base_url,
            source=self.source,
            rate_limiter=RateLimiter(rate_limit) if rate_limit else None,
            timeout=timeout,
            headers=headers,
        )

    def query(self, source, query_string, time_range, step, timeout=None):
        data = self.client.get("/api/v1/query_range", params={
            "query": query_string,
            "start": f"{time_range.start.timestamp():.3f}",
            "end": f"{time_range.end.timestamp():.3f}",
            "step": f"{int(step)}s",
        }, timeout=timeout)
        return self.parse_response(data)

    def parse_response(self, data):
        if not isinstance(data, dict):
            raise QueryError(QueryError.BACKEND_ERROR, "Unexpected response body", source=self.source)
        if data.get("status") != "success":
            kind = QueryError.INVALID_QUERY if data.get("errorType") == "bad_data" else QueryError.BACKEND_ERROR
            raise QueryError(kind, data.get("error", "query failed"), source=self.source)

        payload = data.get("data", {})
        result_type = payload.get("resultType")
        series = []
        for item in payload.get("result", []):
            if result_type == "matrix":
                points = [_point(ts, v) for ts, v in item.get("values", [])]
            elif result_type == "vector":
                points = [_point(*item["value"])] if item.get("value") else []
            else:
                raise QueryError(QueryError.BACKEND_ERROR, f"Unsupported result type {result_type!r}",
                                 source=self.source)
            series.append(Series(labels=dict(item.get("metric", {})), points=points))
        logger.debug(f"Prometheus returned {len(series)} series ({result_type})")
        return TimeSeriesResult(source=self.source, series=series)

    def health_check(self):
        data = self.client.get("/api/v1/status/buildinfo")
        return data.get("status") == "success"

    def close(self):
        self.client.close()

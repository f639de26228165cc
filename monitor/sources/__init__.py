"""Data source adapters keyed by source kind."""
import logging
import time

from models.enums import SourceKind
from monitor.sources.base import DataSourceAdapter, Series, TimeRange, TimeSeriesResult
from monitor.sources.prometheus import PrometheusAdapter

logger = logging.getLogger("infrawatch.sources")


class SourceRegistry:
    """One adapter per source kind. Rules dispatch through here by kind."""

    def __init__(self, adapters=None):
        self._adapters = {}
        for kind, adapter in (adapters or {}).items():
            self.register(kind, adapter)

    @classmethod
    def from_config(cls, config=None):
        cfg = (config or {}).get("sources", {}) or {}
        registry = cls()
        prom = cfg.get("prometheus") or {}
        if prom.get("url"):
            registry.register(SourceKind.PROMETHEUS, PrometheusAdapter(
                base_url=prom["url"],
                rate_limit=prom.get("rate_limit", 120),
                timeout=prom.get("timeout", 30),
                headers=prom.get("headers"),
            ))
        return registry

    def register(self, kind, adapter):
        kind = SourceKind(kind)
        if not isinstance(adapter, DataSourceAdapter):
            raise TypeError(f"{type(adapter).__name__} does not implement query()")
        self._adapters[kind] = adapter
        logger.debug(f"Registered {type(adapter).__name__} for {kind.value}")

    def get(self, kind):
        return self._adapters.get(SourceKind(kind))

    def kinds(self):
        return sorted(k.value for k in self._adapters)

    def health_check(self):
        """Reachability and latency of every adapter that can report it."""
        checks = {}
        for kind, adapter in self._adapters.items():
            check = getattr(adapter, "health_check", None)
            if check is None:
                continue
            start = time.monotonic()
            try:
                reachable = bool(check())
            except Exception as e:
                logger.warning(f"{kind.value} health check failed: {e}")
                reachable = False
            checks[kind.value] = {
                "reachable": reachable,
                "latency_ms": int((time.monotonic() - start) * 1000),
            }
        return checks

    def close(self):
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                close()

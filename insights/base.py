"""Interface of the external insight generator."""
from typing import Protocol, runtime_checkable


@runtime_checkable
class InsightAdapter(Protocol):
    def analyze(self, resource_id: str, resource_type: str, context: dict) -> list:
        """Return zero or more Insight objects. May raise AdapterError."""
        ...

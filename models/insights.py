"""AI-derived insights about a resource."""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from models.enums import InsightType


@dataclass
class Insight:
    type: InsightType
    description: str
    confidence: float
    resource_id: str
    resource_type: str
    created_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    related_alerts: set = field(default_factory=set)
    details: dict = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.type, InsightType):
            self.type = InsightType(self.type)
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValueError(f"Insight confidence must be within 0..1, got {self.confidence}")
        self.confidence = float(self.confidence)
        self.related_alerts = set(self.related_alerts)

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "confidence": self.confidence,
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "related_alerts": sorted(self.related_alerts),
            "created_at": self.created_at.isoformat(),
            "details": dict(self.details),
        }

    @classmethod
    def from_row(cls, row, related_alerts=None, details=None):
        return cls(
            id=row["id"],
            type=InsightType(row["type"]),
            description=row["description"],
            confidence=row["confidence"],
            resource_id=row["resource_id"],
            resource_type=row["resource_type"],
            created_at=datetime.fromisoformat(row["created_at"]),
            related_alerts=set(related_alerts or ()),
            details=details or {},
        )

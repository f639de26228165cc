"""Alert records and their append-only history."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from models.enums import AlertStatus, Severity, SourceKind


def _iso(ts):
    return ts.isoformat() if ts is not None else None


def _parse_ts(value):
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class AlertHistoryEntry:
    timestamp: datetime
    status: AlertStatus
    value: float

    def to_dict(self):
        return {"timestamp": _iso(self.timestamp), "status": self.status.value, "value": self.value}


@dataclass
class Alert:
    id: str
    fingerprint: str
    rule_id: str
    name: str
    severity: Severity
    status: AlertStatus
    created_at: datetime
    last_seen_at: datetime
    resource_id: str
    resource_type: str
    value: float
    threshold: float
    type: SourceKind = SourceKind.PROMETHEUS
    description: str = ""
    labels: dict = field(default_factory=dict)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    comment: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None
    root_cause: Optional[str] = None
    history: list = field(default_factory=list)

    @property
    def is_open(self):
        return self.status.is_open

    def to_dict(self, include_history=True):
        d = {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "rule_id": self.rule_id,
            "name": self.name,
            "description": self.description,
            "severity": self.severity.value,
            "type": self.type.value,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "last_seen_at": _iso(self.last_seen_at),
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "value": self.value,
            "threshold": self.threshold,
            "labels": dict(self.labels),
            "acknowledged_at": _iso(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "comment": self.comment,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution": self.resolution,
            "root_cause": self.root_cause,
        }
        if include_history:
            d["history"] = [h.to_dict() for h in self.history]
        return d

    @classmethod
    def from_row(cls, row, history=None, labels=None):
        """Rebuild from a DB row mapping."""
        return cls(
            id=row["id"],
            fingerprint=row["fingerprint"],
            rule_id=row["rule_id"],
            name=row["name"],
            description=row["description"] or "",
            severity=Severity(row["severity"]),
            type=SourceKind(row["type"]),
            status=AlertStatus(row["status"]),
            created_at=_parse_ts(row["created_at"]),
            last_seen_at=_parse_ts(row["last_seen_at"]),
            resource_id=row["resource_id"],
            resource_type=row["resource_type"],
            value=row["value"],
            threshold=row["threshold"],
            labels=labels or {},
            acknowledged_at=_parse_ts(row["acknowledged_at"]),
            acknowledged_by=row["acknowledged_by"],
            comment=row["comment"],
            resolved_at=_parse_ts(row["resolved_at"]),
            resolved_by=row["resolved_by"],
            resolution=row["resolution"],
            root_cause=row["root_cause"],
            history=list(history or []),
        )

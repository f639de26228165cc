"""Events published to subscribers after a mutation."""
from dataclasses import dataclass
from datetime import datetime
from typing import Union

from models.alerts import Alert
from models.enums import EventKind
from models.insights import Insight


@dataclass(frozen=True)
class MonitorEvent:
    kind: EventKind
    subject: Union[Alert, Insight]
    timestamp: datetime

    @property
    def is_alert(self):
        return isinstance(self.subject, Alert)

    @property
    def severity(self):
        return self.subject.severity.value if self.is_alert else None

    def to_dict(self):
        key = "alert" if self.is_alert else "insight"
        return {
            "kind": self.kind.value,
            key: self.subject.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }

"""Alert lifecycle: the allowed status graph and transition records."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from models.alerts import Alert, AlertHistoryEntry
from models.enums import AlertStatus, EventKind
from utils.errors import InvalidTransitionError

ALLOWED_TRANSITIONS = {
    AlertStatus.ACTIVE: frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED}),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset(),
}


class Action(str, Enum):
    CREATE = "create"
    REFRESH = "refresh"
    REFRESH_WITH_HISTORY = "refresh_with_history"
    AUTO_RESOLVE = "auto_resolve"
    ACKNOWLEDGE = "acknowledge"
    RESOLVE = "resolve"
    NOOP = "noop"


_EVENT_FOR_ACTION = {
    Action.CREATE: EventKind.ALERT_CREATED,
    Action.REFRESH_WITH_HISTORY: EventKind.ALERT_REFRESHED,
    Action.AUTO_RESOLVE: EventKind.ALERT_RESOLVED,
    Action.ACKNOWLEDGE: EventKind.ALERT_ACKNOWLEDGED,
    Action.RESOLVE: EventKind.ALERT_RESOLVED,
}


def can_transition(current, target):
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(alert, target, action):
    if not can_transition(alert.status, target):
        raise InvalidTransitionError(alert.id, alert.status, action)


@dataclass(frozen=True)
class Decision:
    """What the store should write for one fingerprint.

    ``alert`` is the full next state of the alert (None for NOOP) and
    ``history`` the entry to append, if any.
    """
    action: Action
    alert: Optional[Alert] = None
    history: Optional[AlertHistoryEntry] = None

    @classmethod
    def noop(cls):
        return cls(Action.NOOP)


@dataclass(frozen=True)
class Transition:
    """Outcome of an applied decision, as read back from the store."""
    action: Action
    alert: Optional[Alert] = None
    previous_status: Optional[AlertStatus] = None

    @property
    def event_kind(self):
        return _EVENT_FOR_ACTION.get(self.action)

    @property
    def changed(self):
        return self.action is not Action.NOOP

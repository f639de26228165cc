"""Event channels that can subscribe to the notification fanout."""
import json
import threading
from collections import Counter
from pathlib import Path
from typing import Protocol, runtime_checkable

from models.enums import EventKind


@runtime_checkable
class EventChannel(Protocol):
    def send(self, event) -> None: ...


class ConsoleChannel:
    """Print events to the terminal with rich formatting."""

    SEVERITY_STYLES = {
        "critical": "bold white on red",
        "error": "bold red",
        "warning": "bold yellow",
        "info": "bold blue",
    }

    def __init__(self, console=None):
        from rich.console import Console
        self.console = console or Console()

    def send(self, event):
        if event.is_alert:
            alert = event.subject
            style = self.SEVERITY_STYLES.get(alert.severity.value, "")
            self.console.print(
                f"[{style}][{alert.severity.value.upper()}][/] {event.kind.value} "
                f"{alert.name} on {alert.resource_id} = {alert.value:g} ({alert.status.value})",
                highlight=False,
            )
        else:
            insight = event.subject
            self.console.print(
                f"[bold magenta][{insight.type.value.upper()}][/] {insight.resource_id}: "
                f"{insight.description} (confidence {insight.confidence:.0%})",
                highlight=False,
            )


class FileChannel:
    """Append events to a JSON lines file."""

    def __init__(self, log_path="data/events.jsonl"):
        self.log_path = Path(log_path)
        self._lock = threading.Lock()

    def send(self, event):
        line = json.dumps(event.to_dict(), default=str)
        with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(line + "\n")


class TransportChannel:
    """Forward events to a real-time transport exposing ``publish(dict)``.

    WebSocket hubs, SSE broadcasters and message buses all fit here.
    """

    def __init__(self, transport, topic="alerts"):
        self.transport = transport
        self.topic = topic

    def send(self, event):
        payload = event.to_dict()
        payload["topic"] = self.topic
        self.transport.publish(payload)


class CounterChannel:
    """In-process counters by event kind and severity."""

    def __init__(self):
        self._lock = threading.Lock()
        self.by_kind = Counter()
        self.triggered_by_severity = Counter()

    def send(self, event):
        with self._lock:
            self.by_kind[event.kind.value] += 1
            if event.kind is EventKind.ALERT_CREATED:
                self.triggered_by_severity[event.severity] += 1

    def snapshot(self):
        with self._lock:
            return {
                "events_total": dict(self.by_kind),
                "alerts_triggered_total": dict(self.triggered_by_severity),
            }

"""SQLite-backed alert and insight store."""
import json
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from alerts.lifecycle import Action, Decision, Transition, check_transition
from models.alerts import Alert, AlertHistoryEntry
from models.enums import AlertStatus
from models.insights import Insight
from utils.context import RuntimeContext
from utils.errors import NotFoundError
from utils.locks import KeyedLock

_ALERT_COLUMNS = (
    "id", "fingerprint", "rule_id", "name", "description", "severity", "type", "status",
    "created_at", "last_seen_at", "resource_id", "resource_type", "value", "threshold", "labels",
    "acknowledged_at", "acknowledged_by", "comment", "resolved_at", "resolved_by", "resolution",
    "root_cause",
)
_MUTABLE_COLUMNS = (
    "status", "last_seen_at", "value", "acknowledged_at", "acknowledged_by", "comment",
    "resolved_at", "resolved_by", "resolution", "root_cause",
)


def _ts(value):
    return value.isoformat() if value is not None else None


def _alert_params(alert, columns):
    raw = alert.to_dict(include_history=False)
    raw["labels"] = json.dumps(raw["labels"], sort_keys=True)
    return [raw[c] for c in columns]


class AlertStore:
    """The authoritative collection of alerts, their history and insights.

    Mutations for one fingerprint are serialized with a per-fingerprint
    lock; every write is a single SQLite transaction, so readers never
    observe a half-applied transition.
    """

    def __init__(self, db_path="data/infrawatch.db", context=None):
        self.db_path = db_path
        self.context = context or RuntimeContext()
        self.logger = self.context.get_logger("alerts.store")
        self.conn = None
        self._db_lock = threading.RLock()
        self._fingerprint_locks = KeyedLock()

    def connect(self):
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        return self

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS alerts (
                id TEXT PRIMARY KEY,
                fingerprint TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                severity TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL,
                resource_id TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                value REAL,
                threshold REAL,
                labels TEXT DEFAULT '{}',
                acknowledged_at TEXT,
                acknowledged_by TEXT,
                comment TEXT,
                resolved_at TEXT,
                resolved_by TEXT,
                resolution TEXT,
                root_cause TEXT
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_open_fingerprint
                ON alerts(fingerprint) WHERE status != 'resolved';

            CREATE INDEX IF NOT EXISTS idx_alerts_created
                ON alerts(created_at);

            CREATE INDEX IF NOT EXISTS idx_alerts_resource
                ON alerts(resource_id, status);

            CREATE TABLE IF NOT EXISTS alert_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                status TEXT NOT NULL,
                value REAL,
                FOREIGN KEY (alert_id) REFERENCES alerts(id)
            );

            CREATE INDEX IF NOT EXISTS idx_history_alert
                ON alert_history(alert_id);

            CREATE TABLE IF NOT EXISTS insights (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                description TEXT NOT NULL,
                confidence REAL NOT NULL,
                resource_id TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                created_at TEXT NOT NULL,
                details TEXT DEFAULT '{}'
            );

            CREATE INDEX IF NOT EXISTS idx_insights_resource
                ON insights(resource_id, created_at);

            CREATE TABLE IF NOT EXISTS insight_alerts (
                insight_id TEXT NOT NULL,
                alert_id TEXT NOT NULL,
                PRIMARY KEY (insight_id, alert_id),
                FOREIGN KEY (insight_id) REFERENCES insights(id),
                FOREIGN KEY (alert_id) REFERENCES alerts(id)
            );
        """)
        self.conn.commit()

    # --- Reads ---

    def _fetch_alert(self, where, params):
        """Load one alert with its history. Caller holds the DB lock."""
        row = self.conn.execute(f"SELECT * FROM alerts WHERE {where}", params).fetchone()
        if row is None:
            return None
        history = [
            AlertHistoryEntry(
                timestamp=datetime.fromisoformat(h["timestamp"]),
                status=AlertStatus(h["status"]),
                value=h["value"],
            )
            for h in self.conn.execute(
                "SELECT timestamp, status, value FROM alert_history WHERE alert_id = ? ORDER BY id ASC",
                (row["id"],),
            ).fetchall()
        ]
        return Alert.from_row(row, history=history, labels=json.loads(row["labels"] or "{}"))

    def _find_open(self, fingerprint):
        with self._db_lock:
            return self._fetch_alert("fingerprint = ? AND status != 'resolved'", (fingerprint,))

    def get(self, alert_id):
        """Alert with full history. Raises NotFoundError."""
        with self._db_lock:
            alert = self._fetch_alert("id = ?", (alert_id,))
        if alert is None:
            raise NotFoundError("alert", alert_id)
        return alert

    def find_open(self, fingerprint):
        """The open alert for a fingerprint, or None."""
        return self._find_open(fingerprint)

    def list(self, severity=None, type=None, status=None, rule_id=None, resource_id=None,
             limit=50, offset=0):
        """Page of alerts, newest first, plus the total matching count.

        Listed alerts carry no history; use ``get`` for that.
        """
        query = " FROM alerts WHERE 1=1"
        params = []
        for column, value in (("severity", severity), ("type", type), ("status", status),
                              ("rule_id", rule_id), ("resource_id", resource_id)):
            if value is not None:
                query += f" AND {column} = ?"
                params.append(value.value if hasattr(value, "value") else value)
        with self._db_lock:
            total = self.conn.execute("SELECT COUNT(*) AS cnt" + query, params).fetchone()["cnt"]
            rows = self.conn.execute(
                "SELECT *" + query + " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        alerts = [Alert.from_row(r, labels=json.loads(r["labels"] or "{}")) for r in rows]
        return alerts, total

    def open_alerts_for_resource(self, resource_id):
        alerts, _ = self.list(resource_id=resource_id, limit=-1)
        return [a for a in alerts if a.is_open]

    def history_length(self, alert_id):
        with self._db_lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS cnt FROM alert_history WHERE alert_id = ?", (alert_id,)
            ).fetchone()
        return row["cnt"]

    def stats(self):
        with self._db_lock:
            open_rows = self.conn.execute("""
                SELECT severity, status, COUNT(*) AS cnt FROM alerts
                WHERE status != 'resolved' GROUP BY severity, status
            """).fetchall()
            total = self.conn.execute("SELECT COUNT(*) AS cnt FROM alerts").fetchone()["cnt"]
            insights = self.conn.execute("SELECT COUNT(*) AS cnt FROM insights").fetchone()["cnt"]
        by_severity = {}
        by_status = {}
        for r in open_rows:
            by_severity[r["severity"]] = by_severity.get(r["severity"], 0) + r["cnt"]
            by_status[r["status"]] = by_status.get(r["status"], 0) + r["cnt"]
        return {
            "open_by_severity": by_severity,
            "open_by_status": by_status,
            "open_total": sum(by_status.values()),
            "total_alerts": total,
            "total_insights": insights,
        }

    # --- Writes ---

    def _write(self, decision):
        """Persist a decision in one transaction."""
        alert = decision.alert
        with self._db_lock, self.conn:
            if decision.action is Action.CREATE:
                self.conn.execute(
                    f"INSERT INTO alerts ({', '.join(_ALERT_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in _ALERT_COLUMNS)})",
                    _alert_params(alert, _ALERT_COLUMNS),
                )
            else:
                assignments = ", ".join(f"{c} = ?" for c in _MUTABLE_COLUMNS)
                self.conn.execute(
                    f"UPDATE alerts SET {assignments} WHERE id = ?",
                    _alert_params(alert, _MUTABLE_COLUMNS) + [alert.id],
                )
            if decision.history is not None:
                h = decision.history
                self.conn.execute(
                    "INSERT INTO alert_history (alert_id, timestamp, status, value) VALUES (?, ?, ?, ?)",
                    (alert.id, _ts(h.timestamp), h.status.value, h.value),
                )

    def upsert(self, fingerprint, decide, on_commit=None):
        """Create or refresh the open alert for ``fingerprint``.

        ``decide(current)`` receives the open alert (or None) while the
        fingerprint lock is held and returns a Decision. At most one open
        alert per fingerprint exists no matter how many evaluations race.
        ``on_commit(transition)`` runs before the lock is released, so
        callbacks for one fingerprint see transitions in commit order.
        """
        with self._fingerprint_locks.hold(fingerprint):
            current = self._find_open(fingerprint)
            decision = decide(current)
            previous = current.status if current else None
            if decision.action is Action.NOOP:
                return Transition(Action.NOOP, current, previous)
            if decision.action is Action.CREATE and current is not None:
                raise ValueError(f"Open alert {current.id} already exists for fingerprint {fingerprint}")
            if decision.action is not Action.CREATE and current is None:
                raise ValueError(f"No open alert for fingerprint {fingerprint} to {decision.action.value}")
            if decision.alert.fingerprint != fingerprint:
                raise ValueError("Decision targets a different fingerprint")
            self._write(decision)
            transition = Transition(decision.action, self.get(decision.alert.id), previous)
            if on_commit is not None:
                on_commit(transition)
            return transition

    def _fingerprint_of(self, alert_id):
        with self._db_lock:
            row = self.conn.execute("SELECT fingerprint FROM alerts WHERE id = ?", (alert_id,)).fetchone()
        if row is None:
            raise NotFoundError("alert", alert_id)
        return row["fingerprint"]

    def _human_transition(self, alert_id, target, action, mutate, on_commit=None):
        with self._fingerprint_locks.hold(self._fingerprint_of(alert_id)):
            alert = self.get(alert_id)
            check_transition(alert, target, action.value)
            now = self.context.now()
            entry = AlertHistoryEntry(timestamp=now, status=target, value=alert.value)
            self._write(Decision(action, mutate(alert, now), entry))
            transition = Transition(action, self.get(alert_id), alert.status)
            if on_commit is not None:
                on_commit(transition)
            return transition

    def acknowledge(self, alert_id, actor, comment=None, on_commit=None):
        """active → acknowledged. Raises NotFoundError or InvalidTransitionError."""
        return self._human_transition(
            alert_id, AlertStatus.ACKNOWLEDGED, Action.ACKNOWLEDGE,
            lambda a, now: replace(a, status=AlertStatus.ACKNOWLEDGED, acknowledged_at=now,
                                   acknowledged_by=actor, comment=comment),
            on_commit,
        )

    def resolve(self, alert_id, actor, resolution, root_cause=None, on_commit=None):
        """active|acknowledged → resolved. Raises NotFoundError or InvalidTransitionError."""
        return self._human_transition(
            alert_id, AlertStatus.RESOLVED, Action.RESOLVE,
            lambda a, now: replace(a, status=AlertStatus.RESOLVED, resolved_at=now, resolved_by=actor,
                                   resolution=resolution, root_cause=root_cause),
            on_commit,
        )

    # --- Insights ---

    def _related_alerts(self, insight_id):
        rows = self.conn.execute(
            "SELECT alert_id FROM insight_alerts WHERE insight_id = ?", (insight_id,)
        ).fetchall()
        return {r["alert_id"] for r in rows}

    def _insight_from_row(self, row):
        return Insight.from_row(row, related_alerts=self._related_alerts(row["id"]),
                                details=json.loads(row["details"] or "{}"))

    def save_insight(self, insight):
        with self._db_lock, self.conn:
            self.conn.execute("""
                INSERT INTO insights
                (id, type, description, confidence, resource_id, resource_type, created_at, details)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                insight.id, insight.type.value, insight.description, insight.confidence,
                insight.resource_id, insight.resource_type, _ts(insight.created_at),
                json.dumps(insight.details, default=str),
            ))
            self.conn.executemany(
                "INSERT OR IGNORE INTO insight_alerts (insight_id, alert_id) VALUES (?, ?)",
                [(insight.id, a) for a in sorted(insight.related_alerts)],
            )
        return self.get_insight(insight.id)

    def link_insight(self, insight_id, alert_ids):
        """Grow an insight's related alert set. Returns the updated insight."""
        with self._db_lock, self.conn:
            if self.conn.execute("SELECT 1 FROM insights WHERE id = ?", (insight_id,)).fetchone() is None:
                raise NotFoundError("insight", insight_id)
            self.conn.executemany(
                "INSERT OR IGNORE INTO insight_alerts (insight_id, alert_id) VALUES (?, ?)",
                [(insight_id, a) for a in sorted(alert_ids)],
            )
        return self.get_insight(insight_id)

    def get_insight(self, insight_id):
        with self._db_lock:
            row = self.conn.execute("SELECT * FROM insights WHERE id = ?", (insight_id,)).fetchone()
            if row is None:
                raise NotFoundError("insight", insight_id)
            return self._insight_from_row(row)

    def list_insights(self, type=None, resource_id=None, since=None, limit=50, offset=0):
        query = " FROM insights WHERE 1=1"
        params = []
        if type is not None:
            query += " AND type = ?"
            params.append(type.value if hasattr(type, "value") else type)
        if resource_id is not None:
            query += " AND resource_id = ?"
            params.append(resource_id)
        if since is not None:
            query += " AND created_at >= ?"
            params.append(_ts(since))
        with self._db_lock:
            total = self.conn.execute("SELECT COUNT(*) AS cnt" + query, params).fetchone()["cnt"]
            rows = self.conn.execute(
                "SELECT *" + query + " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
            insights = [self._insight_from_row(r) for r in rows]
        return insights, total

"""SQLite-based monitor store: connection management, schema init, and CRUD.

The engine only talks to the ``MonitorStore`` protocol; ``SqliteMonitorStore``
is the production implementation and, opened on ``":memory:"``, the one the
tests use. All database operations use parameterized queries. One connection
is shared across threads (check_same_thread=False) and guarded by a reentrant
lock; ``transaction()`` groups several operations into one commit.

The schema is auto-created on first access via CREATE ... IF NOT EXISTS
(idempotent). The partial unique index on open alerts is what keeps at most
one OPEN alert per dedupe key, whoever is inserting.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from chief_monitor.config import get_settings
from chief_monitor.models import (
    AlertDeliveryRecord,
    AlertRecord,
    AlertSeverity,
    AlertType,
    CheckConfig,
    CheckStateRecord,
    NormalizedEvent,
    TelemetryEventRecord,
)

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS telemetry_events (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    received_at   TEXT NOT NULL,
    event_at      TEXT NOT NULL,
    source_type   TEXT NOT NULL,
    event_type    TEXT NOT NULL,
    level         TEXT NOT NULL,
    message       TEXT NOT NULL,
    job_name      TEXT,
    script_path   TEXT,
    run_id        TEXT,
    scheduled_for TEXT,
    success       INTEGER,
    return_code   INTEGER,
    duration_ms   INTEGER,
    metadata_json TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_events_job_event_at ON telemetry_events(job_name, event_at);
CREATE INDEX IF NOT EXISTS idx_events_level_event_at ON telemetry_events(level, event_at);
CREATE INDEX IF NOT EXISTS idx_events_run ON telemetry_events(run_id);
CREATE INDEX IF NOT EXISTS idx_events_event_at ON telemetry_events(event_at);

CREATE TABLE IF NOT EXISTS check_states (
    job_name             TEXT PRIMARY KEY,
    enabled              INTEGER NOT NULL DEFAULT 1,
    alert_on_failure     INTEGER NOT NULL DEFAULT 1,
    alert_on_miss        INTEGER NOT NULL DEFAULT 1,
    grace_seconds        INTEGER NOT NULL DEFAULT 120,
    status               TEXT NOT NULL DEFAULT 'UP',
    last_heartbeat_at    TEXT,
    expected_next_at     TEXT,
    last_success_at      TEXT,
    last_failure_at      TEXT,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    updated_at           TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_checks_status_updated ON check_states(status, updated_at);

CREATE TABLE IF NOT EXISTS alerts (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name     TEXT NOT NULL,
    alert_type   TEXT NOT NULL,
    severity     TEXT NOT NULL,
    status       TEXT NOT NULL,
    opened_at    TEXT NOT NULL,
    closed_at    TEXT,
    dedupe_key   TEXT NOT NULL,
    title        TEXT NOT NULL,
    details_json TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_alerts_status_opened ON alerts(status, opened_at);
CREATE INDEX IF NOT EXISTS idx_alerts_job_status ON alerts(job_name, status);
CREATE UNIQUE INDEX IF NOT EXISTS uq_alerts_open_dedupe ON alerts(dedupe_key) WHERE status = 'OPEN';

CREATE TABLE IF NOT EXISTS alert_deliveries (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    alert_id      INTEGER NOT NULL REFERENCES alerts(id),
    channel       TEXT NOT NULL,
    attempted_at  TEXT NOT NULL,
    status        TEXT NOT NULL,
    response_code INTEGER,
    error_text    TEXT
);
CREATE INDEX IF NOT EXISTS idx_deliveries_alert ON alert_deliveries(alert_id);

CREATE TABLE IF NOT EXISTS service_config (
    key        TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

# Columns the tracker and evaluator may write on a check row.
_CHECK_MUTABLE_FIELDS = frozenset(
    {
        "status",
        "last_heartbeat_at",
        "expected_next_at",
        "last_success_at",
        "last_failure_at",
        "consecutive_failures",
    }
)


class MonitorStore(Protocol):
    """Persistence port consumed by the engine and the service facade."""

    def transaction(self) -> Any: ...

    def close(self) -> None: ...

    # Events
    def insert_event(self, event: NormalizedEvent, *, received_at: str) -> int: ...

    def list_events(
        self,
        *,
        job_name: str | None = None,
        script_path: str | None = None,
        level: str | None = None,
        event_type: str | None = None,
        since: str | None = None,
        until: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TelemetryEventRecord]: ...

    def get_latest_event(
        self,
        *,
        job_name: str | None = None,
        source_type: str | None = None,
        event_type: str | None = None,
    ) -> TelemetryEventRecord | None: ...

    def count_events(self) -> int: ...

    def get_latest_event_at(self) -> str | None: ...

    def delete_events_before(self, cutoff: str) -> int: ...

    # Checks
    def get_check(self, job_name: str) -> CheckStateRecord | None: ...

    def list_checks(self, *, enabled_only: bool = False) -> list[CheckStateRecord]: ...

    def upsert_check_config(self, job_name: str, config: CheckConfig, *, updated_at: str) -> None: ...

    def update_check(self, job_name: str, *, updated_at: str, **fields: Any) -> None: ...

    def count_checks_by_status(self) -> dict[str, int]: ...

    # Alerts
    def insert_alert(
        self,
        *,
        job_name: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        dedupe_key: str,
        title: str,
        details: dict[str, Any],
        opened_at: str,
    ) -> int | None: ...

    def get_alert(self, alert_id: int) -> AlertRecord | None: ...

    def list_alerts(
        self,
        *,
        job_name: str | None = None,
        status: str | None = None,
        alert_type: str | None = None,
        severity: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AlertRecord]: ...

    def close_open_alerts(self, job_name: str, alert_type: AlertType, *, closed_at: str) -> int: ...

    def close_open_alerts_opened_before(self, alert_type: AlertType, cutoff: str, *, closed_at: str) -> int: ...

    def close_alert(self, alert_id: int, *, closed_at: str) -> bool: ...

    def count_open_alerts_by_type(self) -> dict[str, int]: ...

    # Deliveries
    def insert_delivery(
        self,
        *,
        alert_id: int,
        channel: str,
        attempted_at: str,
        status: str,
        response_code: int | None = None,
        error_text: str | None = None,
    ) -> int: ...

    def list_deliveries(self, alert_id: int) -> list[AlertDeliveryRecord]: ...

    # Service config
    def get_config_value(self, key: str) -> tuple[Any, str] | None: ...

    def set_config_value(self, key: str, value: Any, *, updated_at: str) -> None: ...


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode for concurrent reads.

    Args:
        db_path: Explicit path to the database file. If None, reads from settings.
                 Pass ":memory:" for in-memory databases (tests).

    Returns:
        A new sqlite3.Connection with row_factory set to sqlite3.Row.

    Raises:
        ValueError: If the store is not configured (empty db path).
    """
    if db_path is None:
        db_path = get_settings().monitor_db_path
    if not db_path:
        msg = "Monitor store not configured (MONITOR_DB_PATH is empty)"
        raise ValueError(msg)

    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create tables and indexes if they don't exist (idempotent)."""
    conn.executescript(_SCHEMA_SQL)


def open_store(db_path: str | None = None) -> "SqliteMonitorStore":
    """Get a store over a connection with schema already initialized."""
    conn = get_connection(db_path)
    init_schema(conn)
    return SqliteMonitorStore(conn)


def _json_loads(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _optional_bool(value: int | None) -> bool | None:
    return None if value is None else bool(value)


def _where(conditions: list[str]) -> str:
    return f" WHERE {' AND '.join(conditions)}" if conditions else ""


class SqliteMonitorStore:
    """``MonitorStore`` over a single shared sqlite3 connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the connection for a group of operations and commit once at the end.

        Nested transactions join the outermost one. Any exception rolls the
        whole group back.
        """
        with self._lock:
            self._depth += 1
            try:
                yield
            except BaseException:
                if self._depth == 1:
                    self._conn.rollback()
                raise
            else:
                if self._depth == 1:
                    self._conn.commit()
            finally:
                self._depth -= 1

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple[object, ...] | list[object] = ()) -> sqlite3.Cursor:
        with self.transaction():
            return self._conn.execute(sql, params)

    def _fetchone(self, sql: str, params: tuple[object, ...] | list[object] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple[object, ...] | list[object] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ------------------------------------------------------------------
    # Telemetry events
    # ------------------------------------------------------------------

    def insert_event(self, event: NormalizedEvent, *, received_at: str) -> int:
        """Append a normalized event. Returns the new row ID."""
        success = None if event["success"] is None else int(event["success"])
        cursor = self._execute(
            """INSERT INTO telemetry_events
               (received_at, event_at, source_type, event_type, level, message,
                job_name, script_path, run_id, scheduled_for, success,
                return_code, duration_ms, metadata_json)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                received_at,
                event["event_at"],
                event["source_type"],
                event["event_type"],
                event["level"],
                event["message"],
                event["job_name"],
                event["script_path"],
                event["run_id"],
                event["scheduled_for"],
                success,
                event["return_code"],
                event["duration_ms"],
                json.dumps(event["metadata"], default=str),
            ),
        )
        return cursor.lastrowid or 0

    def list_events(
        self,
        *,
        job_name: str | None = None,
        script_path: str | None = None,
        level: str | None = None,
        event_type: str | None = None,
        since: str | None = None,
        until: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TelemetryEventRecord]:
        """List events matching every given filter, most recent first.

        Args:
            since: Inclusive lower bound on event_at (canonical ISO string).
            until: Inclusive upper bound on event_at (canonical ISO string).
        """
        conditions: list[str] = []
        params: list[object] = []
        for column, value in (
            ("job_name", job_name),
            ("script_path", script_path),
            ("level", level),
            ("event_type", event_type),
        ):
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)
        if since:
            conditions.append("event_at >= ?")
            params.append(since)
        if until:
            conditions.append("event_at <= ?")
            params.append(until)

        params.extend([limit, offset])
        rows = self._fetchall(
            f"SELECT * FROM telemetry_events{_where(conditions)} ORDER BY event_at DESC, id DESC LIMIT ? OFFSET ?",
            params,
        )
        return [_row_to_event(r) for r in rows]

    def get_latest_event(
        self,
        *,
        job_name: str | None = None,
        source_type: str | None = None,
        event_type: str | None = None,
    ) -> TelemetryEventRecord | None:
        """Most recent event (by event_at) matching the given filters."""
        conditions: list[str] = []
        params: list[object] = []
        for column, value in (("job_name", job_name), ("source_type", source_type), ("event_type", event_type)):
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)
        row = self._fetchone(
            f"SELECT * FROM telemetry_events{_where(conditions)} ORDER BY event_at DESC, id DESC LIMIT 1",
            params,
        )
        return _row_to_event(row) if row is not None else None

    def count_events(self) -> int:
        row = self._fetchone("SELECT COUNT(*) AS n FROM telemetry_events")
        return int(row["n"]) if row is not None else 0

    def get_latest_event_at(self) -> str | None:
        row = self._fetchone("SELECT MAX(event_at) AS latest FROM telemetry_events")
        return row["latest"] if row is not None else None

    def delete_events_before(self, cutoff: str) -> int:
        """Delete events whose event_at is strictly older than cutoff. Returns rows removed."""
        cursor = self._execute("DELETE FROM telemetry_events WHERE event_at < ?", (cutoff,))
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Check states
    # ------------------------------------------------------------------

    def get_check(self, job_name: str) -> CheckStateRecord | None:
        row = self._fetchone("SELECT * FROM check_states WHERE job_name = ?", (job_name,))
        return _row_to_check(row) if row is not None else None

    def list_checks(self, *, enabled_only: bool = False) -> list[CheckStateRecord]:
        where = " WHERE enabled = 1" if enabled_only else ""
        rows = self._fetchall(f"SELECT * FROM check_states{where} ORDER BY job_name")
        return [_row_to_check(r) for r in rows]

    def upsert_check_config(self, job_name: str, config: CheckConfig, *, updated_at: str) -> None:
        """Create the check (status UP) or overwrite its configuration fields."""
        self._execute(
            """INSERT INTO check_states
               (job_name, enabled, alert_on_failure, alert_on_miss, grace_seconds, status, updated_at)
               VALUES (?, ?, ?, ?, ?, 'UP', ?)
               ON CONFLICT(job_name) DO UPDATE SET
                   enabled = excluded.enabled,
                   alert_on_failure = excluded.alert_on_failure,
                   alert_on_miss = excluded.alert_on_miss,
                   grace_seconds = excluded.grace_seconds,
                   updated_at = excluded.updated_at""",
            (
                job_name,
                int(config["enabled"]),
                int(config["alert_on_failure"]),
                int(config["alert_on_miss"]),
                config["grace_seconds"],
                updated_at,
            ),
        )

    def update_check(self, job_name: str, *, updated_at: str, **fields: Any) -> None:
        """Update liveness fields on an existing check.

        Raises:
            ValueError: If a field is not one of the mutable liveness columns.
        """
        unknown = set(fields) - _CHECK_MUTABLE_FIELDS
        if unknown:
            msg = f"Cannot update check fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        updates = [f"{name} = ?" for name in fields]
        params: list[object] = list(fields.values())
        updates.append("updated_at = ?")
        params.extend([updated_at, job_name])
        self._execute(f"UPDATE check_states SET {', '.join(updates)} WHERE job_name = ?", params)

    def count_checks_by_status(self) -> dict[str, int]:
        rows = self._fetchall("SELECT status, COUNT(*) AS n FROM check_states GROUP BY status")
        return {row["status"]: int(row["n"]) for row in rows}

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def insert_alert(
        self,
        *,
        job_name: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        dedupe_key: str,
        title: str,
        details: dict[str, Any],
        opened_at: str,
    ) -> int | None:
        """Insert an OPEN alert unless one already holds the dedupe key.

        Returns:
            The new alert ID, or None when an OPEN alert with the same
            dedupe key exists (nothing is written).
        """
        cursor = self._execute(
            """INSERT OR IGNORE INTO alerts
               (job_name, alert_type, severity, status, opened_at, dedupe_key, title, details_json)
               VALUES (?, ?, ?, 'OPEN', ?, ?, ?, ?)""",
            (job_name, alert_type, severity, opened_at, dedupe_key, title, json.dumps(details, default=str)),
        )
        if cursor.rowcount == 0:
            return None
        return cursor.lastrowid

    def get_alert(self, alert_id: int) -> AlertRecord | None:
        row = self._fetchone("SELECT * FROM alerts WHERE id = ?", (alert_id,))
        return _row_to_alert(row) if row is not None else None

    def list_alerts(
        self,
        *,
        job_name: str | None = None,
        status: str | None = None,
        alert_type: str | None = None,
        severity: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AlertRecord]:
        """List alerts matching every given filter, most recently opened first."""
        conditions: list[str] = []
        params: list[object] = []
        for column, value in (
            ("job_name", job_name),
            ("status", status),
            ("alert_type", alert_type),
            ("severity", severity),
        ):
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)
        params.extend([limit, offset])
        rows = self._fetchall(
            f"SELECT * FROM alerts{_where(conditions)} ORDER BY opened_at DESC, id DESC LIMIT ? OFFSET ?",
            params,
        )
        return [_row_to_alert(r) for r in rows]

    def close_open_alerts(self, job_name: str, alert_type: AlertType, *, closed_at: str) -> int:
        cursor = self._execute(
            """UPDATE alerts SET status = 'CLOSED', closed_at = ?
               WHERE job_name = ? AND alert_type = ? AND status = 'OPEN'""",
            (closed_at, job_name, alert_type),
        )
        return cursor.rowcount

    def close_open_alerts_opened_before(self, alert_type: AlertType, cutoff: str, *, closed_at: str) -> int:
        cursor = self._execute(
            """UPDATE alerts SET status = 'CLOSED', closed_at = ?
               WHERE alert_type = ? AND status = 'OPEN' AND opened_at < ?""",
            (closed_at, alert_type, cutoff),
        )
        return cursor.rowcount

    def close_alert(self, alert_id: int, *, closed_at: str) -> bool:
        """Close one alert if it is still OPEN. Returns whether a row changed."""
        cursor = self._execute(
            "UPDATE alerts SET status = 'CLOSED', closed_at = ? WHERE id = ? AND status = 'OPEN'",
            (closed_at, alert_id),
        )
        return cursor.rowcount > 0

    def count_open_alerts_by_type(self) -> dict[str, int]:
        rows = self._fetchall("SELECT alert_type, COUNT(*) AS n FROM alerts WHERE status = 'OPEN' GROUP BY alert_type")
        return {row["alert_type"]: int(row["n"]) for row in rows}

    # ------------------------------------------------------------------
    # Alert deliveries
    # ------------------------------------------------------------------

    def insert_delivery(
        self,
        *,
        alert_id: int,
        channel: str,
        attempted_at: str,
        status: str,
        response_code: int | None = None,
        error_text: str | None = None,
    ) -> int:
        """Record one delivery attempt for an alert. Returns the new row ID."""
        cursor = self._execute(
            """INSERT INTO alert_deliveries
               (alert_id, channel, attempted_at, status, response_code, error_text)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (alert_id, channel, attempted_at, status, response_code, error_text),
        )
        return cursor.lastrowid or 0

    def list_deliveries(self, alert_id: int) -> list[AlertDeliveryRecord]:
        rows = self._fetchall("SELECT * FROM alert_deliveries WHERE alert_id = ? ORDER BY id", (alert_id,))
        return [_row_to_delivery(r) for r in rows]

    # ------------------------------------------------------------------
    # Service config
    # ------------------------------------------------------------------

    def get_config_value(self, key: str) -> tuple[Any, str] | None:
        """Return the decoded JSON value and its updated_at, or None when unset."""
        row = self._fetchone("SELECT value_json, updated_at FROM service_config WHERE key = ?", (key,))
        if row is None:
            return None
        try:
            value = json.loads(row["value_json"])
        except (json.JSONDecodeError, TypeError):
            logger.warning("Ignoring unreadable service_config value for %s", key)
            return None
        return value, row["updated_at"]

    def set_config_value(self, key: str, value: Any, *, updated_at: str) -> None:
        self._execute(
            """INSERT INTO service_config (key, value_json, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at""",
            (key, json.dumps(value), updated_at),
        )


def _row_to_event(row: sqlite3.Row) -> TelemetryEventRecord:
    return TelemetryEventRecord(
        id=row["id"],
        received_at=row["received_at"],
        event_at=row["event_at"],
        source_type=row["source_type"],
        event_type=row["event_type"],
        level=row["level"],
        message=row["message"],
        job_name=row["job_name"],
        script_path=row["script_path"],
        run_id=row["run_id"],
        scheduled_for=row["scheduled_for"],
        success=_optional_bool(row["success"]),
        return_code=row["return_code"],
        duration_ms=row["duration_ms"],
        metadata=_json_loads(row["metadata_json"]),
    )


def _row_to_check(row: sqlite3.Row) -> CheckStateRecord:
    return CheckStateRecord(
        job_name=row["job_name"],
        enabled=bool(row["enabled"]),
        alert_on_failure=bool(row["alert_on_failure"]),
        alert_on_miss=bool(row["alert_on_miss"]),
        grace_seconds=row["grace_seconds"],
        status=row["status"],
        last_heartbeat_at=row["last_heartbeat_at"],
        expected_next_at=row["expected_next_at"],
        last_success_at=row["last_success_at"],
        last_failure_at=row["last_failure_at"],
        consecutive_failures=row["consecutive_failures"],
        updated_at=row["updated_at"],
    )


def _row_to_alert(row: sqlite3.Row) -> AlertRecord:
    return AlertRecord(
        id=row["id"],
        job_name=row["job_name"],
        alert_type=row["alert_type"],
        severity=row["severity"],
        status=row["status"],
        opened_at=row["opened_at"],
        closed_at=row["closed_at"],
        dedupe_key=row["dedupe_key"],
        title=row["title"],
        details=_json_loads(row["details_json"]),
    )


def _row_to_delivery(row: sqlite3.Row) -> AlertDeliveryRecord:
    return AlertDeliveryRecord(
        id=row["id"],
        alert_id=row["alert_id"],
        channel=row["channel"],
        attempted_at=row["attempted_at"],
        status=row["status"],
        response_code=row["response_code"],
        error_text=row["error_text"],
    )

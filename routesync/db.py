from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(db_path: str) -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist on the host shows up as a
    directory inside the container; in that case the journal file is
    placed inside it.
    """
    if db_path == ":memory:":
        return db_path

    p = os.path.abspath(db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "routesync.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


@dataclass(frozen=True)
class EventRow:
    id: int
    ts: str
    level: str
    workload: str | None
    route_id: str | None
    message: str


class EventLog:
    """Sqlite journal of controller events (route changes, reconcile passes)."""

    def __init__(self, db_path: str) -> None:
        self.path = _resolve_db_path(db_path)
        self._memory_conn: sqlite3.Connection | None = None
        if self.path == ":memory:":
            # every new :memory: connection is a fresh database, so keep one open
            self._memory_conn = sqlite3.connect(self.path, check_same_thread=False)
            self._memory_conn.row_factory = sqlite3.Row

    def connect(self) -> sqlite3.Connection:
        if self._memory_conn is not None:
            return self._memory_conn
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  workload TEXT,
                  route_id TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )

    def log_event(self, level: str, message: str, workload: str | None = None, route_id: str | None = None) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, workload, route_id, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), workload, route_id, message),
            )

    def list_events(self, limit: int = 50) -> list[EventRow]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT id, ts, level, workload, route_id, message FROM events ORDER BY id DESC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()
        return [EventRow(**dict(r)) for r in rows]


class EventLogHandler(logging.Handler):
    """Forwards log records to an EventLog.

    ``workload`` and ``route_id`` are read from the record's ``extra``.
    """

    def __init__(self, events: EventLog, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.events = events

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.events.log_event(
                record.levelname,
                record.getMessage(),
                workload=getattr(record, "workload", None),
                route_id=getattr(record, "route_id", None),
            )
        except Exception:
            self.handleError(record)

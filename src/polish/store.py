"""SQLite persistence for sessions and their event log."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from polish.errors import SessionClosedError, SessionNotFoundError
from polish.events import Event
from polish.models import SessionRecord, SessionStatus, _utcnow_iso
from polish.worktree import generate_session_id

DEFAULT_DB_PATH = Path.home() / ".polish" / "sessions.db"
LOGGER = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], None]

SESSION_COLUMNS = (
    "id",
    "project_path",
    "mission",
    "status",
    "initial_score",
    "final_score",
    "commit_count",
    "branch_name",
    "stopped_reason",
    "error",
    "retry_of",
    "retry_count",
    "created_at",
    "updated_at",
    "completed_at",
)
UPDATABLE_COLUMNS = frozenset(SESSION_COLUMNS) - {"id", "project_path", "created_at"}


class SessionStore:
    """Durable session/event log with an in-process callback fan-out."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._subscribers: dict[str, list[EventCallback]] = {}
        self.open()

    def open(self) -> None:
        if self._conn is not None:
            return
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA journal_mode = WAL")
        connection.execute("PRAGMA foreign_keys = ON")
        self._conn = connection
        self._bootstrap()

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> SessionStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Session store is closed")
        return self._conn

    def _bootstrap(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                project_path TEXT NOT NULL,
                mission TEXT,
                status TEXT NOT NULL,
                initial_score REAL,
                final_score REAL,
                commit_count INTEGER NOT NULL DEFAULT 0,
                branch_name TEXT,
                stopped_reason TEXT,
                error TEXT,
                retry_of TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_sessions_created
                ON sessions(created_at DESC);

            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                type TEXT NOT NULL,
                data TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_events_session
                ON events(session_id, id);
            """
        )
        self.conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self.conn
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    # Sessions ------------------------------------------------------------------------
    def create_session(
        self,
        project_path: Path | str,
        mission: str | None = None,
        *,
        session_id: str | None = None,
        retry_of: str | None = None,
        retry_count: int = 0,
    ) -> SessionRecord:
        record = SessionRecord(
            id=session_id or generate_session_id(),
            project_path=str(project_path),
            mission=mission,
            retry_of=retry_of,
            retry_count=retry_count,
        )
        payload = record.to_dict()
        with self._transaction():
            self.conn.execute(
                f"INSERT INTO sessions ({', '.join(SESSION_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in SESSION_COLUMNS)})",
                tuple(payload[column] for column in SESSION_COLUMNS),
            )
        return record

    def get_session(self, session_id: str) -> SessionRecord:
        row = self.conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            raise SessionNotFoundError(f"Unknown session: {session_id}")
        return self._row_to_session(row)

    def list_sessions(self, limit: int | None = None) -> list[SessionRecord]:
        query = "SELECT * FROM sessions ORDER BY created_at DESC, rowid DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        return [self._row_to_session(row) for row in self.conn.execute(query, params)]

    def update_session(self, session_id: str, **fields: Any) -> SessionRecord:
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update session fields: {', '.join(sorted(unknown))}")
        current = self.get_session(session_id)
        if current.status.terminal:
            requested = fields.get("status")
            if set(fields) == {"status"} and requested is not None and (
                SessionStatus(requested) is current.status
            ):
                return current
            raise SessionClosedError(f"Session {session_id} is already {current.status}")

        updates = {key: str(value) if key == "status" else value for key, value in fields.items()}
        now = _utcnow_iso()
        updates["updated_at"] = now
        if "status" in updates and SessionStatus(updates["status"]).terminal:
            updates.setdefault("completed_at", now)
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self._transaction():
            self.conn.execute(
                f"UPDATE sessions SET {assignments} WHERE id = ?",
                (*updates.values(), session_id),
            )
        return self.get_session(session_id)

    def delete_session(self, session_id: str) -> None:
        with self._transaction():
            self.conn.execute("DELETE FROM events WHERE session_id = ?", (session_id,))
            cursor = self.conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        if cursor.rowcount == 0:
            raise SessionNotFoundError(f"Unknown session: {session_id}")
        self._subscribers.pop(session_id, None)

    # Events --------------------------------------------------------------------------
    def add_event(self, session_id: str, event: Event) -> int:
        payload = event.to_dict()
        with self._transaction():
            cursor = self.conn.execute(
                "INSERT INTO events (session_id, type, data, timestamp) VALUES (?, ?, ?, ?)",
                (
                    session_id,
                    payload["type"],
                    json.dumps(payload["data"], ensure_ascii=False, default=str),
                    payload["timestamp"],
                ),
            )
        event_id = int(cursor.lastrowid or 0)
        record = {"id": event_id, "session_id": session_id, **payload}
        for callback in list(self._subscribers.get(session_id, [])):
            try:
                callback(record)
            except Exception:
                LOGGER.warning("Event subscriber failed for session %s", session_id, exc_info=True)
        return event_id

    def get_events(self, session_id: str, after_id: int = 0) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM events WHERE session_id = ? AND id > ? ORDER BY id",
            (session_id, after_id),
        )
        return [
            {
                "id": row["id"],
                "session_id": row["session_id"],
                "type": row["type"],
                "data": json.loads(row["data"]) if row["data"] else {},
                "timestamp": row["timestamp"],
            }
            for row in rows
        ]

    def subscribe(self, session_id: str, callback: EventCallback) -> Callable[[], None]:
        self._subscribers.setdefault(session_id, []).append(callback)

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(session_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(session_id, None)

        return _unsubscribe

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> SessionRecord:
        return SessionRecord(
            id=row["id"],
            project_path=row["project_path"],
            mission=row["mission"],
            status=SessionStatus(row["status"]),
            initial_score=row["initial_score"],
            final_score=row["final_score"],
            commit_count=row["commit_count"],
            branch_name=row["branch_name"],
            stopped_reason=row["stopped_reason"],
            error=row["error"],
            retry_of=row["retry_of"],
            retry_count=row["retry_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

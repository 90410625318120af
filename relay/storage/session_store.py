"""
Session store: SQLite- or Postgres-backed session service.

Sessions table: (app_name, user_id, id, state, created_at, updated_at)
Events table: (seq, id, app_name, user_id, session_id, invocation_id, author, branch, ts, payload)
One connection per operation; SESSION_DB_PATH from env (default ./data/sessions.db),
DATABASE_URL switches to Postgres.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from relay.errors import SessionNotFound
from relay.models import Event, SessionKey, new_id
from relay.sessions import BaseSessionService, EventLog, Session
from relay.storage.db import DbInfo, connection, get_db_info, sql

logger = logging.getLogger("agent-relay")


class DatabaseSessionService(BaseSessionService):
    """
    Durable session service.

    Appends are serialized by the database: SQLite takes the write lock up
    front (BEGIN IMMEDIATE), Postgres locks the session row.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.info: DbInfo = get_db_info(db_path)
        self.init_db()

    @property
    def is_postgres(self) -> bool:
        return self.info.is_postgres

    def _ensure_sqlite_dir(self) -> None:
        if self.is_postgres:
            return
        Path(self.info.db_path).parent.mkdir(parents=True, exist_ok=True)

    def init_db(self) -> None:
        """Create tables and set PRAGMAs. Idempotent."""
        self._ensure_sqlite_dir()
        seq_column = "seq BIGSERIAL PRIMARY KEY" if self.is_postgres else "seq INTEGER PRIMARY KEY AUTOINCREMENT"
        with connection(self.info) as conn:
            if not self.is_postgres:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
                conn.execute("PRAGMA busy_timeout=3000")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    app_name TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at DOUBLE PRECISION NOT NULL,
                    PRIMARY KEY (app_name, user_id, id)
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS events (
                    {seq_column},
                    id TEXT NOT NULL,
                    app_name TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    invocation_id TEXT NOT NULL,
                    author TEXT NOT NULL,
                    branch TEXT NOT NULL,
                    ts DOUBLE PRECISION NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_session ON events (app_name, user_id, session_id)"
            )

    def create_session(
        self,
        *,
        app_name: str,
        user_id: str,
        session_id: Optional[str] = None,
        state: Optional[Dict[str, Any]] = None,
    ) -> Session:
        key = SessionKey(app_name=app_name, user_id=user_id, session_id=session_id or new_id())
        created_at = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        now = time.time()
        with connection(self.info) as conn:
            conn.execute(
                sql(
                    "INSERT INTO sessions (app_name, user_id, id, state, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    self.info,
                ),
                (key.app_name, key.user_id, key.session_id, json.dumps(state or {}), created_at, now),
            )
        return Session(key=key, state=dict(state or {}), last_update_time=now)

    def get_session(self, key: SessionKey) -> Session:
        with connection(self.info) as conn:
            row = conn.execute(
                sql("SELECT state, updated_at FROM sessions WHERE app_name = ? AND user_id = ? AND id = ?", self.info),
                (key.app_name, key.user_id, key.session_id),
            ).fetchone()
            if row is None:
                raise SessionNotFound(
                    f"Session not found: {key.session_id}",
                    details={"app_name": key.app_name, "user_id": key.user_id},
                )
            event_rows = conn.execute(
                sql(
                    "SELECT payload FROM events WHERE app_name = ? AND user_id = ? AND session_id = ? ORDER BY seq",
                    self.info,
                ),
                (key.app_name, key.user_id, key.session_id),
            ).fetchall()

        events: List[Event] = []
        for e in event_rows:
            try:
                events.append(Event.model_validate_json(e["payload"]))
            except ValueError as exc:
                logger.warning("skipping unreadable event in session_id=%s: %s", key.session_id, exc)
        return Session(
            key=key,
            events=EventLog(events),
            state=json.loads(row["state"] or "{}"),
            last_update_time=float(row["updated_at"]),
        )

    def list_sessions(self, *, app_name: str, user_id: str) -> List[SessionKey]:
        with connection(self.info) as conn:
            rows = conn.execute(
                sql("SELECT id FROM sessions WHERE app_name = ? AND user_id = ? ORDER BY created_at, id", self.info),
                (app_name, user_id),
            ).fetchall()
        return [SessionKey(app_name=app_name, user_id=user_id, session_id=r["id"]) for r in rows]

    def delete_session(self, key: SessionKey) -> None:
        params = (key.app_name, key.user_id, key.session_id)
        with connection(self.info) as conn:
            conn.execute(
                sql("DELETE FROM events WHERE app_name = ? AND user_id = ? AND session_id = ?", self.info), params
            )
            conn.execute(sql("DELETE FROM sessions WHERE app_name = ? AND user_id = ? AND id = ?", self.info), params)

    def append_event(self, session: Session, event: Event) -> Event:
        if event.partial:
            return event
        key = session.key
        params = (key.app_name, key.user_id, key.session_id)
        with connection(self.info) as conn:
            if self.is_postgres:
                lock_query = "SELECT state FROM sessions WHERE app_name = ? AND user_id = ? AND id = ? FOR UPDATE"
            else:
                conn.execute("BEGIN IMMEDIATE")
                lock_query = "SELECT state FROM sessions WHERE app_name = ? AND user_id = ? AND id = ?"
            row = conn.execute(sql(lock_query, self.info), params).fetchone()
            if row is None:
                raise SessionNotFound(f"Session not found: {key.session_id}")

            conn.execute(
                sql(
                    "INSERT INTO events (id, app_name, user_id, session_id, invocation_id, author, branch, ts, payload) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self.info,
                ),
                (
                    event.id,
                    key.app_name,
                    key.user_id,
                    key.session_id,
                    event.invocation_id,
                    event.author,
                    event.branch,
                    event.timestamp,
                    event.model_dump_json(),
                ),
            )
            stored_state = json.loads(row["state"] or "{}")
            if event.actions.state_delta:
                stored_state.update(event.actions.state_delta)
            conn.execute(
                sql("UPDATE sessions SET state = ?, updated_at = ? WHERE app_name = ? AND user_id = ? AND id = ?", self.info),
                (json.dumps(stored_state), event.timestamp) + params,
            )
        return super().append_event(session, event)

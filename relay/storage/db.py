"""
Connection plumbing for the durable session store.

DatabaseSessionService keeps its sessions and events tables in a local
SQLite file (SESSION_DB_PATH) unless DATABASE_URL points at Postgres.
Queries are written once with '?' markers and rewritten per backend.
"""

from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from relay.config import get_settings
from relay.errors import UnsupportedError

try:
    import psycopg
    from psycopg.rows import dict_row
except ImportError:  # pragma: no cover - Postgres extra not installed
    psycopg = None
    dict_row = None

SQLITE = "sqlite"
POSTGRES = "postgres"


@dataclass(frozen=True)
class DbInfo:
    """Where the session store lives."""

    dialect: str
    database_url: Optional[str]
    db_path: str

    @property
    def is_postgres(self) -> bool:
        return self.dialect == POSTGRES


def get_db_info(db_path: Optional[str] = None) -> DbInfo:
    """
    Resolve the session store location.

    An explicit db_path wins over SESSION_DB_PATH; a non-empty DATABASE_URL
    selects Postgres and the path is kept only for reference.
    """
    path = db_path or get_settings().session_db_path
    url = os.getenv("DATABASE_URL") or None
    return DbInfo(dialect=POSTGRES if url else SQLITE, database_url=url, db_path=path)


def connect(info: DbInfo) -> Any:
    if not info.is_postgres:
        conn = sqlite3.connect(info.db_path)
        conn.row_factory = sqlite3.Row
        return conn
    if psycopg is None:
        raise UnsupportedError(
            "DATABASE_URL is set but psycopg is not installed",
            details={"extra": "postgres"},
        )
    return psycopg.connect(info.database_url, row_factory=dict_row)


@contextmanager
def connection(info: DbInfo) -> Iterator[Any]:
    """One store operation: the transaction commits only if the block completes."""
    conn = connect(info)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def sql(query: str, info: DbInfo) -> str:
    # psycopg uses the format paramstyle
    return query.replace("?", "%s") if info.is_postgres else query

"""SQLite engine policy and the datetime conventions of the task store.

Columns hold naive UTC; everything above the storage layer sees aware UTC.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

_STORAGE_CLOCK_SQL = text("SELECT strftime('%Y-%m-%d %H:%M:%f', 'now')")
_PRAGMAS = ("journal_mode = WAL", "foreign_keys = ON")


def parse_utc_iso(value: str) -> datetime:
    """Parse ISO-8601; a value without offset is taken as UTC."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Convert to the naive-UTC form stored in SQLite columns."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def from_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_db_datetime_or_none(value: datetime | None) -> datetime | None:
    return from_db_datetime(value) if value is not None else None


def read_storage_clock(connection: Connection) -> datetime:
    """Current time as SQLite sees it, millisecond precision, aware UTC."""

    raw = connection.execute(_STORAGE_CLOCK_SQL).scalar_one()
    return parse_utc_iso(str(raw))


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine owned by one repository.

    No pooling: each session opens a fresh connection with the queue's
    pragmas, so repositories in separate threads or processes wait on the
    write lock for up to ``busy_timeout_ms`` instead of failing.
    """

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _: object) -> None:
        _apply_sqlite_pragmas(dbapi_connection, busy_timeout_ms=busy_timeout_ms)

    return engine


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
        for pragma in _PRAGMAS:
            cursor.execute(f"PRAGMA {pragma}")
    finally:
        cursor.close()

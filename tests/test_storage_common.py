from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import allure
from sqlalchemy import text

from deferq.storage.common import (
    build_sqlite_engine,
    from_db_datetime,
    from_db_datetime_or_none,
    parse_utc_iso,
    read_storage_clock,
    to_db_datetime,
)

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Storage"),
]


def test_parse_utc_iso_normalizes_offsets_and_assumes_utc() -> None:
    assert parse_utc_iso("2026-01-05 09:00:00.125") == datetime(
        2026, 1, 5, 9, 0, 0, 125_000, tzinfo=UTC
    )
    assert parse_utc_iso("2026-01-05T11:00:00+02:00") == datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


def test_db_datetimes_are_naive_utc_and_come_back_aware() -> None:
    local = datetime(2026, 1, 5, 4, 0, tzinfo=timezone(timedelta(hours=-5)))

    stored = to_db_datetime(local)

    assert stored == datetime(2026, 1, 5, 9, 0)
    assert stored.tzinfo is None
    assert from_db_datetime(stored) == local
    assert from_db_datetime(stored).utcoffset() == timedelta(0)
    assert from_db_datetime_or_none(None) is None


def test_engine_applies_queue_pragmas_and_reads_storage_clock(tmp_path: Path) -> None:
    engine = build_sqlite_engine(db_path=tmp_path / "pragmas.db", busy_timeout_ms=2_500)
    try:
        with engine.connect() as connection:
            journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
            busy_timeout = connection.execute(text("PRAGMA busy_timeout")).scalar_one()
            foreign_keys = connection.execute(text("PRAGMA foreign_keys")).scalar_one()
            now = read_storage_clock(connection)
    finally:
        engine.dispose()

    assert str(journal_mode).lower() == "wal"
    assert busy_timeout == 2_500
    assert foreign_keys == 1
    assert abs(now - datetime.now(tz=UTC)) < timedelta(seconds=5)

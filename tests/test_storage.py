from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from feedstore.errors import OpenError, QueryError
from feedstore.schemas import FeedImageRecord, from_reference_seconds
from feedstore.storage import MEMORY_PATH, SQLiteFeedEngine


def _record(url: str = "https://example.com/image.png", **overrides: object) -> FeedImageRecord:
    return FeedImageRecord(id=overrides.pop("id", uuid4()), url=url, **overrides)


def _open(tmp_path) -> SQLiteFeedEngine:
    engine = SQLiteFeedEngine.open(tmp_path / "cache" / "feed.sqlite")
    engine.prepare_schema()
    return engine


def test_open_creates_parent_directory_and_file(tmp_path) -> None:
    db_path = tmp_path / "nested" / "dir" / "feed.sqlite"

    with SQLiteFeedEngine.open(db_path) as engine:
        engine.prepare_schema()

    assert db_path.exists()


def test_open_rejects_path_under_regular_file(tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(OpenError):
        SQLiteFeedEngine.open(blocker / "feed.sqlite")


def test_open_rejects_file_that_is_not_a_database(tmp_path) -> None:
    db_path = tmp_path / "garbage.sqlite"
    db_path.write_bytes(b"this is definitely not a sqlite database file " * 20)

    with pytest.raises(OpenError):
        SQLiteFeedEngine.open(db_path)


def test_prepare_schema_is_idempotent(tmp_path) -> None:
    engine = _open(tmp_path)
    engine.insert_all([_record()], datetime(2024, 1, 1, tzinfo=timezone.utc))

    engine.prepare_schema()
    engine.prepare_schema()

    snapshot = engine.read_all()
    assert snapshot is not None
    assert len(snapshot.items) == 1
    engine.close()


def test_read_all_returns_none_for_empty_table() -> None:
    with SQLiteFeedEngine.open(MEMORY_PATH) as engine:
        engine.prepare_schema()
        assert engine.read_all() is None


def test_insert_all_preserves_order_and_shared_timestamp(tmp_path) -> None:
    engine = _open(tmp_path)
    records = [_record(f"https://example.com/{index}.png") for index in range(5)]
    timestamp = datetime(2024, 5, 17, 12, 30, 15, 123456, tzinfo=timezone.utc)

    engine.insert_all(records, timestamp)
    snapshot = engine.read_all()

    assert snapshot is not None
    assert snapshot.items == records
    assert snapshot.timestamp == timestamp
    engine.close()


def test_timestamp_is_stored_relative_to_reference_epoch(tmp_path) -> None:
    engine = _open(tmp_path)
    engine.insert_all([_record()], from_reference_seconds(1000.0))
    engine.close()

    with sqlite3.connect(tmp_path / "cache" / "feed.sqlite") as conn:
        stored = conn.execute("SELECT timestamp FROM FeedImageCache").fetchone()[0]

    assert stored == 1000.0


def test_missing_optional_fields_are_stored_as_null(tmp_path) -> None:
    engine = _open(tmp_path)
    record = _record(description=None, location=None)
    engine.insert_all([record], datetime(2024, 1, 1, tzinfo=timezone.utc))
    engine.close()

    with sqlite3.connect(tmp_path / "cache" / "feed.sqlite") as conn:
        row = conn.execute("SELECT description, location FROM FeedImageCache").fetchone()

    assert row == (None, None)


def test_insert_all_stops_at_first_failure_without_rollback(tmp_path) -> None:
    engine = _open(tmp_path)
    first = _record("https://example.com/first.png")
    duplicate = first.model_copy(update={"url": "https://example.com/dup.png"})
    never_written = _record("https://example.com/never.png")

    with pytest.raises(QueryError):
        engine.insert_all(
            [first, duplicate, never_written],
            datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

    snapshot = engine.read_all()
    assert snapshot is not None
    assert snapshot.items == [first]
    engine.close()


def test_delete_all_is_idempotent(tmp_path) -> None:
    engine = _open(tmp_path)
    engine.insert_all([_record(), _record()], datetime(2024, 1, 1, tzinfo=timezone.utc))

    engine.delete_all()
    engine.delete_all()

    assert engine.read_all() is None
    engine.close()


def test_transaction_rolls_back_on_failure(tmp_path) -> None:
    engine = _open(tmp_path)
    original = [_record()]
    engine.insert_all(original, datetime(2024, 1, 1, tzinfo=timezone.utc))

    with pytest.raises(QueryError):
        with engine.transaction():
            engine.delete_all()
            record = _record()
            engine.insert_all([record, record], datetime(2024, 2, 1, tzinfo=timezone.utc))

    snapshot = engine.read_all()
    assert snapshot is not None
    assert snapshot.items == original
    engine.close()


def test_read_all_fails_on_malformed_identifier(tmp_path) -> None:
    engine = _open(tmp_path)
    engine.insert_all([_record()], datetime(2024, 1, 1, tzinfo=timezone.utc))
    with sqlite3.connect(tmp_path / "cache" / "feed.sqlite") as conn:
        conn.execute(
            "INSERT INTO FeedImageCache VALUES (?, ?, ?, ?, ?)",
            ("not-a-uuid", "", "", "https://example.com/x.png", 0.0),
        )

    with pytest.raises(QueryError):
        engine.read_all()
    engine.close()


def test_read_all_fails_on_malformed_url(tmp_path) -> None:
    engine = _open(tmp_path)
    with sqlite3.connect(tmp_path / "cache" / "feed.sqlite") as conn:
        conn.execute(
            "INSERT INTO FeedImageCache VALUES (?, ?, ?, ?, ?)",
            (str(uuid4()), "", "", "not a url", 0.0),
        )

    with pytest.raises(QueryError):
        engine.read_all()
    engine.close()


def test_read_all_fails_on_missing_timestamp(tmp_path) -> None:
    engine = _open(tmp_path)
    with sqlite3.connect(tmp_path / "cache" / "feed.sqlite") as conn:
        conn.execute(
            "INSERT INTO FeedImageCache VALUES (?, ?, ?, ?, ?)",
            (str(uuid4()), None, None, "https://example.com/x.png", None),
        )

    with pytest.raises(QueryError):
        engine.read_all()
    engine.close()


def test_operations_after_close_raise_query_error(tmp_path) -> None:
    engine = _open(tmp_path)
    engine.close()
    engine.close()

    with pytest.raises(QueryError):
        engine.delete_all()
    with pytest.raises(QueryError):
        engine.read_all()


class _RollbackFailingConnection:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction

    def execute(self, sql: str, *args: object) -> sqlite3.Cursor:
        if sql.strip().upper() == "ROLLBACK":
            raise sqlite3.OperationalError("cannot rollback")
        return self._conn.execute(sql, *args)

    def close(self) -> None:
        self._conn.close()


def test_failed_rollback_does_not_mask_original_error(tmp_path) -> None:
    engine = _open(tmp_path)
    engine._conn = _RollbackFailingConnection(engine._conn)
    record = _record()

    with pytest.raises(QueryError, match="cannot insert feed record"):
        with engine.transaction():
            engine.insert_all([record, record], datetime(2024, 1, 1, tzinfo=timezone.utc))

    engine.close()

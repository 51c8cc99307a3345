from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from feedstore.errors import OpenError, QueryError, SchemaError
from feedstore.schemas import (
    CacheSnapshot,
    FeedImageRecord,
    from_reference_seconds,
    to_reference_seconds,
)

MEMORY_PATH = ":memory:"

logger = logging.getLogger(__name__)


class SQLiteFeedEngine:
    """Owns one SQLite connection and maps feed records to ``FeedImageCache`` rows.

    The connection runs in autocommit mode; callers that need several statements
    to land together wrap them in :meth:`transaction`.
    """

    def __init__(self, connection: sqlite3.Connection, db_path: str) -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = connection
        self._lock = threading.RLock()

    @classmethod
    def open(cls, db_path: str | Path, *, timeout_seconds: float = 5.0) -> SQLiteFeedEngine:
        target = str(db_path)
        try:
            if target != MEMORY_PATH:
                Path(target).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                target,
                timeout=timeout_seconds,
                isolation_level=None,
                check_same_thread=False,
            )
        except (OSError, sqlite3.Error) as exc:
            raise OpenError(f"cannot open feed cache path={target}: {exc}") from exc

        try:
            conn.row_factory = sqlite3.Row
            # sqlite opens files lazily; touch the header so bad paths fail here.
            conn.execute("PRAGMA schema_version").fetchone()
        except sqlite3.Error as exc:
            conn.close()
            raise OpenError(f"cannot open feed cache path={target}: {exc}") from exc

        logger.info("feed_engine open path=%s", target)
        return cls(conn, target)

    def prepare_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema.sql")
        schema = schema_path.read_text(encoding="utf-8")
        with self._lock:
            try:
                self._connection.executescript(schema)
            except sqlite3.Error as exc:
                raise SchemaError(f"cannot create FeedImageCache table: {exc}") from exc

    def read_all(self) -> CacheSnapshot | None:
        query = """
        SELECT id, description, location, url, timestamp
        FROM FeedImageCache
        ORDER BY rowid ASC
        """
        with self._lock:
            try:
                rows = self._connection.execute(query).fetchall()
            except sqlite3.Error as exc:
                raise QueryError(f"cannot read FeedImageCache: {exc}") from exc

        logger.debug("feed_engine read rows=%d", len(rows))
        if not rows:
            return None

        items = [self._row_to_record(row) for row in rows]
        return CacheSnapshot(items=items, timestamp=self._row_to_timestamp(rows[0]))

    def delete_all(self) -> None:
        with self._lock:
            try:
                cursor = self._connection.execute("DELETE FROM FeedImageCache")
            except sqlite3.Error as exc:
                raise QueryError(f"cannot clear FeedImageCache: {exc}") from exc
        logger.info("feed_engine cleared rows=%d", cursor.rowcount)

    def insert_all(self, records: Iterable[FeedImageRecord], timestamp: datetime) -> None:
        query = """
        INSERT INTO FeedImageCache (id, description, location, url, timestamp)
        VALUES (?, ?, ?, ?, ?)
        """
        seconds = to_reference_seconds(timestamp)
        inserted = 0
        with self._lock:
            for record in records:
                payload = (
                    str(record.id),
                    record.description,
                    record.location,
                    str(record.url),
                    seconds,
                )
                try:
                    self._connection.execute(query, payload)
                except sqlite3.Error as exc:
                    raise QueryError(
                        f"cannot insert feed record id={record.id}: {exc}"
                    ) from exc
                inserted += 1
        logger.info("feed_engine inserted rows=%d timestamp=%s", inserted, seconds)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            conn = self._connection
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise QueryError(f"cannot begin transaction: {exc}") from exc

            try:
                yield
            except BaseException:
                self._rollback(conn)
                raise

            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback(conn)
                raise QueryError(f"cannot commit transaction: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
        logger.info("feed_engine closed path=%s", self.db_path)

    def __enter__(self) -> SQLiteFeedEngine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _rollback(self, conn: sqlite3.Connection) -> None:
        # The caller re-raises its own failure; a rollback error must not replace it.
        try:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.error("feed_engine rollback failed path=%s error=%s", self.db_path, exc)
            return
        logger.warning("feed_engine transaction rolled back path=%s", self.db_path)

    @property
    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise QueryError(f"feed cache connection is closed path={self.db_path}")
        return self._conn

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> FeedImageRecord:
        try:
            return FeedImageRecord(
                id=row["id"],
                description=row["description"],
                location=row["location"],
                url=row["url"],
            )
        except ValidationError as exc:
            raise QueryError(f"malformed FeedImageCache row id={row['id']!r}: {exc}") from exc

    @staticmethod
    def _row_to_timestamp(row: sqlite3.Row) -> datetime:
        try:
            return from_reference_seconds(row["timestamp"])
        except (TypeError, ValueError, OverflowError) as exc:
            raise QueryError(
                f"malformed FeedImageCache timestamp={row['timestamp']!r}: {exc}"
            ) from exc

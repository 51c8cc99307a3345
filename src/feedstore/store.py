from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from feedstore.config import StoreConfig
from feedstore.errors import FeedStoreError, QueryError, SchemaError
from feedstore.schemas import (
    CacheSnapshot,
    EmptyCache,
    FeedImageRecord,
    FoundCache,
    RetrievalFailure,
    RetrieveResult,
)
from feedstore.storage import SQLiteFeedEngine

TResult = TypeVar("TResult")

RetrievalCompletion = Callable[[RetrieveResult], None]
InsertionCompletion = Callable[[FeedStoreError | None], None]
DeletionCompletion = Callable[[FeedStoreError | None], None]

logger = logging.getLogger(__name__)


class SQLiteFeedStore:
    """Feed image cache backed by a single SQLite table.

    Every operation is queued on one worker thread and returns a ``Future``.
    Operations run strictly in call order, so ``insert`` (clear, then write)
    is never observed half-done by a later ``retrieve`` on the same store.
    An optional completion callback receives the same value as the future,
    exactly once, after the operation has taken effect. If an operation
    raises instead of returning, the future carries the exception and the
    callback receives it as a ``FeedStoreError``.

    With ``atomic_insert`` enabled (the default) the clear and the write of an
    ``insert`` share one transaction and a failure restores the previous
    snapshot. With it disabled, each statement commits on its own and a failure
    partway through leaves the rows written so far in the table.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        atomic_insert: bool = True,
        timeout_seconds: float = 5.0,
    ) -> None:
        engine = SQLiteFeedEngine.open(db_path, timeout_seconds=timeout_seconds)
        try:
            engine.prepare_schema()
        except SchemaError:
            engine.close()
            raise

        self.atomic_insert = atomic_insert
        self._engine = engine
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="feedstore")
        self._worker: threading.Thread | None = None
        self._closed = False

    @classmethod
    def from_config(cls, config: StoreConfig) -> SQLiteFeedStore:
        return cls(
            config.db_path,
            atomic_insert=config.atomic_insert,
            timeout_seconds=config.busy_timeout_seconds,
        )

    @property
    def db_path(self) -> str:
        return self._engine.db_path

    def retrieve(
        self,
        completion: RetrievalCompletion | None = None,
    ) -> Future[RetrieveResult]:
        return self._submit(self._retrieve, completion, on_error=_as_retrieval_failure)

    def insert(
        self,
        items: Iterable[FeedImageRecord],
        timestamp: datetime,
        completion: InsertionCompletion | None = None,
    ) -> Future[FeedStoreError | None]:
        """Queue a full replacement of the cached snapshot.

        Items and timestamp are validated in the calling thread; a
        ``pydantic.ValidationError`` is raised before anything is queued.
        """
        snapshot = CacheSnapshot(items=list(items), timestamp=timestamp)
        return self._submit(
            lambda: self._insert(snapshot.items, snapshot.timestamp),
            completion,
            on_error=_as_store_error,
        )

    def delete_cached_feed(
        self,
        completion: DeletionCompletion | None = None,
    ) -> Future[FeedStoreError | None]:
        return self._submit(self._delete, completion, on_error=_as_store_error)

    def close(self) -> None:
        """Release the connection once queued operations have finished.

        Safe to call from a completion callback: the worker cannot join
        itself, so the connection is closed by the worker after the
        operations already queued.
        """
        if self._closed:
            return
        self._closed = True

        if threading.current_thread() is self._worker:
            self._executor.submit(self._engine.close)
            self._executor.shutdown(wait=False)
            return

        try:
            self._executor.shutdown(wait=True)
        finally:
            self._engine.close()

    def __enter__(self) -> SQLiteFeedStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _submit(
        self,
        operation: Callable[[], TResult],
        completion: Callable[[TResult], None] | None,
        *,
        on_error: Callable[[BaseException], TResult],
    ) -> Future[TResult]:
        if self._closed:
            raise RuntimeError("feed store is closed")

        future = self._executor.submit(self._run, operation)
        if completion is None:
            return future

        def deliver(done: Future[TResult]) -> None:
            if done.cancelled():
                completion(on_error(QueryError("feed store operation was cancelled")))
                return
            error = done.exception()
            if error is None:
                completion(done.result())
                return
            logger.error("feed_store operation raised error=%r", error)
            completion(on_error(error))

        future.add_done_callback(deliver)
        return future

    def _run(self, operation: Callable[[], TResult]) -> TResult:
        self._worker = threading.current_thread()
        return operation()

    def _retrieve(self) -> RetrieveResult:
        try:
            snapshot = self._engine.read_all()
        except FeedStoreError as exc:
            logger.warning("feed_store retrieve failed error=%s", exc)
            return RetrievalFailure(error=exc)

        if snapshot is None or not snapshot.items:
            return EmptyCache()
        return FoundCache(items=snapshot.items, timestamp=snapshot.timestamp)

    def _delete(self) -> FeedStoreError | None:
        try:
            self._engine.delete_all()
        except FeedStoreError as exc:
            logger.warning("feed_store delete failed error=%s", exc)
            return exc
        return None

    def _insert(self, records: list[FeedImageRecord], timestamp: datetime) -> FeedStoreError | None:
        try:
            if self.atomic_insert:
                with self._engine.transaction():
                    self._engine.delete_all()
                    self._engine.insert_all(records, timestamp)
                return None

            error = self._delete()
            if error is not None:
                return error
            self._engine.insert_all(records, timestamp)
        except FeedStoreError as exc:
            logger.warning(
                "feed_store insert failed items=%d atomic=%s error=%s",
                len(records),
                self.atomic_insert,
                exc,
            )
            return exc
        return None


def _as_store_error(error: BaseException) -> FeedStoreError:
    if isinstance(error, FeedStoreError):
        return error
    wrapped = QueryError(f"feed store operation failed: {error!r}")
    wrapped.__cause__ = error
    return wrapped


def _as_retrieval_failure(error: BaseException) -> RetrieveResult:
    return RetrievalFailure(error=_as_store_error(error))

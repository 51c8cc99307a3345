"""Durable SQLite cache for feed image snapshots."""

from .config import StoreConfig, load_config
from .errors import FeedStoreError, OpenError, QueryError, SchemaError
from .schemas import (
    REFERENCE_EPOCH,
    CacheSnapshot,
    EmptyCache,
    FeedImageRecord,
    FoundCache,
    RetrievalFailure,
    RetrieveResult,
)
from .store import SQLiteFeedStore

__all__ = [
    "REFERENCE_EPOCH",
    "CacheSnapshot",
    "EmptyCache",
    "FeedImageRecord",
    "FeedStoreError",
    "FoundCache",
    "OpenError",
    "QueryError",
    "RetrievalFailure",
    "RetrieveResult",
    "SQLiteFeedStore",
    "SchemaError",
    "StoreConfig",
    "load_config",
]

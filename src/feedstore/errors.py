from __future__ import annotations


class FeedStoreError(Exception):
    """Base class for feed cache persistence failures."""


class OpenError(FeedStoreError):
    """The backing database file could not be created or opened."""


class SchemaError(FeedStoreError):
    """The cache table could not be created."""


class QueryError(FeedStoreError):
    """A statement failed, or a stored row could not be parsed."""

"""SQLite storage engine for the feed image cache."""

from .engine import MEMORY_PATH, SQLiteFeedEngine

__all__ = ["MEMORY_PATH", "SQLiteFeedEngine"]

"""
Storage module for Steward.

SQLite-backed implementation of the history/artifact boundary: the latest
thread snapshot per session, plus addressable artifacts for tool outputs too
large to keep in the thread.
"""

from steward.store.db import SQLiteHistoryStore, compute_hash

__all__ = [
    "SQLiteHistoryStore",
    "compute_hash",
]

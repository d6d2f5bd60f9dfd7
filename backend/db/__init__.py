"""
Database Layer
Persistence backends for the record cache.
"""

from .store import RecordStore, MemoryOnlyStore, StoredRow
from .sqlite import SQLiteStore

__all__ = ["RecordStore", "MemoryOnlyStore", "StoredRow", "SQLiteStore"]

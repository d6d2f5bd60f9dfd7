"""
Record Cache
Fast, bounded, id-keyed storage of the last-seen state of each record.

Purpose:
- Change detection needs the previous copy of every record
- The API serves the last-known-good jobs when the source is down
- Durable rows survive restarts when a SQLite store is configured

Memory is authoritative. The store is write-through and best-effort.
"""

import math
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from db.store import MemoryOnlyStore, RecordStore, StoredRow
from .exceptions import CorruptRowError, PersistenceError
from .models import CacheEntry, HistoryEntry, Record


class RecordCache:
    """
    In-memory record cache with TTL, size bound and optional persistence.

    - Entries older than `ttl_sec` (strictly greater) are treated as absent
    - When `max_size` is exceeded the oldest ~10% by cached_at are evicted
    - Store failures degrade to memory-only; they never reach callers

    Timestamps are wall-clock seconds because they are persisted and
    compared again after a restart.

    Usage:
        cache = RecordCache(store=SQLiteStore("data/cache.db"), ttl_sec=300)
        cache.set(record.id, record)
        cached = cache.get(record.id)
    """

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        ttl_sec: float = 300.0,
        max_size: int = 1000,
        evict_fraction: float = 0.1,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_sec = ttl_sec
        self.max_size = max_size
        self.evict_fraction = evict_fraction
        self._store: RecordStore = store if store is not None else MemoryOnlyStore()
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._degraded = False

    @property
    def durable(self) -> bool:
        return self._store.durable

    @property
    def degraded(self) -> bool:
        return self._degraded

    # =========================================================================
    # Store access
    # =========================================================================

    def _persist(self, operation: str, fn: Callable, *args):
        """Run a store call; failures are logged once per outage"""
        try:
            result = fn(*args)
        except PersistenceError as e:
            if not self._degraded:
                logger.warning(f"Cache store unavailable during {operation}, continuing in memory: {e}")
                self._degraded = True
            else:
                logger.debug(f"Cache store still unavailable ({operation}): {e}")
            return None

        if self._degraded:
            logger.info("Cache store recovered")
            self._degraded = False
        return result

    def _load(self, record_key: str) -> Optional[Tuple[StoredRow, Record]]:
        """Load-through from the store. An unreadable row is dropped and treated as absent."""
        try:
            row = self._store.load(record_key)
            if row is None:
                return None
            return row, Record.model_validate(row.data)
        except (CorruptRowError, ValidationError) as e:
            logger.warning(f"Dropping unreadable cache row {record_key}: {e}")
            self._store.delete(record_key)
            return None

    def _is_expired(self, cached_at: float, now: float) -> bool:
        return now - cached_at > self.ttl_sec

    # =========================================================================
    # Core operations
    # =========================================================================

    def set(self, record_key: str, data: Record) -> None:
        """Store a record (last write wins)"""
        now = self._clock()
        copy = data.model_copy(deep=True)

        with self._lock:
            # Re-insert so dict order follows cached_at
            self._entries.pop(record_key, None)
            self._entries[record_key] = CacheEntry(
                id=record_key,
                data=copy,
                cached_at=now,
                updated_at=now,
            )
            if len(self._entries) > self.max_size:
                self.evict_oldest()

        self._persist(
            "set", self._store.save,
            record_key, copy.record_id, copy.to_dict(), now, now
        )

    def get(self, record_key: str) -> Optional[Record]:
        """Get a record, memory first, then load-through from the store"""
        return self._lookup(record_key, count_hit=True)

    def has(self, record_key: str) -> bool:
        return self._lookup(record_key, count_hit=False) is not None

    def _lookup(self, record_key: str, count_hit: bool) -> Optional[Record]:
        now = self._clock()

        with self._lock:
            entry = self._entries.get(record_key)
            if entry is not None:
                if self._is_expired(entry.cached_at, now):
                    self.delete(record_key)
                    return None
                if count_hit:
                    entry.hits += 1
                return entry.data

            loaded = self._persist("get", self._load, record_key)
            if loaded is None:
                return None
            row, record = loaded

            if self._is_expired(row.cached_at, now):
                self._persist("get", self._store.delete, record_key)
                return None

            self._entries[record_key] = CacheEntry(
                id=record_key,
                data=record,
                cached_at=row.cached_at,
                updated_at=row.updated_at,
                hits=1 if count_hit else 0,
            )
            if len(self._entries) > self.max_size:
                self.evict_oldest()
            return record

    def delete(self, record_key: str) -> None:
        with self._lock:
            self._entries.pop(record_key, None)
        self._persist("delete", self._store.delete, record_key)

    def get_all(self) -> List[Record]:
        """All non-expired records"""
        now = self._clock()
        with self._lock:
            return [
                e.data for e in self._entries.values()
                if not self._is_expired(e.cached_at, now)
            ]

    def keys(self) -> List[str]:
        """Ids of all non-expired records"""
        now = self._clock()
        with self._lock:
            return [
                key for key, e in self._entries.items()
                if not self._is_expired(e.cached_at, now)
            ]

    def entry(self, record_key: str) -> Optional[CacheEntry]:
        """Metadata for a cached record (no TTL check, no hit)"""
        with self._lock:
            return self._entries.get(record_key)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        self._persist("clear", self._store.clear)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def evict_oldest(self) -> int:
        """Evict the oldest entries by cached_at. Returns count evicted."""
        with self._lock:
            to_remove = math.ceil(self.max_size * self.evict_fraction)
            oldest = sorted(self._entries.values(), key=lambda e: e.cached_at)[:to_remove]
            for entry in oldest:
                self.delete(entry.id)

        if oldest:
            logger.debug(f"Evicted {len(oldest)} oldest cache entries")
        return len(oldest)

    def clean_expired(self) -> int:
        """Delete entries with now - cached_at > TTL. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key for key, e in self._entries.items()
                if self._is_expired(e.cached_at, now)
            ]
            for key in expired:
                self.delete(key)

        self._persist("clean_expired", self._store.prune, now - self.ttl_sec)

        if expired:
            logger.debug(f"Removed {len(expired)} expired cache entries")
        return len(expired)

    # =========================================================================
    # History
    # =========================================================================

    def add_to_history(self, record_key: str, data: Optional[Record], change_type: str) -> None:
        """Append a prior state to the change log"""
        self._persist(
            "add_to_history", self._store.append_history,
            record_key,
            data.record_id if data else None,
            data.to_dict() if data else None,
            change_type,
            self._clock(),
        )

    def get_history(self, record_key: str, limit: int = 10) -> List[HistoryEntry]:
        """Change log for a record, newest first"""
        history = self._persist("get_history", self._store.history, record_key, limit)
        return history or []

    def clean_old_history(self, days_to_keep: int = 30) -> int:
        cutoff = self._clock() - days_to_keep * 24 * 60 * 60
        removed = self._persist("clean_old_history", self._store.prune_history, cutoff)
        return removed or 0

    def history_frame(self, record_key: Optional[str] = None, limit: int = 10000):
        """Change history as a DataFrame (None when the store is unavailable)"""
        return self._persist("history_frame", self._store.history_frame, record_key, limit)

    # =========================================================================
    # Stats
    # =========================================================================

    def stats(self) -> dict:
        with self._lock:
            total_hits = sum(e.hits for e in self._entries.values())
            size = len(self._entries)

        return {
            "size": size,
            "max_size": self.max_size,
            "ttl_ms": int(self.ttl_sec * 1000),
            "total_hits": total_hits,
            "durable": self._store.durable,
            "degraded": self._degraded,
            "db_path": getattr(self._store, "db_path", None),
        }

    def close(self) -> None:
        self._persist("close", self._store.close)

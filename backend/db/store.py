"""
Record Store Interface
What the cache needs from a persistence backend.

Two implementations:
    MemoryOnlyStore → no durable rows, in-memory history only
    SQLiteStore     → durable rows + append-only history table (db/sqlite.py)

The cache depends only on this interface.
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Protocol

import pandas as pd

from core.models import HistoryEntry


HISTORY_COLUMNS = ["id", "record_id", "change_type", "changed_at", "data"]


@dataclass
class StoredRow:
    """A persisted cache row"""
    id: str
    data: Dict[str, Any]
    cached_at: float
    updated_at: float


class RecordStore(Protocol):
    """Interface for cache persistence backends."""

    durable: bool

    def load(self, record_key: str) -> Optional[StoredRow]:
        ...

    def save(self, record_key: str, record_id: Optional[str], data: Dict[str, Any],
             cached_at: float, updated_at: float) -> None:
        ...

    def delete(self, record_key: str) -> None:
        ...

    def clear(self) -> None:
        ...

    def prune(self, cutoff: float) -> int:
        """Delete rows cached before `cutoff`. Returns rows removed."""
        ...

    def append_history(self, record_key: str, record_id: Optional[str],
                       data: Optional[Dict[str, Any]], change_type: str,
                       changed_at: float) -> None:
        ...

    def history(self, record_key: str, limit: int = 10) -> List[HistoryEntry]:
        """Newest first"""
        ...

    def prune_history(self, cutoff: float) -> int:
        ...

    def history_frame(self, record_key: Optional[str] = None, limit: int = 10000) -> pd.DataFrame:
        ...

    def close(self) -> None:
        ...


class MemoryOnlyStore:
    """
    Store used when persistence is off or unavailable.

    Cache rows live only in the cache itself, so load/save are no-ops.
    History is kept in bounded per-record deques so auditing still works.
    """

    durable = False

    def __init__(self, history_per_record: int = 50):
        self.history_per_record = history_per_record
        self._history: Dict[str, Deque[HistoryEntry]] = {}

    def load(self, record_key: str) -> Optional[StoredRow]:
        return None

    def save(self, record_key, record_id, data, cached_at, updated_at) -> None:
        pass

    def delete(self, record_key: str) -> None:
        pass

    def clear(self) -> None:
        pass

    def prune(self, cutoff: float) -> int:
        return 0

    def append_history(self, record_key, record_id, data, change_type, changed_at) -> None:
        if record_key not in self._history:
            self._history[record_key] = deque(maxlen=self.history_per_record)
        self._history[record_key].append(HistoryEntry(
            id=record_key,
            record_id=record_id,
            data=data,
            change_type=change_type,
            changed_at=datetime.fromtimestamp(changed_at),
        ))

    def history(self, record_key: str, limit: int = 10) -> List[HistoryEntry]:
        entries = list(self._history.get(record_key, []))
        entries.reverse()
        return entries[:limit]

    def prune_history(self, cutoff: float) -> int:
        cutoff_dt = datetime.fromtimestamp(cutoff)
        removed = 0
        for key in list(self._history):
            kept = [e for e in self._history[key] if e.changed_at >= cutoff_dt]
            removed += len(self._history[key]) - len(kept)
            if kept:
                self._history[key] = deque(kept, maxlen=self.history_per_record)
            else:
                del self._history[key]
        return removed

    def history_frame(self, record_key: Optional[str] = None, limit: int = 10000) -> pd.DataFrame:
        keys = [record_key] if record_key else list(self._history)
        rows = [
            {
                "id": e.id,
                "record_id": e.record_id,
                "change_type": e.change_type,
                "changed_at": e.changed_at,
                "data": e.data,
            }
            for key in keys
            for e in self._history.get(key, [])
        ]
        df = pd.DataFrame(rows, columns=HISTORY_COLUMNS)
        if not df.empty:
            df = df.sort_values("changed_at", ascending=False).head(limit).reset_index(drop=True)
        return df

    def close(self) -> None:
        pass

"""
SQLite Storage
Durable backend for the record cache.

Responsibilities:
- Persist the last-known copy of each record
- Append change history rows
- Prune expired rows

NOT responsible for:
- TTL decisions (the cache checks cached_at)
- Change detection (done upstream)
- Swallowing errors (sqlite3.Error and undecodable rows become PersistenceError)
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from loguru import logger

from core.exceptions import CorruptRowError, PersistenceError
from core.models import HistoryEntry
from .store import HISTORY_COLUMNS, StoredRow


def _decode(text: Optional[str], record_key: str) -> Any:
    """JSON column value; an undecodable value raises CorruptRowError"""
    if not text:
        return None
    try:
        return json.loads(text)
    except (TypeError, ValueError) as e:
        raise CorruptRowError(record_key, e) from e


class SQLiteStore:
    """
    SQLite persistence for cached records.

    Tables:
        - records: Last-known record per id
        - record_history: Append-only change log
    """

    durable = True

    def __init__(self, db_path: str = "data/cache.db"):
        self.db_path = db_path
        try:
            self._ensure_directory()
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            raise PersistenceError(f"Cannot open cache database at {db_path}: {e}") from e
        logger.info(f"Cache database initialized at {self.db_path}")

    def _ensure_directory(self):
        """Create data directory"""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    def _init_schema(self):
        """Initialize database schema"""
        with sqlite3.connect(self.db_path) as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS records (
                    id TEXT PRIMARY KEY,
                    record_id TEXT,
                    data TEXT NOT NULL,
                    cached_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS record_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_key TEXT NOT NULL,
                    record_id TEXT,
                    data TEXT,
                    change_type TEXT NOT NULL,
                    changed_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_records_cached_at
                ON records(cached_at);

                CREATE INDEX IF NOT EXISTS idx_history_record_key
                ON record_history(record_key);

                CREATE INDEX IF NOT EXISTS idx_history_changed_at
                ON record_history(changed_at);
            """)

    @contextmanager
    def _connect(self):
        """Connection scope that converts sqlite errors"""
        try:
            with sqlite3.connect(self.db_path) as conn:
                yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite operation failed: {e}", {"db_path": self.db_path}) from e

    # =========================================================================
    # Record Rows
    # =========================================================================

    def load(self, record_key: str) -> Optional[StoredRow]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, data, cached_at, updated_at FROM records WHERE id = ?",
                [record_key]
            ).fetchone()

        if row is None:
            return None
        return StoredRow(
            id=row[0],
            data=_decode(row[1], record_key),
            cached_at=row[2],
            updated_at=row[3],
        )

    def save(self, record_key: str, record_id: Optional[str], data: Dict[str, Any],
             cached_at: float, updated_at: float) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO records
                   (id, record_id, data, cached_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                [record_key, record_id or "", json.dumps(data), cached_at, updated_at]
            )

    def delete(self, record_key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM records WHERE id = ?", [record_key])

    def clear(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM records")

    def prune(self, cutoff: float) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM records WHERE cached_at < ?", [cutoff])
            return cursor.rowcount

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]

    # =========================================================================
    # History
    # =========================================================================

    def append_history(self, record_key: str, record_id: Optional[str],
                       data: Optional[Dict[str, Any]], change_type: str,
                       changed_at: float) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO record_history
                   (record_key, record_id, data, change_type, changed_at)
                   VALUES (?, ?, ?, ?, ?)""",
                [record_key, record_id or "", json.dumps(data), change_type, changed_at]
            )

    def history(self, record_key: str, limit: int = 10) -> List[HistoryEntry]:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                """SELECT * FROM record_history
                   WHERE record_key = ?
                   ORDER BY changed_at DESC, id DESC LIMIT ?""",
                [record_key, limit]
            ).fetchall()

        return [
            HistoryEntry(
                id=row["record_key"],
                record_id=row["record_id"] or None,
                data=_decode(row["data"], record_key),
                change_type=row["change_type"],
                changed_at=datetime.fromtimestamp(row["changed_at"]),
            )
            for row in rows
        ]

    def prune_history(self, cutoff: float) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM record_history WHERE changed_at < ?", [cutoff])
            return cursor.rowcount

    def history_frame(self, record_key: Optional[str] = None, limit: int = 10000) -> pd.DataFrame:
        """Read history as DataFrame (for export)"""
        query = """SELECT record_key AS id, record_id, change_type, changed_at, data
                   FROM record_history"""
        params: List[Any] = []
        if record_key:
            query += " WHERE record_key = ?"
            params.append(record_key)
        query += " ORDER BY changed_at DESC, record_history.id DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            try:
                df = pd.read_sql_query(query, conn, params=params)
            except pd.errors.DatabaseError as e:
                raise PersistenceError(f"History query failed: {e}") from e

        if df.empty:
            return pd.DataFrame(columns=HISTORY_COLUMNS)

        # Local time, same as HistoryEntry.changed_at
        df["changed_at"] = pd.to_datetime(df["changed_at"].map(datetime.fromtimestamp))
        df["data"] = [_decode(text, key) for text, key in zip(df["data"], df["id"])]
        return df

    def close(self) -> None:
        # Connections are scoped per call
        pass

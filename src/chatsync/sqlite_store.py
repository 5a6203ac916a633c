from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

from .memory_service import _sort_key
from .service import WriteFailed, row_matches


class SQLiteRowStore:
    """Durable row store backed by SQLite.

    Rows are kept as JSON documents per ``(table, id)``; filtering and
    ordering happen in Python so the semantics match ``InMemoryRowStore``.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rows (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    tbl TEXT NOT NULL,
                    id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    UNIQUE (tbl, id)
                )
                """
            )
            self._conn.execute("PRAGMA user_version = 1")
        elif user_version != 1:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute("SELECT body FROM rows WHERE tbl=? ORDER BY seq ASC", (table,)).fetchall()
        return [json.loads(row[0]) for row in rows]

    def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None,
        order_by: str,
        ascending: bool,
        limit: int | None,
    ) -> List[Dict[str, Any]]:
        rows = [row for row in self._rows(table) if row_matches(row, filters)]
        rows.sort(key=_sort_key(order_by), reverse=not ascending)
        if limit is not None:
            rows = rows[: max(limit, 0)]
        return rows

    def get(self, table: str, row_id: str) -> Dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute("SELECT body FROM rows WHERE tbl=? AND id=?", (table, row_id)).fetchone()
        return json.loads(row[0]) if row is not None else None

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO rows (tbl, id, body) VALUES (?, ?, ?)",
                    (table, row["id"], json.dumps(row)),
                )
            except sqlite3.IntegrityError as exc:
                raise WriteFailed(f"duplicate id {row['id']} in {table}") from exc
        return dict(row)

    def update(self, table: str, row_id: str, changes: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        with self._lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                existing = cursor.execute(
                    "SELECT body FROM rows WHERE tbl=? AND id=?", (table, row_id)
                ).fetchone()
                if existing is None:
                    self._conn.rollback()
                    raise WriteFailed(f"no row {row_id} in {table}")
                old = json.loads(existing[0])
                new = {**old, **dict(changes), "id": row_id}
                cursor.execute(
                    "UPDATE rows SET body=? WHERE tbl=? AND id=?",
                    (json.dumps(new), table, row_id),
                )
                self._conn.commit()
            except WriteFailed:
                raise
            except Exception:
                self._conn.rollback()
                raise
            finally:
                cursor.close()
        return old, new

    def find(self, table: str, key: Mapping[str, Any]) -> Dict[str, Any] | None:
        for row in self._rows(table):
            if row_matches(row, key):
                return row
        return None

    def delete(self, table: str, row_id: str) -> Dict[str, Any] | None:
        old = self.get(table, row_id)
        if old is None:
            return None
        with self._lock:
            self._conn.execute("DELETE FROM rows WHERE tbl=? AND id=?", (table, row_id))
        return old

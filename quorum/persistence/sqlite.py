"""SQLite implementation of the orchestration repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Sequence

from .sql import SCHEMA, SQLRepository


class SQLiteRepository(SQLRepository):
    """Persist orchestration state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in SCHEMA:
            cur.execute(statement.format(serial="INTEGER PRIMARY KEY AUTOINCREMENT"))
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, params: Sequence[Any]) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, tuple(params))
            self._conn.commit()
            return cur.rowcount

    def _fetchall(self, query: str, params: Sequence[Any]) -> list[dict[str, Any]]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, tuple(params))
            return [dict(row) for row in cur.fetchall()]

    async def _run(self, query: str, params: Sequence[Any] = ()) -> int:
        return await asyncio.to_thread(self._execute, query, params)

    async def _query(self, query: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._fetchall, query, params)

    def close(self) -> None:
        self._conn.close()

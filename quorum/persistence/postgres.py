"""PostgreSQL implementation of the orchestration repository."""

from __future__ import annotations

import re
from typing import Any, Sequence

import asyncpg

from ..errors import DependencyFailure
from .sql import SCHEMA, SQLRepository

_PLACEHOLDER = re.compile(r"\?")


def _numbered(query: str) -> str:
    counter = iter(range(1, 10_000))
    return _PLACEHOLDER.sub(lambda _: f"${next(counter)}", query)


def _rowcount(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 3" or "INSERT 0 1"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresRepository(SQLRepository):
    """Persist orchestration state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as e:
            raise DependencyFailure(f"PostgreSQL unreachable: {e}") from e
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in SCHEMA:
            await conn.execute(statement.format(serial="BIGSERIAL PRIMARY KEY"))

    # ------------------------------------------------------------------
    async def _run(self, query: str, params: Sequence[Any] = ()) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(_numbered(query), *params)
        finally:
            await conn.close()
        return _rowcount(status)

    async def _query(self, query: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(_numbered(query), *params)
        finally:
            await conn.close()
        return [dict(row) for row in rows]

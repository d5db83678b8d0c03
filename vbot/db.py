"""Async access to the chat database over libsql.

The ``libsql`` driver is synchronous, so every call is pushed onto a worker
thread with ``asyncio.to_thread()``.  Where the connection points:

- **Production**: ``TURSO_DATABASE_URL`` + ``TURSO_AUTH_TOKEN`` → remote Turso
- **Dev/test**: no Turso env vars → local SQLite file via ``database_path``

Stores use :func:`connect`, which opens a connection, applies the schema
once per process and path, and always closes the connection on exit.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import libsql

from vbot.config import settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence
    from pathlib import Path

_applied_schemas: set[tuple[str, str]] = set()


class Rows:
    """Result of a statement, fetched eagerly on the worker thread."""

    def __init__(self, rows: list[tuple], rowcount: int) -> None:
        self._rows = rows
        self.rowcount = rowcount

    def one(self) -> tuple | None:
        return self._rows[0] if self._rows else None

    def all(self) -> list[tuple]:
        return list(self._rows)


class Connection:
    """Async facade over a synchronous libsql connection."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    async def execute(self, sql: str, params: tuple = ()) -> Rows:
        def _run() -> Rows:
            cursor = self._conn.execute(sql, params)
            rows = cursor.fetchall()
            return Rows(rows, cursor.rowcount)

        return await asyncio.to_thread(_run)

    async def commit(self) -> None:
        await asyncio.to_thread(self._conn.commit)

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)


def _open_local(path: str) -> Any:
    """Open a local libsql connection with WAL mode and busy timeout."""
    conn = libsql.connect(path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def _target(local_path_override: Path | None) -> str:
    if local_path_override:
        return str(local_path_override)
    if settings.turso_database_url:
        return settings.turso_database_url
    return str(settings.database_path)


async def open_connection(local_path_override: Path | None = None) -> Connection:
    """Open a libsql connection.

    *local_path_override* (test isolation) wins over everything; otherwise
    ``TURSO_DATABASE_URL`` selects the remote database and ``database_path``
    is the local fallback.
    """
    if local_path_override:
        local_path_override.parent.mkdir(parents=True, exist_ok=True)
        return Connection(await asyncio.to_thread(_open_local, str(local_path_override)))

    if settings.turso_database_url:
        conn = await asyncio.to_thread(
            libsql.connect,
            database=settings.turso_database_url,
            auth_token=settings.turso_auth_token,
        )
        return Connection(conn)

    settings.database_path.parent.mkdir(parents=True, exist_ok=True)
    return Connection(await asyncio.to_thread(_open_local, str(settings.database_path)))


@asynccontextmanager
async def connect(
    schema: Sequence[str] = (),
    local_path_override: Path | None = None,
) -> AsyncIterator[Connection]:
    """Yield an open connection with *schema* statements applied.

    Schema statements must be idempotent (``CREATE ... IF NOT EXISTS``).
    They run once per database target for the life of the process.
    """
    db = await open_connection(local_path_override)
    try:
        key = (_target(local_path_override), "\n".join(schema))
        if schema and key not in _applied_schemas:
            for statement in schema:
                await db.execute(statement)
            await db.commit()
            _applied_schemas.add(key)
        yield db
    finally:
        await db.close()


def _reset_schema_cache() -> None:
    """Forget which schemas were applied (for testing)."""
    _applied_schemas.clear()

"""libsql sessions for the memory engine.

The ``libsql`` driver is synchronous; every call is pushed through
``asyncio.to_thread()`` so no statement blocks the event loop.

:func:`session` is the only way engine code talks to the database.  It
opens a connection to the configured target, makes sure the caller's
schema exists, and guarantees that any driver failure, whether on
connect, bootstrap, execute or commit, reaches the caller as
:class:`~chat_memory.errors.StorageUnavailable` with the driver error
chained.

Targets, in priority order:

- an explicit ``local_path`` (test isolation)
- ``TURSO_DATABASE_URL`` + ``TURSO_AUTH_TOKEN``: hosted libSQL
- ``database_path``: local SQLite file, WAL mode
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import libsql

from chat_memory.config import settings
from chat_memory.errors import StorageUnavailable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000

# (target, schema) pairs whose CREATE statements have already run.
_bootstrapped: set[tuple[str, tuple[str, ...]]] = set()


class _AsyncCursor:
    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    async def fetchone(self) -> tuple | None:
        return await asyncio.to_thread(self._cursor.fetchone)

    async def fetchall(self) -> list[tuple]:
        return await asyncio.to_thread(self._cursor.fetchall)

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount


class _AsyncConnection:
    """Async facade over one libsql connection."""

    def __init__(self, conn: Any, target: str) -> None:
        self._conn = conn
        self.target = target

    async def execute(self, sql: str, params: tuple = ()) -> _AsyncCursor:
        cursor = await asyncio.to_thread(self._conn.execute, sql, params)
        return _AsyncCursor(cursor)

    async def scalar(self, sql: str, params: tuple = ()) -> Any:
        """Execute *sql* and return the first column of the first row, or None."""
        cursor = await self.execute(sql, params)
        row = await cursor.fetchone()
        return row[0] if row else None

    async def last_insert_id(self) -> int:
        """Rowid of the last row inserted on this connection."""
        return int(await self.scalar("SELECT last_insert_rowid()") or 0)

    async def commit(self) -> None:
        await asyncio.to_thread(self._conn.commit)

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)


def _open_local(path: Path) -> Any:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = libsql.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    return conn


def _open_remote() -> Any:
    return libsql.connect(
        database=settings.turso_database_url,
        auth_token=settings.turso_auth_token,
    )


async def get_connection(local_path: Path | None = None) -> _AsyncConnection:
    """Open a raw connection to the configured target. Driver errors propagate."""
    if local_path is None and settings.turso_database_url:
        conn = await asyncio.to_thread(_open_remote)
        return _AsyncConnection(conn, settings.turso_database_url)
    path = local_path or settings.database_path
    conn = await asyncio.to_thread(_open_local, path)
    return _AsyncConnection(conn, str(path))


async def _bootstrap(conn: _AsyncConnection, schema: tuple[str, ...]) -> None:
    key = (conn.target, schema)
    if not schema or key in _bootstrapped:
        return
    for statement in schema:
        await conn.execute(statement)
    await conn.commit()
    _bootstrapped.add(key)
    logger.debug("Schema ready on %s (%d statements)", conn.target, len(schema))


async def _close_quietly(conn: _AsyncConnection) -> None:
    try:
        await conn.close()
    except Exception:
        logger.warning("Failed to close connection to %s", conn.target, exc_info=True)


@asynccontextmanager
async def session(
    schema: Sequence[str] = (),
    local_path: Path | None = None,
) -> AsyncIterator[_AsyncConnection]:
    """Yield a connection with *schema* in place; always close it afterwards.

    *schema* is a sequence of idempotent DDL statements, run once per
    target per process.
    """
    try:
        conn = await get_connection(local_path)
    except Exception as exc:
        raise StorageUnavailable(f"Could not open memory database: {exc}") from exc

    try:
        await _bootstrap(conn, tuple(schema))
        yield conn
    except StorageUnavailable:
        raise
    except Exception as exc:
        raise StorageUnavailable(f"Memory database statement failed: {exc}") from exc
    finally:
        await _close_quietly(conn)

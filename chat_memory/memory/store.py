"""ConversationStore — libsql persistence for turns, pins and summaries."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from chat_memory.db import session
from chat_memory.memory.models import MemoryStats, Pin, Summary, Turn, utc_now

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager
    from pathlib import Path

    from chat_memory.db import _AsyncConnection

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS turns (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id  TEXT NOT NULL,
        role             TEXT NOT NULL,
        text             TEXT NOT NULL,
        model_id         TEXT,
        token_usage      INTEGER,
        importance_score REAL,
        created_at       TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_turns_conversation ON turns (conversation_id, id)",
    """
    CREATE TABLE IF NOT EXISTS pins (
        id               TEXT PRIMARY KEY,
        conversation_id  TEXT NOT NULL,
        content          TEXT NOT NULL,
        source_turn_id   INTEGER,
        importance_score REAL NOT NULL DEFAULT 0.8,
        kind             TEXT NOT NULL DEFAULT 'manual',
        created_at       TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pins_conversation ON pins (conversation_id)",
    """
    CREATE TABLE IF NOT EXISTS summaries (
        id               TEXT PRIMARY KEY,
        conversation_id  TEXT NOT NULL,
        summary          TEXT NOT NULL,
        turn_count       INTEGER NOT NULL,
        start_turn_id    INTEGER NOT NULL,
        end_turn_id      INTEGER NOT NULL,
        importance_score REAL NOT NULL DEFAULT 0.7,
        is_fallback      INTEGER NOT NULL DEFAULT 0,
        created_at       TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_summaries_conversation ON summaries (conversation_id, end_turn_id)",
)

_TURN_COLUMNS = (
    "id, conversation_id, role, text, model_id, token_usage, importance_score, created_at"
)


class ConversationStore:
    """Persists turns, pins and summaries in SQLite / Turso.

    Singleton accessed via ``ConversationStore.get()``.  Pass an explicit
    *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).

    Every driver failure surfaces as :class:`~chat_memory.errors.StorageUnavailable`.
    """

    _instance: ConversationStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path

    @classmethod
    def get(cls) -> ConversationStore:
        """Return the shared ConversationStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    def _session(self) -> AbstractAsyncContextManager[_AsyncConnection]:
        return session(_SCHEMA, local_path=self._db_path)

    # -- Turns -----------------------------------------------------------------

    async def add_turn(
        self,
        conversation_id: str,
        role: str,
        text: str,
        *,
        model_id: str | None = None,
        token_usage: int | None = None,
        importance_score: float | None = None,
    ) -> Turn:
        """Insert a turn and return it with its assigned ID."""
        created_at = utc_now()
        async with self._session() as db:
            await db.execute(
                """
                INSERT INTO turns
                    (conversation_id, role, text, model_id, token_usage,
                     importance_score, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (conversation_id, role, text, model_id, token_usage, importance_score, created_at),
            )
            turn_id = await db.last_insert_id()
            await db.commit()
        return Turn(
            id=turn_id,
            conversation_id=conversation_id,
            role=role,
            text=text,
            model_id=model_id,
            token_usage=token_usage,
            importance_score=importance_score,
            created_at=created_at,
        )

    async def update_turn_importance(self, turn_id: int, score: float) -> None:
        async with self._session() as db:
            await db.execute(
                "UPDATE turns SET importance_score = ? WHERE id = ?", (score, turn_id)
            )
            await db.commit()

    async def get_recent_turns(
        self, conversation_id: str, limit: int, *, exclude_newest: bool = True
    ) -> list[Turn]:
        """Return up to *limit* most recent turns, oldest first.

        With *exclude_newest* the single newest turn (the one awaiting a
        reply) is skipped.
        """
        offset = 1 if exclude_newest else 0
        async with self._session() as db:
            cursor = await db.execute(
                f"""
                SELECT {_TURN_COLUMNS} FROM turns
                WHERE conversation_id = ?
                ORDER BY id DESC
                LIMIT ? OFFSET ?
                """,
                (conversation_id, limit, offset),
            )
            rows = await cursor.fetchall()
        return [Turn.from_row(row) for row in reversed(rows)]

    async def get_all_turns(self, conversation_id: str) -> list[Turn]:
        async with self._session() as db:
            cursor = await db.execute(
                f"SELECT {_TURN_COLUMNS} FROM turns WHERE conversation_id = ? ORDER BY id",
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        return [Turn.from_row(row) for row in rows]

    async def get_turn_count(self, conversation_id: str) -> int:
        async with self._session() as db:
            count = await db.scalar(
                "SELECT COUNT(*) FROM turns WHERE conversation_id = ?", (conversation_id,)
            )
        return int(count or 0)

    async def get_turns_since(
        self,
        conversation_id: str,
        after_turn_id: int | None = None,
        limit: int | None = None,
    ) -> list[Turn]:
        """Return turns persisted after *after_turn_id*, oldest first.

        ``None`` means from the start of the conversation.
        """
        async with self._session() as db:
            cursor = await db.execute(
                f"""
                SELECT {_TURN_COLUMNS} FROM turns
                WHERE conversation_id = ? AND id > ?
                ORDER BY id
                LIMIT ?
                """,
                (conversation_id, after_turn_id or 0, -1 if limit is None else limit),
            )
            rows = await cursor.fetchall()
        return [Turn.from_row(row) for row in rows]

    async def count_turns_since(self, conversation_id: str, after_turn_id: int) -> int:
        async with self._session() as db:
            count = await db.scalar(
                "SELECT COUNT(*) FROM turns WHERE conversation_id = ? AND id > ?",
                (conversation_id, after_turn_id),
            )
        return int(count or 0)

    async def get_turns_in_range(
        self, conversation_id: str, start_id: int, end_id: int
    ) -> list[Turn]:
        """Return turns with IDs in ``[start_id, end_id]``, oldest first."""
        async with self._session() as db:
            cursor = await db.execute(
                f"""
                SELECT {_TURN_COLUMNS} FROM turns
                WHERE conversation_id = ? AND id BETWEEN ? AND ?
                ORDER BY id
                """,
                (conversation_id, start_id, end_id),
            )
            rows = await cursor.fetchall()
        return [Turn.from_row(row) for row in rows]

    # -- Pins ------------------------------------------------------------------

    async def create_pin(self, pin: Pin) -> Pin:
        async with self._session() as db:
            await db.execute(
                """
                INSERT INTO pins
                    (id, conversation_id, content, source_turn_id,
                     importance_score, kind, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                pin.to_row(),
            )
            await db.commit()
        return pin

    async def get_pins(self, conversation_id: str, limit: int) -> list[Pin]:
        """Return pins by importance descending, newest first on ties."""
        async with self._session() as db:
            cursor = await db.execute(
                """
                SELECT id, conversation_id, content, source_turn_id,
                       importance_score, kind, created_at
                FROM pins
                WHERE conversation_id = ?
                ORDER BY importance_score DESC, created_at DESC, rowid DESC
                LIMIT ?
                """,
                (conversation_id, limit),
            )
            rows = await cursor.fetchall()
        return [Pin.from_row(row) for row in rows]

    async def delete_pin(self, pin_id: str) -> bool:
        """Delete a pin. Returns True if a row was removed."""
        async with self._session() as db:
            cursor = await db.execute("DELETE FROM pins WHERE id = ?", (pin_id,))
            await db.commit()
            return cursor.rowcount > 0

    # -- Summaries -------------------------------------------------------------

    async def create_summary(self, summary: Summary) -> Summary:
        async with self._session() as db:
            await db.execute(
                """
                INSERT INTO summaries
                    (id, conversation_id, summary, turn_count, start_turn_id,
                     end_turn_id, importance_score, is_fallback, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                summary.to_row(),
            )
            await db.commit()
        return summary

    async def get_summaries(self, conversation_id: str, limit: int) -> list[Summary]:
        """Return the most recent summaries, newest first."""
        async with self._session() as db:
            cursor = await db.execute(
                """
                SELECT id, conversation_id, summary, turn_count, start_turn_id,
                       end_turn_id, importance_score, is_fallback, created_at
                FROM summaries
                WHERE conversation_id = ?
                ORDER BY end_turn_id DESC
                LIMIT ?
                """,
                (conversation_id, limit),
            )
            rows = await cursor.fetchall()
        return [Summary.from_row(row) for row in rows]

    async def get_last_summary(self, conversation_id: str) -> Summary | None:
        summaries = await self.get_summaries(conversation_id, 1)
        return summaries[0] if summaries else None

    # -- Conversation-level ----------------------------------------------------

    async def get_stats(self, conversation_id: str) -> MemoryStats:
        async with self._session() as db:
            cursor = await db.execute(
                """
                SELECT COUNT(*), AVG(importance_score), MIN(created_at), MAX(created_at)
                FROM turns WHERE conversation_id = ?
                """,
                (conversation_id,),
            )
            turn_row = await cursor.fetchone()
            cursor = await db.execute(
                "SELECT COUNT(*) FROM summaries WHERE conversation_id = ?", (conversation_id,)
            )
            summary_row = await cursor.fetchone()
            cursor = await db.execute(
                "SELECT COUNT(*) FROM pins WHERE conversation_id = ?", (conversation_id,)
            )
            pin_row = await cursor.fetchone()

        total, avg_importance, oldest, newest = turn_row or (0, None, None, None)
        return MemoryStats(
            total_turns=total or 0,
            total_summaries=summary_row[0] if summary_row else 0,
            total_pins=pin_row[0] if pin_row else 0,
            oldest_turn_at=oldest or "",
            newest_turn_at=newest or "",
            average_importance=avg_importance or 0.0,
        )

    async def delete_conversation(self, conversation_id: str) -> int:
        """Delete every turn, pin and summary of a conversation.

        Returns the number of rows removed across all three tables.
        """
        removed = 0
        async with self._session() as db:
            for table in ("summaries", "pins", "turns"):
                cursor = await db.execute(
                    f"DELETE FROM {table} WHERE conversation_id = ?",  # noqa: S608
                    (conversation_id,),
                )
                removed += max(cursor.rowcount, 0)
            await db.commit()
        logger.info("Deleted conversation %s (%d rows)", conversation_id, removed)
        return removed

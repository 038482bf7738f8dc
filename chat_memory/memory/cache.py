"""Short-lived read-through cache for turn counts and recent-turn windows."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from chat_memory.config import settings

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable

    from chat_memory.memory.models import Turn

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    captured_at: float


class TurnCache:
    """Two conversation-scoped caches with a fixed TTL.

    - turn counts, keyed by conversation ID
    - recent-turn windows, keyed by ``(conversation ID, limit)``

    Entries are returned only while ``now - captured_at < ttl``.  Callers
    must call :meth:`invalidate` right after persisting a turn so the next
    read goes back to the store.  Writes sweep expired entries at most once
    per TTL, so conversations that are never read again do not accumulate.

    Args:
        ttl: Time-to-live in seconds (defaults to ``cache_ttl_seconds``).
        clock: Monotonic clock returning seconds; injectable for tests.
    """

    def __init__(
        self,
        ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = settings.cache_ttl_seconds if ttl is None else ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._counts: dict[str, _Entry[int]] = {}
        self._recent: dict[tuple[str, int], _Entry[list[Turn]]] = {}
        self._last_sweep = clock()

    # -- Internal helpers ------------------------------------------------------

    def _fresh(self, entry: _Entry[Any] | None, now: float) -> bool:
        return entry is not None and now - entry.captured_at < self.ttl

    def _lookup(self, table: dict[Hashable, _Entry[V]], key: Hashable) -> V | None:
        with self._lock:
            entry = table.get(key)
            if self._fresh(entry, self._clock()):
                logger.debug("Cache hit: %s", key)
                return entry.value
            if entry is not None:
                del table[key]
        logger.debug("Cache miss: %s", key)
        return None

    def _store(self, table: dict[Hashable, _Entry[V]], key: Hashable, value: V) -> None:
        with self._lock:
            now = self._clock()
            table[key] = _Entry(value, now)
            if now - self._last_sweep >= self.ttl:
                removed = self._sweep(now)
                if removed:
                    logger.debug("Cache swept %d expired entries", removed)

    def _sweep(self, now: float) -> int:
        """Drop expired entries. Caller holds the lock."""
        self._last_sweep = now
        removed = 0
        for table in (self._counts, self._recent):
            for key in [k for k, e in table.items() if not self._fresh(e, now)]:
                del table[key]
                removed += 1
        return removed

    # -- Turn counts -----------------------------------------------------------

    def get_count(self, conversation_id: str) -> int | None:
        return self._lookup(self._counts, conversation_id)

    def put_count(self, conversation_id: str, count: int) -> None:
        self._store(self._counts, conversation_id, count)

    # -- Recent turns ----------------------------------------------------------

    def get_recent(self, conversation_id: str, limit: int) -> list[Turn] | None:
        turns = self._lookup(self._recent, (conversation_id, limit))
        return list(turns) if turns is not None else None

    def put_recent(self, conversation_id: str, limit: int, turns: list[Turn]) -> None:
        self._store(self._recent, (conversation_id, limit), list(turns))

    # -- Housekeeping ----------------------------------------------------------

    def invalidate(self, conversation_id: str) -> None:
        """Evict every entry for a conversation from both caches."""
        with self._lock:
            self._counts.pop(conversation_id, None)
            for key in [k for k in self._recent if k[0] == conversation_id]:
                del self._recent[key]

    def prune(self) -> int:
        """Drop expired entries now. Returns how many were removed."""
        with self._lock:
            return self._sweep(self._clock())

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()
            self._recent.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"turn_counts": len(self._counts), "recent_windows": len(self._recent)}

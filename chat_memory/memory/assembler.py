"""ContextAssembler — builds the bounded memory context for one model call."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

from chat_memory.config import settings
from chat_memory.errors import StorageUnavailable
from chat_memory.memory.models import MemoryContext

if TYPE_CHECKING:
    from collections.abc import Awaitable, Sequence

    from chat_memory.memory.cache import TurnCache
    from chat_memory.memory.models import Pin, Summary, Turn
    from chat_memory.memory.pins import PinRegistry
    from chat_memory.memory.store import ConversationStore

logger = logging.getLogger(__name__)

TOKENS_PER_CHAR = 0.75


def estimate_tokens(text: str) -> int:
    """Cheap length-based token estimate. Not a tokenizer."""
    return math.ceil(len(text) * TOKENS_PER_CHAR)


def estimate_context_tokens(
    turns: Sequence[Turn], pins: Sequence[Pin], summaries: Sequence[Summary]
) -> int:
    chars = sum(len(t.text) for t in turns)
    chars += sum(len(p.content) for p in pins)
    chars += sum(len(s.text) for s in summaries)
    return math.ceil(chars * TOKENS_PER_CHAR)


class ContextAssembler:
    """Assembles recent turns, top pins and recent summaries under a budget.

    Each source is fetched independently; a source whose store read fails
    contributes nothing rather than failing the whole build.
    """

    def __init__(
        self,
        store: ConversationStore,
        pins: PinRegistry,
        cache: TurnCache,
        *,
        recent_limit: int | None = None,
        pin_limit: int | None = None,
        summary_limit: int | None = None,
        min_recent: int | None = None,
    ) -> None:
        self._store = store
        self._pins = pins
        self._cache = cache
        self.recent_limit = recent_limit or settings.recent_turn_limit
        self.pin_limit = pin_limit or settings.pin_limit
        self.summary_limit = summary_limit or settings.summary_limit
        self.min_recent = settings.min_recent_turns if min_recent is None else min_recent

    async def build_context(
        self, conversation_id: str, max_tokens: int | None = None
    ) -> MemoryContext:
        """Return the memory context for the next reply in *conversation_id*.

        The newest persisted turn is the message being answered and is never
        part of the recent window; the caller appends it after assembly.
        """
        budget = settings.context_token_budget if max_tokens is None else max_tokens

        turns = await self._degrade(
            "recent turns", conversation_id, self.recent_turns(conversation_id)
        )
        pins = await self._degrade(
            "pins", conversation_id, self._pins.top_pins(conversation_id, self.pin_limit)
        )
        summaries = await self._degrade(
            "summaries",
            conversation_id,
            self._store.get_summaries(conversation_id, self.summary_limit),
        )

        total = estimate_context_tokens(turns, pins, summaries)
        if total <= budget:
            logger.debug("Context for %s: %d tokens (budget %d)", conversation_id, total, budget)
            return MemoryContext(
                recent_turns=turns, pins=pins, summaries=summaries, total_tokens=total
            )

        context = self.truncate(turns, pins, summaries, budget)
        logger.debug(
            "Context for %s truncated: %d → %d tokens (budget %d)",
            conversation_id,
            total,
            context.total_tokens,
            budget,
        )
        return context

    async def recent_turns(self, conversation_id: str) -> list[Turn]:
        """Recent window excluding the newest turn, read through the cache."""
        cached = self._cache.get_recent(conversation_id, self.recent_limit)
        if cached is not None:
            return cached
        turns = await self._store.get_recent_turns(
            conversation_id, self.recent_limit, exclude_newest=True
        )
        self._cache.put_recent(conversation_id, self.recent_limit, turns)
        return turns

    def truncate(
        self,
        turns: Sequence[Turn],
        pins: Sequence[Pin],
        summaries: Sequence[Summary],
        budget: int,
    ) -> MemoryContext:
        """Fit content into *budget* by priority: turns, then pins, then summaries.

        The last ``min_recent`` turns are always kept, even over budget.
        Pins (most important first) and then summaries (newest first) are
        added until the first one that would not fit.
        """
        kept_turns = list(turns[-self.min_recent :]) if self.min_recent > 0 else []
        used = sum(estimate_tokens(t.text) for t in kept_turns)

        kept_pins: list[Pin] = []
        ranked = sorted(pins, key=lambda p: (p.importance_score, p.created_at), reverse=True)
        for pin in ranked:
            cost = estimate_tokens(pin.content)
            if used + cost > budget:
                break
            kept_pins.append(pin)
            used += cost

        kept_summaries: list[Summary] = []
        for summary in sorted(summaries, key=lambda s: s.end_turn_id, reverse=True):
            cost = estimate_tokens(summary.text)
            if used + cost > budget:
                break
            kept_summaries.append(summary)
            used += cost

        return MemoryContext(
            recent_turns=kept_turns,
            pins=kept_pins,
            summaries=kept_summaries,
            total_tokens=used,
            truncated=True,
        )

    @staticmethod
    async def _degrade(source: str, conversation_id: str, fetch: Awaitable[list]) -> list:
        try:
            return await fetch
        except StorageUnavailable as exc:
            logger.warning("No %s for %s, store unavailable: %s", source, conversation_id, exc)
            return []

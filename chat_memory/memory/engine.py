"""MemoryEngine — the public surface of the conversation memory system."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from chat_memory.memory.assembler import ContextAssembler
from chat_memory.memory.background import SummarizationQueue
from chat_memory.memory.cache import TurnCache
from chat_memory.memory.models import Turn
from chat_memory.memory.pins import PinRegistry
from chat_memory.memory.scoring import score_importance
from chat_memory.memory.store import ConversationStore
from chat_memory.memory.summarizer import Summarizer

if TYPE_CHECKING:
    from chat_memory.llm.client import TextGenerator
    from chat_memory.memory.models import (
        CreatePinRequest,
        MemoryContext,
        MemoryStats,
        Pin,
        Summary,
    )

logger = logging.getLogger(__name__)


class MemoryEngine:
    """Wires store, cache, pins, summarizer and assembler together.

    Typical turn::

        turn = await engine.record_turn(conv_id, "user", text)
        context = await engine.build_context(conv_id)
        reply = await model(context, turn)
        await engine.record_turn(conv_id, "assistant", reply, model_id=model_id)
        engine.schedule_summarization(conv_id)

    Singleton accessed via ``MemoryEngine.get()``; construct directly to
    inject a store, cache or generator.
    """

    _instance: MemoryEngine | None = None

    def __init__(
        self,
        store: ConversationStore | None = None,
        cache: TurnCache | None = None,
        generator: TextGenerator | None = None,
    ) -> None:
        self.store = store or ConversationStore.get()
        self.cache = cache or TurnCache()
        self.pins = PinRegistry(self.store)
        self.summarizer = Summarizer(self.store, cache=self.cache, generator=generator)
        self.assembler = ContextAssembler(self.store, self.pins, self.cache)
        self.queue = SummarizationQueue(self.summarizer)

    @classmethod
    def get(cls) -> MemoryEngine:
        """Return the shared MemoryEngine instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Context ---------------------------------------------------------------

    async def build_context(
        self, conversation_id: str, max_tokens: int | None = None
    ) -> MemoryContext:
        return await self.assembler.build_context(conversation_id, max_tokens)

    # -- Turns -----------------------------------------------------------------

    @staticmethod
    def score_importance(turn: Turn) -> float:
        return score_importance(turn)

    async def record_turn(
        self,
        conversation_id: str,
        role: str,
        text: str,
        *,
        model_id: str | None = None,
        token_usage: int | None = None,
    ) -> Turn:
        """Score and persist a turn, then invalidate the conversation's cache."""
        # Scoring needs only role and text, so score before the row exists.
        score = score_importance(Turn(id=0, conversation_id=conversation_id, role=role, text=text))
        turn = await self.store.add_turn(
            conversation_id,
            role,
            text,
            model_id=model_id,
            token_usage=token_usage,
            importance_score=score,
        )
        self.invalidate_cache(conversation_id)
        return turn

    async def score_conversation(self, conversation_id: str) -> int:
        """Recompute and persist every turn's importance. Returns the count."""
        turns = await self.store.get_all_turns(conversation_id)
        for turn in turns:
            await self.store.update_turn_importance(turn.id, score_importance(turn))
        self.invalidate_cache(conversation_id)
        logger.info("Rescored %d turns in %s", len(turns), conversation_id)
        return len(turns)

    def invalidate_cache(self, conversation_id: str) -> None:
        self.cache.invalidate(conversation_id)

    # -- Pins ------------------------------------------------------------------

    async def create_pin(self, request: CreatePinRequest) -> Pin:
        """Pin a fact. Store failures propagate to the caller."""
        return await self.pins.create(
            request.conversation_id,
            request.content,
            source_turn_id=request.source_turn_id,
            importance=request.importance_score,
            kind=request.kind,
        )

    async def delete_pin(self, pin_id: str) -> bool:
        return await self.pins.remove(pin_id)

    # -- Summaries -------------------------------------------------------------

    async def needs_summarization(self, conversation_id: str) -> bool:
        return await self.summarizer.needs_summarization(conversation_id)

    async def auto_summarize(self, conversation_id: str) -> Summary | None:
        return await self.summarizer.auto_summarize(conversation_id)

    async def summarize_range(
        self, conversation_id: str, start_turn_id: int, end_turn_id: int
    ) -> Summary:
        return await self.summarizer.summarize_range(conversation_id, start_turn_id, end_turn_id)

    def schedule_summarization(self, conversation_id: str) -> asyncio.Task | None:
        """Queue a background summarization check; never raises to the caller."""
        return self.queue.submit(conversation_id)

    # -- Conversation-level ----------------------------------------------------

    async def get_stats(self, conversation_id: str) -> MemoryStats:
        return await self.store.get_stats(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> int:
        removed = await self.store.delete_conversation(conversation_id)
        self.invalidate_cache(conversation_id)
        return removed

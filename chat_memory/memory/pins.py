"""PinRegistry — explicitly pinned facts that survive truncation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from chat_memory.memory.models import DEFAULT_PIN_IMPORTANCE, Pin

if TYPE_CHECKING:
    from chat_memory.memory.store import ConversationStore

logger = logging.getLogger(__name__)


class PinRegistry:
    """Creates and ranks pins for a conversation.

    Store failures propagate as ``StorageUnavailable``; deciding whether to
    degrade is the caller's job.
    """

    def __init__(self, store: ConversationStore) -> None:
        self._store = store

    async def create(
        self,
        conversation_id: str,
        content: str,
        source_turn_id: int | None = None,
        importance: float | None = None,
        kind: str | None = None,
    ) -> Pin:
        """Persist a new pin. Importance is clamped to [0, 1]."""
        pin = Pin(
            conversation_id=conversation_id,
            content=content,
            source_turn_id=source_turn_id,
            importance_score=DEFAULT_PIN_IMPORTANCE if importance is None else importance,
            kind=kind or "manual",
        )
        await self._store.create_pin(pin)
        logger.info(
            "Pinned [%s/%.2f] in %s: %s",
            pin.kind,
            pin.importance_score,
            conversation_id,
            content[:80],
        )
        return pin

    async def top_pins(self, conversation_id: str, limit: int) -> list[Pin]:
        """Return up to *limit* pins, most important first, newest first on ties."""
        if limit <= 0:
            return []
        return await self._store.get_pins(conversation_id, limit)

    async def remove(self, pin_id: str) -> bool:
        removed = await self._store.delete_pin(pin_id)
        if removed:
            logger.info("Removed pin: %s", pin_id)
        return removed

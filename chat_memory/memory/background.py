"""Fire-and-forget summarization after a reply has been sent."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from chat_memory.config import settings

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from chat_memory.memory.models import Summary
    from chat_memory.memory.summarizer import Summarizer

logger = logging.getLogger(__name__)


class SummarizationQueue:
    """Runs summarization as background asyncio tasks.

    Failures never reach the code that submitted the work: they are logged,
    counted in :attr:`failures` and passed to *on_error* if given.

    Args:
        summarizer: The summarizer to drive.
        on_error: Optional async callback ``(conversation_id, exc)``.
    """

    def __init__(
        self,
        summarizer: Summarizer,
        on_error: Callable[[str, BaseException], Awaitable[None]] | None = None,
    ) -> None:
        self._summarizer = summarizer
        self._on_error = on_error
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0
        self.completed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, conversation_id: str) -> asyncio.Task | None:
        """Schedule a summarization check for *conversation_id*.

        Must be called from a running event loop.  Returns the task, or
        ``None`` when summarization is disabled.
        """
        if not settings.summarization_enabled:
            return None
        task = asyncio.create_task(
            self._run(conversation_id), name=f"summarize:{conversation_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, conversation_id: str) -> Summary | None:
        try:
            summary = await self._summarizer.auto_summarize(conversation_id)
        except Exception as exc:
            self.failures += 1
            logger.exception("Background summarization failed for %s", conversation_id)
            if self._on_error is not None:
                try:
                    await self._on_error(conversation_id, exc)
                except Exception:
                    logger.exception("Summarization error callback failed")
            return None
        self.completed += 1
        return summary

    async def drain(self) -> None:
        """Wait for every in-flight task (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

"""Rolling summarization of a conversation's unsummarized tail.

Once ``summary_threshold`` turns have accumulated past the last summary,
the next window of exactly that many turns is compressed into a Summary.
Generation goes through a :class:`TextGenerator`; local-model output is
checked by :data:`SUMMARY_CHECKS` and anything that fails (or any
generation error) is replaced by a deterministic fallback, so a window is
summarized exactly once whatever happens.
"""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chat_memory.config import settings
from chat_memory.errors import GenerationUnavailable, InvalidSummary
from chat_memory.llm.client import LLMGenerator
from chat_memory.llm.models import is_local_model, pick_summarization_model
from chat_memory.memory.models import Summary

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Sequence

    from chat_memory.llm.client import TextGenerator
    from chat_memory.memory.cache import TurnCache
    from chat_memory.memory.models import Turn
    from chat_memory.memory.store import ConversationStore

logger = logging.getLogger(__name__)

# -- Prompts -----------------------------------------------------------------

LOCAL_SYSTEM_PROMPT = """\
TASK: Write a brief summary of the conversation below. Describe ONLY what was \
discussed. Do not write anything new.

FORMAT: 1-2 plain sentences naming the key topics and outcomes.
EXAMPLE: "User asked how to index a SQL table and the assistant explained \
composite indexes and when to use them."

DO NOT: write poems, stories, code, titles or lists. DO NOT invent content. \
Only summarize what was already said."""

CLOUD_SYSTEM_PROMPT = """\
You summarize conversations so they can be carried forward as memory. Write a \
concise summary (at most about 200 words) that preserves:
1. The main topics and questions raised
2. Decisions, answers and conclusions reached
3. Facts the user shared about themselves or their situation
4. Open items or next steps

Write in plain prose. Do not add information that was not in the conversation."""

LOCAL_MAX_TOKENS = 100
CLOUD_MAX_TOKENS = 300
GENERATION_TEMPERATURE = 0.1

# -- Validation --------------------------------------------------------------

MAX_LOCAL_SUMMARY_CHARS = 300
MAX_SUMMARY_RATIO = 0.30
MIN_WORD_OVERLAP = 0.10

_WORD = re.compile(r"[a-z0-9']+")
_PREAMBLE = re.compile(
    r"^(here's|here is|certainly|sure[,!]|of course|let me|i'll create|i will create|i can)",
    re.I,
)
_NARRATIVE = re.compile(r"^(title:|once upon|chapter\b|scene\b|act [ivx]+\b)", re.I)


def _words(text: str) -> list[str]:
    return _WORD.findall(text.lower())


def _too_long(summary: str, source: str) -> bool:
    return len(summary) > MAX_LOCAL_SUMMARY_CHARS


def _ratio_too_high(summary: str, source: str) -> bool:
    if not source:
        return True
    return len(summary) / len(source) > MAX_SUMMARY_RATIO


def _low_overlap(summary: str, source: str) -> bool:
    summary_words = _words(summary)
    if not summary_words:
        return True
    source_words = set(_words(source))
    matching = sum(1 for w in summary_words if len(w) > 3 and w in source_words)
    return matching / len(summary_words) < MIN_WORD_OVERLAP


@dataclass(frozen=True)
class SummaryCheck:
    """A named rejection rule: ``rejects(summary, source_text) -> bool``."""

    name: str
    rejects: Callable[[str, str], bool]


SUMMARY_CHECKS: tuple[SummaryCheck, ...] = (
    SummaryCheck("empty", lambda s, src: not s.strip()),
    SummaryCheck("too_long", _too_long),
    SummaryCheck("length_ratio", _ratio_too_high),
    SummaryCheck("preamble", lambda s, src: bool(_PREAMBLE.match(s.strip()))),
    SummaryCheck("code_block", lambda s, src: "```" in s),
    SummaryCheck("title_or_narrative", lambda s, src: bool(_NARRATIVE.match(s.strip()))),
    SummaryCheck("low_overlap", _low_overlap),
)


def validate_summary(summary: str, turns: Sequence[Turn]) -> None:
    """Raise :class:`InvalidSummary` naming the first check that rejects *summary*."""
    source = " ".join(t.text for t in turns)
    for check in SUMMARY_CHECKS:
        if check.rejects(summary, source):
            raise InvalidSummary(check.name, summary)


# -- Deterministic fallback --------------------------------------------------

TOPIC_TAGS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("database", ("database", "sql", "table", "query")),
    ("poetry", ("poem", "poetry", "verse")),
    ("storytelling", ("story", "narrative")),
    ("programming", ("code", "programming", "function", "class")),
    ("api", ("api", "endpoint", "request")),
    ("troubleshooting", ("bug", "error", "fix", "issue")),
    ("medication", ("medication", "prescription", "dosage")),
    ("appointments", ("appointment", "doctor")),
    ("wellbeing", ("anxiety", "stress", "mood", "feeling")),
    ("family", ("family", "mother", "father", "caregiver")),
    ("sleep", ("sleep", "insomnia", "tired")),
    ("music", ("song", "lyrics", "music")),
)
MAX_TOPICS = 3
EXCERPT_CHARS = 30


def extract_topics(turns: Sequence[Turn], limit: int = MAX_TOPICS) -> list[str]:
    """Return up to *limit* topic tags whose keywords appear in the turns."""
    text = " ".join(t.text for t in turns).lower()
    topics = [tag for tag, keywords in TOPIC_TAGS if any(k in text for k in keywords)]
    return topics[:limit]


def fallback_summary(turns: Sequence[Turn]) -> str:
    """Summarize without any model. Always succeeds."""
    count = len(turns)
    topics = extract_topics(turns)
    if topics:
        return f"Conversation with {count} messages about: {', '.join(topics)}."
    first = turns[0].text[:EXCERPT_CHARS] if turns else ""
    last = turns[-1].text[:EXCERPT_CHARS] if turns else ""
    return f"Conversation with {count} messages. Started: '{first}...' Recent: '{last}...'"


def format_conversation(turns: Sequence[Turn]) -> str:
    return "\n".join(f"{t.role}: {t.text}" for t in turns)


def _origin_model(turns: Sequence[Turn]) -> str | None:
    for turn in reversed(turns):
        if turn.model_id:
            return turn.model_id
    return None


# -- Summarizer --------------------------------------------------------------


class Summarizer:
    """Decides when a conversation needs a summary and writes it.

    Args:
        store: Persistence for turns and summaries.
        cache: Optional read-through cache for the turn count.
        generator: Text generation collaborator (defaults to :class:`LLMGenerator`).
        threshold: Unsummarized turns that trigger a summary, and the window size.
    """

    def __init__(
        self,
        store: ConversationStore,
        cache: TurnCache | None = None,
        generator: TextGenerator | None = None,
        threshold: int | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._generator = generator or LLMGenerator()
        self.threshold = threshold or settings.summary_threshold
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        """Per-conversation lock, forgotten once nobody holds or awaits it."""
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[conversation_id] -= 1
            if not self._lock_users[conversation_id]:
                del self._lock_users[conversation_id]
                del self._locks[conversation_id]

    async def _turn_count(self, conversation_id: str) -> int:
        if self._cache is not None:
            cached = self._cache.get_count(conversation_id)
            if cached is not None:
                return cached
        count = await self._store.get_turn_count(conversation_id)
        if self._cache is not None:
            self._cache.put_count(conversation_id, count)
        return count

    # -- Eligibility -----------------------------------------------------------

    async def needs_summarization(self, conversation_id: str) -> bool:
        """True once ``threshold`` turns exist past the last summary."""
        last = await self._store.get_last_summary(conversation_id)
        if last is None:
            return await self._turn_count(conversation_id) >= self.threshold
        pending = await self._store.count_turns_since(conversation_id, last.end_turn_id)
        return pending >= self.threshold

    # -- Summarization ---------------------------------------------------------

    async def auto_summarize(self, conversation_id: str) -> Summary | None:
        """Summarize the next window if the conversation is eligible.

        Returns ``None`` when it is not.  Concurrent calls for the same
        conversation are serialized and the later one re-checks eligibility,
        so a window is never summarized twice.
        """
        async with self._conversation_lock(conversation_id):
            if not await self.needs_summarization(conversation_id):
                return None
            last = await self._store.get_last_summary(conversation_id)
            window = await self._store.get_turns_since(
                conversation_id,
                after_turn_id=last.end_turn_id if last else None,
                limit=self.threshold,
            )
            if len(window) < self.threshold:
                return None
            return await self._summarize_turns(conversation_id, window)

    async def summarize_range(
        self, conversation_id: str, start_turn_id: int, end_turn_id: int
    ) -> Summary:
        """Summarize an explicit range of turns ahead of the threshold.

        The range must begin at the first unsummarized turn, so summaries
        stay contiguous and never overlap.  Raises ``ValueError`` for an
        empty range, one that overlaps an existing summary, or one that
        would leave unsummarized turns before it.
        """
        async with self._conversation_lock(conversation_id):
            last = await self._store.get_last_summary(conversation_id)
            head = await self._store.get_turns_since(
                conversation_id,
                after_turn_id=last.end_turn_id if last else None,
                limit=1,
            )
            turns = await self._store.get_turns_in_range(
                conversation_id, start_turn_id, end_turn_id
            )
            if not turns:
                msg = f"No turns between {start_turn_id} and {end_turn_id} in {conversation_id}"
                raise ValueError(msg)
            if not head or turns[0].id != head[0].id:
                expected = head[0].id if head else None
                msg = (
                    f"Range {start_turn_id}-{end_turn_id} in {conversation_id} must start at "
                    f"the first unsummarized turn ({expected})"
                )
                raise ValueError(msg)
            return await self._summarize_turns(conversation_id, turns)

    async def _summarize_turns(self, conversation_id: str, turns: list[Turn]) -> Summary:
        text, is_fallback = await self.generate_summary_text(turns)
        summary = Summary(
            conversation_id=conversation_id,
            text=text,
            turn_count=len(turns),
            start_turn_id=turns[0].id,
            end_turn_id=turns[-1].id,
            is_fallback=is_fallback,
        )
        await self._store.create_summary(summary)
        logger.info(
            "Summarized turns %d-%d of %s (%s)",
            summary.start_turn_id,
            summary.end_turn_id,
            conversation_id,
            "fallback" if is_fallback else "generated",
        )
        return summary

    async def generate_summary_text(self, turns: Sequence[Turn]) -> tuple[str, bool]:
        """Return ``(text, is_fallback)`` for a window. Never raises."""
        model = pick_summarization_model(_origin_model(turns))
        local = is_local_model(model)
        system_prompt = LOCAL_SYSTEM_PROMPT if local else CLOUD_SYSTEM_PROMPT
        conversation = format_conversation(turns)
        prompt = (
            f"Conversation to summarize:\n{conversation}\n\nProvide only the summary:"
            if local
            else f"Please summarize this conversation:\n\n{conversation}"
        )

        try:
            text = await self._generator.generate(
                system_prompt,
                prompt,
                model=model,
                max_tokens=LOCAL_MAX_TOKENS if local else CLOUD_MAX_TOKENS,
                temperature=GENERATION_TEMPERATURE,
            )
            text = text.strip()
            if local:
                validate_summary(text, turns)
            elif not text:
                raise InvalidSummary("empty", text)
            return text, False
        except InvalidSummary as exc:
            logger.warning(
                "Rejected summary from %s (%s): %r", model, exc.check, exc.text[:100]
            )
        except GenerationUnavailable as exc:
            logger.warning("Summary generation unavailable, using fallback: %s", exc)
        except Exception:
            logger.exception("Unexpected summary generation failure, using fallback")
        return fallback_summary(turns), True

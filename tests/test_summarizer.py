"""Tests for rolling summarization, validation and fallback."""

import asyncio

import pytest

from chat_memory.errors import GenerationUnavailable, InvalidSummary
from chat_memory.memory.cache import TurnCache
from chat_memory.memory.models import Turn
from chat_memory.memory.store import ConversationStore
from chat_memory.memory.summarizer import (
    CLOUD_SYSTEM_PROMPT,
    LOCAL_SYSTEM_PROMPT,
    SUMMARY_CHECKS,
    Summarizer,
    extract_topics,
    fallback_summary,
    validate_summary,
)

LOCAL_MODEL = "ollama/llama3.2"
CLOUD_MODEL = "claude-sonnet-4-5-20250929"


def _turn(text: str, i: int = 1, role: str = "user") -> Turn:
    return Turn(id=i, conversation_id="c1", role=role, text=text)


async def _fill(
    store: ConversationStore,
    n: int,
    *,
    text: str = "turn {i} about nothing much",
    model_id: str | None = None,
    conversation_id: str = "c1",
) -> list[Turn]:
    turns = []
    for i in range(1, n + 1):
        role = "user" if i % 2 else "assistant"
        turns.append(
            await store.add_turn(
                conversation_id,
                role,
                text.format(i=i),
                model_id=model_id if role == "assistant" else None,
            )
        )
    return turns


# -- validation checks ---------------------------------------------------------


def test_checks_are_named_and_ordered() -> None:
    names = [c.name for c in SUMMARY_CHECKS]
    assert names == [
        "empty",
        "too_long",
        "length_ratio",
        "preamble",
        "code_block",
        "title_or_narrative",
        "low_overlap",
    ]


@pytest.mark.parametrize(
    ("summary", "check"),
    [
        ("", "empty"),
        ("Here's a summary of the postgres indexing chat.", "preamble"),
        ("Certainly! The user asked about postgres indexing.", "preamble"),
        ("I'll create a poem about postgres indexing.", "preamble"),
        ("Postgres indexing ```sql create index```", "code_block"),
        ("Title: Postgres indexing discussion", "title_or_narrative"),
        ("Once upon a time there was...", "title_or_narrative"),
        ("Zebras gallop quickly across savannahs beneath moonlight.", "low_overlap"),
    ],
)
def test_individual_checks_reject(summary: str, check: str) -> None:
    source = [_turn("We talked about postgres indexing strategies for the orders table " * 5)]

    with pytest.raises(InvalidSummary) as exc_info:
        validate_summary(summary, source)

    assert exc_info.value.check == check


def test_too_long_rejected_before_ratio() -> None:
    source = [_turn("postgres indexing " * 200)]
    with pytest.raises(InvalidSummary) as exc_info:
        validate_summary("postgres indexing " * 20, source)
    assert exc_info.value.check == "too_long"


def test_length_ratio_rejected() -> None:
    source = [_turn("We discussed postgres indexes.")]
    with pytest.raises(InvalidSummary) as exc_info:
        validate_summary("User discussed postgres indexes at length today.", source)
    assert exc_info.value.check == "length_ratio"


def test_good_summary_passes() -> None:
    source = [_turn("We discussed indexing the orders table in postgres today", i) for i in range(15)]
    validate_summary("User discussed indexing the orders table in postgres.", source)


# -- fallback ------------------------------------------------------------------


def test_extract_topics_caps_at_three_in_table_order() -> None:
    turns = [
        _turn("my sql query is slow"),
        _turn("write me a poem"),
        _turn("tell me a story"),
        _turn("here is my code"),
    ]
    assert extract_topics(turns) == ["database", "poetry", "storytelling"]


def test_fallback_with_topics() -> None:
    turns = [_turn("the database is slow", 1), _turn("try an index on the table", 2)]
    assert fallback_summary(turns) == "Conversation with 2 messages about: database."


def test_fallback_without_topics_uses_excerpts() -> None:
    turns = [
        _turn("Hello there, I would like to chat about gardening today", 1),
        _turn("middle", 2),
        _turn("Tomatoes want full sun and regular watering", 3),
    ]

    text = fallback_summary(turns)

    assert text == (
        "Conversation with 3 messages. "
        "Started: 'Hello there, I would like to c...' "
        "Recent: 'Tomatoes want full sun and reg...'"
    )


# -- needs_summarization -------------------------------------------------------


async def test_needs_summarization_threshold(store: ConversationStore, make_generator) -> None:
    summarizer = Summarizer(store, generator=make_generator("x"), threshold=15)

    await _fill(store, 14)
    assert await summarizer.needs_summarization("c1") is False

    await store.add_turn("c1", "user", "one more")
    assert await summarizer.needs_summarization("c1") is True


async def test_eligibility_clears_after_summary_and_returns(
    store: ConversationStore, make_generator
) -> None:
    summarizer = Summarizer(store, generator=make_generator("x"), threshold=15)
    await _fill(store, 15)

    summary = await summarizer.auto_summarize("c1")
    assert summary is not None
    assert await summarizer.needs_summarization("c1") is False

    await _fill(store, 14)
    assert await summarizer.needs_summarization("c1") is False

    await store.add_turn("c1", "user", "fifteenth")
    assert await summarizer.needs_summarization("c1") is True


async def test_needs_summarization_uses_cached_count(
    store: ConversationStore, make_generator, clock
) -> None:
    cache = TurnCache(ttl=5.0, clock=clock)
    summarizer = Summarizer(store, cache=cache, generator=make_generator("x"), threshold=3)
    await _fill(store, 2)
    assert await summarizer.needs_summarization("c1") is False

    await store.add_turn("c1", "user", "third")
    # Stale until invalidated or expired.
    assert await summarizer.needs_summarization("c1") is False
    cache.invalidate("c1")
    assert await summarizer.needs_summarization("c1") is True


# -- auto_summarize ------------------------------------------------------------


async def test_auto_summarize_not_eligible_returns_none(
    store: ConversationStore, make_generator
) -> None:
    generator = make_generator("x")
    summarizer = Summarizer(store, generator=generator, threshold=15)
    await _fill(store, 5)

    assert await summarizer.auto_summarize("c1") is None
    assert generator.calls == []


async def test_auto_summarize_first_window(store: ConversationStore, make_generator) -> None:
    generator = make_generator("The user and assistant chatted about nothing much.")
    summarizer = Summarizer(store, generator=generator, threshold=15)
    turns = await _fill(store, 17, model_id=CLOUD_MODEL)

    summary = await summarizer.auto_summarize("c1")

    assert summary is not None
    assert summary.start_turn_id == turns[0].id
    assert summary.end_turn_id == turns[14].id
    assert summary.turn_count == 15
    assert summary.importance_score == pytest.approx(0.7)
    assert summary.is_fallback is False
    assert (await store.get_last_summary("c1")).id == summary.id


async def test_auto_summarize_next_window_follows_previous(
    store: ConversationStore, make_generator
) -> None:
    summarizer = Summarizer(store, generator=make_generator("chat summary"), threshold=3)
    turns = await _fill(store, 7)

    first = await summarizer.auto_summarize("c1")
    second = await summarizer.auto_summarize("c1")
    third = await summarizer.auto_summarize("c1")

    assert (first.start_turn_id, first.end_turn_id) == (turns[0].id, turns[2].id)
    assert (second.start_turn_id, second.end_turn_id) == (turns[3].id, turns[5].id)
    assert third is None


async def test_cloud_generation_is_not_validated(store: ConversationStore, make_generator) -> None:
    long_text = "Here's a detailed summary. " * 20
    generator = make_generator(long_text)
    summarizer = Summarizer(store, generator=generator, threshold=15)
    await _fill(store, 15, model_id=CLOUD_MODEL)

    summary = await summarizer.auto_summarize("c1")

    assert summary.text == long_text.strip()
    assert generator.calls[0]["system_prompt"] == CLOUD_SYSTEM_PROMPT
    assert generator.calls[0]["max_tokens"] == 300


async def test_local_generation_uses_strict_prompt(
    store: ConversationStore, make_generator
) -> None:
    generator = make_generator("User discussed indexing the orders table in postgres.")
    summarizer = Summarizer(store, generator=generator, threshold=15)
    await _fill(
        store,
        15,
        text="We discussed indexing the orders table in postgres today {i}",
        model_id=LOCAL_MODEL,
    )

    summary = await summarizer.auto_summarize("c1")

    assert summary.is_fallback is False
    assert summary.text == "User discussed indexing the orders table in postgres."
    call = generator.calls[0]
    assert call["system_prompt"] == LOCAL_SYSTEM_PROMPT
    assert call["model"] == LOCAL_MODEL
    assert call["max_tokens"] == 100
    assert call["conversation_text"].endswith("Provide only the summary:")


async def test_local_story_rejected_for_fallback(
    store: ConversationStore, make_generator
) -> None:
    summarizer = Summarizer(
        store, generator=make_generator("Once upon a time there was..."), threshold=15
    )
    await _fill(store, 15, model_id=LOCAL_MODEL)

    summary = await summarizer.auto_summarize("c1")

    assert summary.is_fallback is True
    assert summary.text.startswith("Conversation with 15 messages")


async def test_local_overlong_summary_rejected(
    store: ConversationStore, make_generator
) -> None:
    text = "We discussed indexing the orders table in postgres today at great length {i}"
    summarizer = Summarizer(
        store, generator=make_generator("indexing orders table postgres " * 12), threshold=15
    )
    await _fill(store, 15, text=text, model_id=LOCAL_MODEL)

    summary = await summarizer.auto_summarize("c1")

    assert summary.is_fallback is True
    assert "15" in summary.text


async def test_generation_error_falls_back(store: ConversationStore, make_generator) -> None:
    summarizer = Summarizer(
        store,
        generator=make_generator(error=GenerationUnavailable("connection refused")),
        threshold=15,
    )
    await _fill(store, 15)

    summary = await summarizer.auto_summarize("c1")

    assert summary is not None
    assert summary.is_fallback is True
    assert summary.text.startswith("Conversation with 15 messages.")
    assert "Started: 'turn 1 about nothing much...'" in summary.text
    assert await summarizer.needs_summarization("c1") is False


async def test_unexpected_error_falls_back(store: ConversationStore, make_generator) -> None:
    summarizer = Summarizer(store, generator=make_generator(error=RuntimeError("boom")), threshold=3)
    await _fill(store, 3)

    summary = await summarizer.auto_summarize("c1")

    assert summary.is_fallback is True


async def test_concurrent_triggers_create_one_summary(
    store: ConversationStore, make_generator
) -> None:
    class SlowGenerator(make_generator):
        async def generate(self, *args, **kwargs) -> str:
            await asyncio.sleep(0.01)
            return await super().generate(*args, **kwargs)

    summarizer = Summarizer(store, generator=SlowGenerator("chat summary"), threshold=3)
    await _fill(store, 3)

    results = await asyncio.gather(
        summarizer.auto_summarize("c1"), summarizer.auto_summarize("c1")
    )

    assert sum(r is not None for r in results) == 1
    assert len(await store.get_summaries("c1", 10)) == 1


# -- summarize_range -----------------------------------------------------------


async def test_summarize_range_from_first_turn(store: ConversationStore, make_generator) -> None:
    summarizer = Summarizer(store, generator=make_generator("range summary"), threshold=15)
    turns = await _fill(store, 6)

    summary = await summarizer.summarize_range("c1", turns[0].id, turns[2].id)

    assert summary.turn_count == 3
    assert (summary.start_turn_id, summary.end_turn_id) == (turns[0].id, turns[2].id)


async def test_consecutive_ranges_are_contiguous(store: ConversationStore, make_generator) -> None:
    summarizer = Summarizer(store, generator=make_generator("range summary"), threshold=15)
    turns = await _fill(store, 6)

    await summarizer.summarize_range("c1", turns[0].id, turns[2].id)
    second = await summarizer.summarize_range("c1", turns[3].id, turns[5].id)

    assert (second.start_turn_id, second.end_turn_id) == (turns[3].id, turns[5].id)


async def test_range_overlapping_a_summary_is_rejected(
    store: ConversationStore, make_generator
) -> None:
    summarizer = Summarizer(store, generator=make_generator("range summary"), threshold=15)
    turns = await _fill(store, 10)
    await summarizer.summarize_range("c1", turns[0].id, turns[4].id)

    with pytest.raises(ValueError, match="first unsummarized turn"):
        await summarizer.summarize_range("c1", turns[2].id, turns[7].id)

    assert len(await store.get_summaries("c1", 10)) == 1


async def test_range_leaving_a_gap_is_rejected(store: ConversationStore, make_generator) -> None:
    summarizer = Summarizer(store, generator=make_generator("range summary"), threshold=15)
    turns = await _fill(store, 40)

    with pytest.raises(ValueError, match="first unsummarized turn"):
        await summarizer.summarize_range("c1", turns[29].id, turns[39].id)

    assert await store.get_summaries("c1", 10) == []
    assert (await summarizer.auto_summarize("c1")).start_turn_id == turns[0].id


async def test_range_inside_summarized_history_is_rejected(
    store: ConversationStore, make_generator
) -> None:
    summarizer = Summarizer(store, generator=make_generator("chat summary"), threshold=3)
    turns = await _fill(store, 6)
    await summarizer.auto_summarize("c1")

    with pytest.raises(ValueError):
        await summarizer.summarize_range("c1", turns[1].id, turns[2].id)


async def test_summarize_empty_range_raises(store: ConversationStore, make_generator) -> None:
    summarizer = Summarizer(store, generator=make_generator("x"), threshold=15)
    with pytest.raises(ValueError):
        await summarizer.summarize_range("c1", 100, 200)


# -- locking -------------------------------------------------------------------


async def test_conversation_locks_are_released(store: ConversationStore, make_generator) -> None:
    summarizer = Summarizer(store, generator=make_generator("chat summary"), threshold=3)
    for conversation_id in ("c1", "c2", "c3"):
        await _fill(store, 3, conversation_id=conversation_id)
        await summarizer.auto_summarize(conversation_id)
    with pytest.raises(ValueError):
        await summarizer.summarize_range("c4", 1, 2)

    assert summarizer._locks == {}
    assert summarizer._lock_users == {}


async def test_lock_kept_while_a_caller_waits(store: ConversationStore, make_generator) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    class BlockingGenerator(make_generator):
        async def generate(self, *args, **kwargs) -> str:
            started.set()
            await release.wait()
            return await super().generate(*args, **kwargs)

    summarizer = Summarizer(store, generator=BlockingGenerator("chat summary"), threshold=3)
    await _fill(store, 3)

    first = asyncio.create_task(summarizer.auto_summarize("c1"))
    await started.wait()
    second = asyncio.create_task(summarizer.auto_summarize("c1"))
    await asyncio.sleep(0)

    assert summarizer._lock_users == {"c1": 2}
    release.set()
    results = await asyncio.gather(first, second)

    assert sum(r is not None for r in results) == 1
    assert summarizer._locks == {}

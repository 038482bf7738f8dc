"""Shared test fixtures."""

from pathlib import Path

import pytest

from chat_memory.memory.cache import TurnCache
from chat_memory.memory.store import ConversationStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGenerator:
    """TextGenerator that returns a canned reply (or raises) and records calls."""

    def __init__(self, reply: str = "", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[dict] = []

    async def generate(
        self,
        system_prompt: str,
        conversation_text: str,
        *,
        model: str,
        max_tokens: int,
        temperature: float = 0.1,
    ) -> str:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "conversation_text": conversation_text,
                "model": model,
                "max_tokens": max_tokens,
            }
        )
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("chat_memory.config.settings.turso_database_url", "")


@pytest.fixture
def store(tmp_path: Path, _no_turso: None) -> ConversationStore:
    """A ConversationStore backed by a temp database."""
    return ConversationStore(db_path=tmp_path / "test.db")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> TurnCache:
    return TurnCache(ttl=5.0, clock=clock)


@pytest.fixture
def make_generator() -> type[FakeGenerator]:
    """Factory for FakeGenerator instances."""
    return FakeGenerator

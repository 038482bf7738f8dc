"""Data models for conversation memory."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

SUMMARY_IMPORTANCE = 0.7
DEFAULT_PIN_IMPORTANCE = 0.8

# Known pin kinds. Other strings are accepted.
PIN_KINDS = ("manual", "auto", "concept", "system")


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def make_id(prefix: str) -> str:
    """Generate a new pin/summary ID."""
    return f"{prefix}_{uuid.uuid4().hex}"


def clamp_score(value: float) -> float:
    """Clamp an importance score into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


class Turn(BaseModel):
    """One user or assistant message in a conversation.

    The engine only ever writes ``importance_score``; text and role belong
    to whoever persisted the turn.
    """

    id: int
    conversation_id: str
    role: str  # "user" or "assistant"
    text: str
    model_id: str | None = None
    token_usage: int | None = None
    importance_score: float | None = None
    created_at: str = Field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row: tuple) -> Turn:
        return cls(
            id=row[0],
            conversation_id=row[1],
            role=row[2],
            text=row[3],
            model_id=row[4],
            token_usage=row[5],
            importance_score=row[6],
            created_at=row[7],
        )


class Pin(BaseModel):
    """A durable fact that outlives the rolling window."""

    id: str = Field(default_factory=lambda: make_id("pin"))
    conversation_id: str
    content: str
    source_turn_id: int | None = None
    importance_score: float = DEFAULT_PIN_IMPORTANCE
    kind: str = "manual"
    created_at: str = Field(default_factory=utc_now)

    @field_validator("importance_score")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return clamp_score(value)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.conversation_id,
            self.content,
            self.source_turn_id,
            self.importance_score,
            self.kind,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Pin:
        return cls(
            id=row[0],
            conversation_id=row[1],
            content=row[2],
            source_turn_id=row[3],
            importance_score=row[4],
            kind=row[5],
            created_at=row[6],
        )


class CreatePinRequest(BaseModel):
    """Caller-facing request to pin a fact."""

    conversation_id: str
    content: str
    source_turn_id: int | None = None
    importance_score: float | None = None
    kind: str | None = None


class Summary(BaseModel):
    """A compressed account of a contiguous range of turns."""

    id: str = Field(default_factory=lambda: make_id("summary"))
    conversation_id: str
    text: str
    turn_count: int
    start_turn_id: int
    end_turn_id: int
    importance_score: float = SUMMARY_IMPORTANCE
    is_fallback: bool = False
    created_at: str = Field(default_factory=utc_now)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.conversation_id,
            self.text,
            self.turn_count,
            self.start_turn_id,
            self.end_turn_id,
            self.importance_score,
            int(self.is_fallback),
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Summary:
        return cls(
            id=row[0],
            conversation_id=row[1],
            text=row[2],
            turn_count=row[3],
            start_turn_id=row[4],
            end_turn_id=row[5],
            importance_score=row[6],
            is_fallback=bool(row[7]),
            created_at=row[8],
        )


class MemoryContext(BaseModel):
    """Assembled memory for one model call. Never persisted."""

    recent_turns: list[Turn] = Field(default_factory=list)
    pins: list[Pin] = Field(default_factory=list)
    summaries: list[Summary] = Field(default_factory=list)
    total_tokens: int = 0
    truncated: bool = False

    def render_block(self) -> str:
        """Render summaries and pins as a system-prompt block.

        Returns an empty string when there is nothing to add.
        """
        parts: list[str] = []
        if self.summaries:
            # Oldest first reads naturally as a timeline.
            texts = "\n\n".join(s.text for s in reversed(self.summaries))
            parts.append(f"Previous conversation context: {texts}")
        if self.pins:
            parts.append("Key information to remember: " + "; ".join(p.content for p in self.pins))
        return "\n\n".join(parts)

    def to_api_messages(self) -> list[dict[str, Any]]:
        """Format the recent turns for a chat-completion API."""
        return [{"role": t.role, "content": t.text} for t in self.recent_turns]


class MemoryStats(BaseModel):
    """Per-conversation memory statistics."""

    total_turns: int = 0
    total_summaries: int = 0
    total_pins: int = 0
    oldest_turn_at: str = ""
    newest_turn_at: str = ""
    average_importance: float = 0.0

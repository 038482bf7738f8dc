"""Hybrid conversation memory — recent turns, pins and rolling summaries."""

from chat_memory.memory.assembler import ContextAssembler, estimate_tokens
from chat_memory.memory.background import SummarizationQueue
from chat_memory.memory.cache import TurnCache
from chat_memory.memory.engine import MemoryEngine
from chat_memory.memory.models import (
    CreatePinRequest,
    MemoryContext,
    MemoryStats,
    Pin,
    Summary,
    Turn,
)
from chat_memory.memory.pins import PinRegistry
from chat_memory.memory.scoring import score_importance
from chat_memory.memory.store import ConversationStore
from chat_memory.memory.summarizer import Summarizer

__all__ = [
    "ContextAssembler",
    "ConversationStore",
    "CreatePinRequest",
    "MemoryContext",
    "MemoryEngine",
    "MemoryStats",
    "Pin",
    "PinRegistry",
    "Summarizer",
    "SummarizationQueue",
    "Summary",
    "Turn",
    "TurnCache",
    "estimate_tokens",
    "score_importance",
]

"""Model naming and local/cloud routing."""

from __future__ import annotations

import logging

from chat_memory.config import settings

logger = logging.getLogger(__name__)

MODEL_MAP: dict[str, str] = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
}

# Reverse lookup: full model string → friendly name
FRIENDLY_NAMES: dict[str, str] = {v: k for k, v in MODEL_MAP.items()}


def resolve_model(name_or_id: str) -> str:
    """Resolve a friendly name to a full model ID; other IDs pass through."""
    return MODEL_MAP.get(name_or_id, name_or_id)


def friendly(model_id: str) -> str:
    """Return the friendly name for a model ID, or the ID itself."""
    return FRIENDLY_NAMES.get(model_id, model_id)


def is_local_model(model_id: str | None) -> bool:
    """True when *model_id* is served by the local Ollama runtime."""
    if not model_id:
        return False
    lowered = model_id.lower()
    return any(lowered.startswith(prefix) for prefix in settings.get_local_model_prefixes())


def local_model_name(model_id: str) -> str:
    """Strip the ``ollama/`` routing prefix, if present."""
    return model_id.split("/", 1)[1] if model_id.lower().startswith("ollama/") else model_id


def pick_summarization_model(turn_model_id: str | None) -> str:
    """Choose the model that summarizes a window.

    A window produced by a local model is summarized by that same model so
    the conversation never leaves the machine; everything else goes to the
    configured cloud model.
    """
    if is_local_model(turn_model_id):
        return turn_model_id  # type: ignore[return-value]
    model_id = resolve_model(settings.summary_model)
    logger.debug("Summarization model → %s", friendly(model_id))
    return model_id

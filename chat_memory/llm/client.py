"""Text generation for summarization — Anthropic (cloud) and Ollama (local)."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import anthropic
import httpx

from chat_memory.config import settings
from chat_memory.errors import GenerationUnavailable
from chat_memory.llm.models import friendly, is_local_model, local_model_name, resolve_model

logger = logging.getLogger(__name__)

_client: anthropic.AsyncAnthropic | None = None


class TextGenerator(Protocol):
    """Anything that can turn a system prompt plus conversation text into text."""

    async def generate(
        self,
        system_prompt: str,
        conversation_text: str,
        *,
        model: str,
        max_tokens: int,
        temperature: float = 0.1,
    ) -> str: ...


def _get_client() -> anthropic.AsyncAnthropic:
    """Lazily initialize the Anthropic client."""
    global _client  # noqa: PLW0603
    if _client is None:
        _client = anthropic.AsyncAnthropic(
            api_key=settings.anthropic_api_key,
            timeout=settings.generation_timeout_seconds,
        )
    return _client


async def complete_text(
    messages: list[dict[str, Any]],
    *,
    system: str | None = None,
    model: str | None = None,
    max_tokens: int = 4096,
    temperature: float | None = None,
) -> str:
    """Single-shot Claude call — no tools, no streaming."""
    client = _get_client()
    kwargs: dict[str, Any] = {
        "model": resolve_model(model or settings.summary_model),
        "max_tokens": max_tokens,
        "messages": messages,
    }
    if system is not None:
        kwargs["system"] = system
    if temperature is not None:
        kwargs["temperature"] = temperature
    response = await client.messages.create(**kwargs)
    return response.content[0].text


async def complete_local(
    prompt: str,
    *,
    system: str,
    model: str,
    max_tokens: int,
    temperature: float = 0.1,
) -> str:
    """Single-shot, non-streaming call to Ollama's ``/api/generate``."""
    payload = {
        "model": local_model_name(model),
        "system": system,
        "prompt": prompt,
        "stream": False,
        "options": {"temperature": temperature, "num_predict": max_tokens},
    }
    async with httpx.AsyncClient(
        base_url=settings.ollama_base_url,
        timeout=settings.generation_timeout_seconds,
    ) as client:
        resp = await client.post("/api/generate", json=payload)
        resp.raise_for_status()
        data = resp.json()
    return str(data.get("response", ""))


class LLMGenerator:
    """Default :class:`TextGenerator`, routed by model locality.

    Every provider failure is re-raised as :class:`GenerationUnavailable`.
    """

    async def generate(
        self,
        system_prompt: str,
        conversation_text: str,
        *,
        model: str,
        max_tokens: int,
        temperature: float = 0.1,
    ) -> str:
        try:
            if is_local_model(model):
                return await complete_local(
                    conversation_text,
                    system=system_prompt,
                    model=model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
            return await complete_text(
                [{"role": "user", "content": conversation_text}],
                system=system_prompt,
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except (httpx.HTTPError, anthropic.APIError, TimeoutError, ValueError) as exc:
            logger.warning("Generation failed on %s: %s", friendly(model), exc)
            raise GenerationUnavailable(str(exc)) from exc

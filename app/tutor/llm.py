"""
Learner Chat — LLM Abstraction Layer
Async JSON-mode chat completions for the AI turn, with a hard timeout.
"""

import time
import logging
import asyncio
from typing import Protocol, Optional
from dataclasses import dataclass

from openai import AsyncOpenAI, OpenAIError

from app.config import (
    OPENAI_API_KEY, LLM_MODEL, LLM_MAX_TOKENS, LLM_TEMPERATURE,
    LLM_PROVIDER, LLM_TIMEOUT_SECONDS,
)
from app.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class LLMError(ExternalServiceError):
    """No usable reply from the model (transport error, timeout, empty body)."""


@dataclass
class LLMResult:
    text: str
    latency_ms: int
    model: str
    usage: dict


class LLMProvider(Protocol):
    async def generate_json(self, messages: list[dict], **kwargs) -> LLMResult: ...


# ─── OpenAI ──────────────────────────────────────────────────────────────────

class OpenAIChat:
    def __init__(self, client: Optional[AsyncOpenAI] = None, timeout: float = LLM_TIMEOUT_SECONDS):
        self._client = client or AsyncOpenAI(api_key=OPENAI_API_KEY)
        self._timeout = timeout

    async def generate_json(
        self,
        messages: list[dict],
        max_tokens: int = LLM_MAX_TOKENS,
        temperature: float = LLM_TEMPERATURE,
    ) -> LLMResult:
        """One JSON-object completion. Raises LLMError on any failure."""
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=LLM_MODEL,
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    response_format={"type": "json_object"},
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"LLM timed out after {self._timeout}s")
            raise LLMError("LLM request timed out") from e
        except OpenAIError as e:
            elapsed = int((time.perf_counter() - start) * 1000)
            logger.error(f"LLM error after {elapsed}ms: {e}")
            raise LLMError(str(e)) from e

        elapsed = int((time.perf_counter() - start) * 1000)
        if not response.choices:
            raise LLMError("LLM returned no choices")
        text = (response.choices[0].message.content or "").strip()
        if not text:
            raise LLMError("LLM returned an empty reply")

        usage = {}
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }
        logger.info(f"LLM response: {elapsed}ms, {usage.get('total_tokens', '?')} tokens")
        return LLMResult(text=text, latency_ms=elapsed, model=LLM_MODEL, usage=usage)


# ─── Provider Factory ────────────────────────────────────────────────────────

_providers = {
    "openai": OpenAIChat,
}

_instance: Optional[LLMProvider] = None


def get_llm() -> LLMProvider:
    """Get the configured LLM provider (singleton)."""
    global _instance
    if _instance is None:
        provider_cls = _providers.get(LLM_PROVIDER)
        if not provider_cls:
            raise ValueError(f"Unknown LLM provider: {LLM_PROVIDER}")
        _instance = provider_cls()
    return _instance

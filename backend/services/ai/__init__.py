"""
AI layer of the market pipeline.

Provides the OpenAI-compatible completion client and the typed LLM tasks the
stage workers run:
- Entity extraction from news (is this event market-worthy?)
- Market drafting from a candidate
- Validation of a drafted market (ambiguity, determinism, fairness, safety)
- Resolution of an expired market from fetched evidence
- First-pass review of user disputes
"""

from __future__ import annotations

from services.ai.llm_provider import (
    LLMClient,
    LLMError,
    LLMMessage,
    LLMResponse,
)

_llm_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    """Process-wide client built from settings on first use."""
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client


__all__ = [
    "get_llm_client",
    "LLMClient",
    "LLMError",
    "LLMMessage",
    "LLMResponse",
]

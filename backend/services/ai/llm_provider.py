"""
OpenAI-compatible chat completion client.

The pipeline treats the model as an opaque text-completion capability that
answers in JSON. Any endpoint speaking the ``/chat/completions`` dialect works
(OpenAI, a local gateway, a proxy); the base URL comes from ``LLM_BASE_URL``.

Usage:
    client = LLMClient()
    data, response = await client.complete_json(
        system="You validate prediction markets.",
        user="...",
        model="gpt-4o-mini",
    )
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from config import settings
from utils.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
_LLM_RETRY = RetryConfig(max_attempts=3, base_delay=1.0)


class LLMError(RuntimeError):
    """The completion endpoint failed or returned something unusable."""


# ==================== DATA CLASSES ====================


@dataclass
class LLMMessage:
    """A single message in a chat conversation."""

    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class LLMResponse:
    """Response from the completion endpoint."""

    content: str
    request_id: str
    model: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    latency_ms: int = 0


# ==================== HELPERS ====================


def _ensure_v1_base_url(base_url: Optional[str]) -> str:
    normalized = (base_url or "").strip().rstrip("/") or DEFAULT_BASE_URL
    if normalized.endswith("/v1"):
        return normalized
    return f"{normalized}/v1"


def _safe_response_json(response: httpx.Response) -> Any:
    """Return parsed response JSON, or an empty dict when parsing fails."""
    try:
        return response.json()
    except ValueError:
        return {}


def _extract_error_message(data: Any, fallback: str) -> str:
    """Extract a readable API error message from varied payload formats."""
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            for key in ("message", "detail"):
                value = error.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        for key in ("message", "detail"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return (fallback or "").strip() or "Unknown error"


def parse_json_content(content: Any) -> dict[str, Any]:
    """Parse a JSON object out of model output, tolerating code fences and chatter."""
    if isinstance(content, dict):
        return content
    text = str(content or "").strip()
    if not text:
        raise LLMError("LLM returned empty JSON content")

    candidates = [text]
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text, flags=re.IGNORECASE)
    if fenced:
        candidates.append(fenced.group(1).strip())
    obj_start = text.find("{")
    obj_end = text.rfind("}")
    if obj_start != -1 and obj_end > obj_start:
        candidates.append(text[obj_start : obj_end + 1])

    last_error: Optional[Exception] = None
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = exc
            continue
        if isinstance(parsed, dict):
            return parsed
    raise LLMError(f"LLM returned invalid JSON: {last_error}")


# ==================== CLIENT ====================


class LLMClient:
    """Thin httpx client for ``POST {base_url}/chat/completions``."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = _ensure_v1_base_url(base_url or settings.LLM_BASE_URL)
        self.timeout = float(timeout or settings.LLM_TIMEOUT_SECONDS)
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _build_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @with_retry(_LLM_RETRY)
    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers=self._build_headers(),
                json=payload,
            )
        if response.status_code in _LLM_RETRY.retryable_status_codes:
            response.raise_for_status()
        return response

    async def chat(
        self,
        messages: list[LLMMessage],
        model: str,
        *,
        temperature: float = 0.0,
        max_tokens: int = 2048,
        json_output: bool = False,
    ) -> LLMResponse:
        start_ms = int(time.time() * 1000)
        payload: dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_output:
            payload["response_format"] = {"type": "json_object"}

        try:
            response = await self._post(payload)
        except httpx.HTTPError as exc:
            raise LLMError(f"LLM request failed: {exc}") from exc

        data = _safe_response_json(response)
        if response.status_code != 200:
            raise LLMError(
                f"LLM API error ({response.status_code}): "
                f"{_extract_error_message(data, response.text)}"
            )
        try:
            content = data["choices"][0]["message"].get("content") or ""
        except (TypeError, KeyError, IndexError) as exc:
            raise LLMError("LLM API returned malformed response payload") from exc

        usage_data = data.get("usage") or {}
        return LLMResponse(
            content=content,
            request_id=str(
                data.get("id") or response.headers.get("x-request-id") or uuid.uuid4()
            ),
            model=str(data.get("model") or model),
            usage=TokenUsage(
                input_tokens=int(usage_data.get("prompt_tokens", 0) or 0),
                output_tokens=int(usage_data.get("completion_tokens", 0) or 0),
                total_tokens=int(usage_data.get("total_tokens", 0) or 0),
            ),
            latency_ms=int(time.time() * 1000) - start_ms,
        )

    async def complete_json(
        self,
        *,
        system: str,
        user: str,
        model: str,
        temperature: float = 0.0,
    ) -> tuple[dict[str, Any], LLMResponse]:
        """Ask for a JSON object; returns the parsed object and the raw response."""
        response = await self.chat(
            [
                LLMMessage(role="system", content=system + "\nRespond with a single JSON object."),
                LLMMessage(role="user", content=user),
            ],
            model,
            temperature=temperature,
            json_output=True,
        )
        try:
            return parse_json_content(response.content), response
        except LLMError:
            logger.error("Failed to parse LLM output as JSON: %s", response.content[:500])
            raise

"""Fetching and fingerprinting resolution evidence from allowed sources."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

import httpx

from config import settings
from models.messages import AllowedSource
from utils.retry import RetryConfig, with_retry
from utils.utcnow import utc_iso

logger = logging.getLogger(__name__)

FETCH_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; MarketpipeResolver/1.0)",
    "Accept": "text/html,application/json,application/xml;q=0.9,*/*;q=0.8",
}
MAX_EVIDENCE_CHARS = 20000
_FETCH_RETRY = RetryConfig(max_attempts=3, base_delay=1.0, retryable_status_codes=())


@dataclass
class FetchedEvidence:
    source_url: str
    source_name: str
    content: str
    fetched_at: str
    content_hash: str
    http_status: Optional[int]
    success: bool
    error: Optional[str] = None

    def raw_entry(self) -> dict[str, Any]:
        return {
            "url": self.source_url,
            "name": self.source_name,
            "fetchedAt": self.fetched_at,
            "contentHash": self.content_hash,
            "httpStatus": self.http_status,
        }


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _response_text(response: httpx.Response) -> str:
    if "application/json" in response.headers.get("content-type", ""):
        try:
            return json.dumps(response.json(), indent=2)
        except ValueError:
            pass
    return response.text


class EvidenceFetcher:
    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_sleep=None,
    ):
        self.timeout = float(timeout or settings.EVIDENCE_FETCH_TIMEOUT_SECONDS)
        self._transport = transport
        self._get = with_retry(_FETCH_RETRY, sleep=retry_sleep)(self._get_once)

    async def _get_once(self, url: str) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers=FETCH_HEADERS,
            follow_redirects=True,
        ) as client:
            return await client.get(url)

    async def fetch(self, url: str, name: Optional[str] = None) -> FetchedEvidence:
        """Fetch one source; network failures are reported, not raised."""
        fetched_at = utc_iso()
        source_name = name or urlparse(url).hostname or url
        try:
            response = await self._get(url)
        except httpx.HTTPError as exc:
            logger.warning("Evidence fetch failed for %s: %s", url, exc)
            return FetchedEvidence(
                source_url=url,
                source_name=source_name,
                content="",
                fetched_at=fetched_at,
                content_hash=sha256_hex(""),
                http_status=None,
                success=False,
                error=str(exc),
            )

        content = _response_text(response)
        return FetchedEvidence(
            source_url=url,
            source_name=source_name,
            content=content,
            fetched_at=fetched_at,
            content_hash=sha256_hex(content),
            http_status=response.status_code,
            success=response.is_success,
            error=None if response.is_success else f"HTTP {response.status_code}",
        )

    async def fetch_sources(self, sources: Iterable[AllowedSource]) -> list[FetchedEvidence]:
        results = []
        for source in sources:
            results.append(await self.fetch(source.url, source.name))
        return results


def is_https(url: str) -> bool:
    return urlparse(url).scheme == "https"


def is_allowed_source(url: str, allowed: Iterable[AllowedSource]) -> bool:
    """True when ``url`` shares a hostname with one of the market's allowed sources."""
    host = urlparse(url).hostname
    if not host:
        return False
    return any(urlparse(source.url).hostname == host for source in allowed)


def combined_hash(evidence: Iterable[FetchedEvidence]) -> str:
    return sha256_hex("".join(item.content_hash for item in evidence))


def evidence_raw(evidence: Iterable[FetchedEvidence]) -> str:
    return json.dumps([item.raw_entry() for item in evidence])


def evidence_text(evidence: Iterable[FetchedEvidence], label: str = "Source") -> str:
    blocks = [
        f"=== {label}: {item.source_name} ({item.source_url}) ===\n"
        f"{item.content[:MAX_EVIDENCE_CHARS]}"
        for item in evidence
    ]
    return "\n\n".join(blocks)

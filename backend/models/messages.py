"""Typed broker payloads exchanged between pipeline stages.

Every message carries identifiers only (plus the minimum context a stage needs
to start work); consumers re-read current state from the store before acting,
so redelivery of any message is safe.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class QueueName(str, enum.Enum):
    NEWS_RAW = "news.raw"
    CANDIDATES = "candidates"
    DRAFTS_VALIDATE = "drafts.validate"
    MARKETS_PUBLISH = "markets.publish"
    MARKETS_RESOLVE = "markets.resolve"
    DISPUTES = "disputes"
    CONFIG_REFRESH = "config.refresh"


DURABLE_QUEUES: tuple[QueueName, ...] = (
    QueueName.NEWS_RAW,
    QueueName.CANDIDATES,
    QueueName.DRAFTS_VALIDATE,
    QueueName.MARKETS_PUBLISH,
    QueueName.MARKETS_RESOLVE,
    QueueName.DISPUTES,
)


class _Message(BaseModel):
    model_config = ConfigDict(extra="ignore")


class NewsRawMessage(_Message):
    news_id: str
    source: str
    source_url: str
    title: str
    content: str
    published_at: datetime
    category_hint: Optional[str] = None


class CandidateMessage(_Message):
    candidate_id: str
    news_id: Optional[str] = None
    entities: list[str] = Field(default_factory=list)
    event_type: str
    category_hint: str = "misc"
    relevant_text: str
    proposal_id: Optional[str] = None


class DraftValidateMessage(_Message):
    draft_market_id: str
    source_type: Literal["news", "proposal"]
    source_id: str


class MarketPublishMessage(_Message):
    draft_market_id: str
    validation_id: str


class MarketResolveMessage(_Message):
    market_id: str
    market_address: Optional[str] = None
    expiry: Optional[str] = None


class DisputeMessage(_Message):
    dispute_id: str


class ConfigRefreshMessage(_Message):
    key: str = "all"
    timestamp: str


QUEUE_MESSAGE_TYPES: dict[QueueName, type[_Message]] = {
    QueueName.NEWS_RAW: NewsRawMessage,
    QueueName.CANDIDATES: CandidateMessage,
    QueueName.DRAFTS_VALIDATE: DraftValidateMessage,
    QueueName.MARKETS_PUBLISH: MarketPublishMessage,
    QueueName.MARKETS_RESOLVE: MarketResolveMessage,
    QueueName.DISPUTES: DisputeMessage,
    QueueName.CONFIG_REFRESH: ConfigRefreshMessage,
}


# ==================== MARKET CONTENT ====================


class AllowedSource(BaseModel):
    name: str
    url: str
    method: str = "GET"
    condition: str = ""


class ResolutionRules(BaseModel):
    """Resolution contract of a market, stored as JSON on ``ai_markets``."""

    model_config = ConfigDict(extra="allow")

    exact_question: str
    must_meet_all: list[str] = Field(default_factory=list)
    must_not_count: list[str] = Field(default_factory=list)
    allowed_sources: list[AllowedSource] = Field(default_factory=list)
    expiry: Optional[str] = None

    @classmethod
    def from_stored(cls, raw: Optional[dict]) -> "ResolutionRules":
        """Accept both the flat layout and the nested ``criteria`` layout."""
        data = dict(raw or {})
        criteria = data.pop("criteria", None)
        if isinstance(criteria, dict):
            for key in ("must_meet_all", "must_not_count", "allowed_sources"):
                data.setdefault(key, criteria.get(key) or [])
        data.setdefault("exact_question", "")
        return cls.model_validate(data)

"""Extractor worker: turns raw news items into market candidates.

Consumes ``news.raw`` and publishes ``candidates``. Keyword detection runs
first; the LLM is consulted only when no event keyword matches.

Run from backend dir:
  python -m workers.extractor_worker
"""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import AsyncSessionLocal, Candidate, NewsItem
from models.messages import CandidateMessage, NewsRawMessage, QueueName
from models.status import NewsStatus
from services.ai import LLMClient, get_llm_client
from services.ai.market_llm import extract_candidate
from services.ai_config import AIConfig, get_ai_config
from services.evidence import sha256_hex
from services.queue import QueueService, queue_service
from utils.logger import get_logger
from utils.utcnow import to_naive_utc, utcnow
from workers.runtime import stage_main

logger = get_logger("extractor_worker")

WORKER_TYPE = "extractor"
RELEVANT_TEXT_CHARS = 500

EVENT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "product_launch": (
        "launch", "release", "announce", "unveil", "introduce", "rollout",
        "debut", "available", "shipping", "pre-order",
    ),
    "finance": (
        "earnings", "quarterly", "revenue", "profit", "financial results",
        "ipo", "stock", "market cap", "valuation", "acquisition", "merger",
    ),
    "politics": (
        "election", "vote", "senate", "congress", "president", "governor",
        "legislation", "bill", "law", "policy", "campaign",
    ),
    "sports": (
        "championship", "finals", "tournament", "match", "game", "playoffs",
        "world cup", "super bowl", "olympics", "mvp", "draft",
    ),
    "entertainment": (
        "movie", "film", "album", "concert", "tour", "award", "grammy",
        "oscar", "emmy", "premiere", "box office",
    ),
    "technology": (
        "ai", "artificial intelligence", "software", "hardware", "chip",
        "processor", "update", "version", "feature", "api", "platform",
    ),
}

FORBIDDEN_TOPICS: tuple[str, ...] = (
    "death", "assassination", "suicide", "terrorism", "war crimes",
    "child abuse", "illegal activities", "hate speech",
)


def contains_forbidden_topic(text: str) -> bool:
    lowered = text.lower()
    return any(topic in lowered for topic in FORBIDDEN_TOPICS)


def detect_event_type(text: str) -> Optional[str]:
    """First event type whose keyword list matches ``text``, else None."""
    lowered = text.lower()
    for event_type, keywords in EVENT_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return event_type
    return None


def _category_for(candidate: str, config: AIConfig) -> str:
    return candidate if candidate in config.categories else "misc"


async def _load_news_item(session: AsyncSession, message: NewsRawMessage) -> NewsItem:
    item = await session.get(NewsItem, message.news_id)
    if item is not None:
        return item
    # Producers may publish before (or instead of) writing the row.
    item = NewsItem(
        id=message.news_id,
        source=message.source,
        source_url=message.source_url,
        title=message.title,
        content=message.content,
        published_at=to_naive_utc(message.published_at),
        status=NewsStatus.INGESTED.value,
        content_hash=sha256_hex(f"{message.source_url}\n{message.title}\n{message.content}"),
    )
    session.add(item)
    await session.flush()
    return item


def _candidate_message(candidate: Candidate) -> CandidateMessage:
    return CandidateMessage(
        candidate_id=candidate.id,
        news_id=candidate.news_id,
        entities=list(candidate.entities or []),
        event_type=candidate.event_type,
        category_hint=candidate.category_hint,
        relevant_text=candidate.relevant_text,
        proposal_id=candidate.proposal_id,
    )


async def _publish(publisher: QueueService, candidate: Candidate) -> None:
    if not await publisher.publish_candidate(_candidate_message(candidate)):
        raise RuntimeError(f"Broker did not accept candidate {candidate.id}")


async def process_news(
    session: AsyncSession,
    message: NewsRawMessage,
    *,
    llm: LLMClient,
    config: AIConfig,
    publisher: QueueService,
) -> Optional[str]:
    """Extract a candidate from one news item; returns the candidate id if any."""
    item = await _load_news_item(session, message)

    if item.status == NewsStatus.SKIPPED.value:
        logger.info("News item already skipped", news_id=item.id)
        return None
    if item.status in (NewsStatus.EXTRACTED.value, NewsStatus.PROCESSED.value):
        existing = await session.scalar(
            select(Candidate).where(Candidate.news_id == item.id).order_by(Candidate.created_at)
        )
        if existing is None:
            logger.warning("News item marked extracted without a candidate", news_id=item.id)
            return None
        if not existing.processed:
            # Redelivery after a failed publish.
            await _publish(publisher, existing)
        return existing.id

    full_text = f"{message.title} {message.content}"
    if contains_forbidden_topic(full_text):
        logger.info("News contains forbidden topic, skipping", news_id=item.id)
        item.status = NewsStatus.SKIPPED.value
        item.processed_at = utcnow()
        await session.commit()
        return None

    event_type = detect_event_type(full_text)
    category = message.category_hint or event_type or "misc"
    entities: list[str] = []

    if event_type is None:
        result, response = await extract_candidate(
            llm, config.llm_model, title=message.title, content=message.content
        )
        if not result.is_market_worthy:
            logger.info(
                "Not market worthy, skipping",
                news_id=item.id,
                llm_request_id=response.request_id,
            )
            item.status = NewsStatus.SKIPPED.value
            item.processed_at = utcnow()
            await session.commit()
            return None
        event_type = result.event_type
        category = result.category
        entities = [entity.name for entity in result.entities]

    candidate = Candidate(
        news_id=item.id,
        entities=entities,
        event_type=event_type,
        category_hint=_category_for(category, config),
        relevant_text=message.content[:RELEVANT_TEXT_CHARS],
        created_at=utcnow(),
    )
    session.add(candidate)
    item.status = NewsStatus.EXTRACTED.value
    item.event_type = event_type
    item.extracted_entities = entities
    item.processed_at = utcnow()
    await session.commit()

    await _publish(publisher, candidate)
    logger.info(
        "Candidate extracted and queued",
        news_id=item.id,
        candidate_id=candidate.id,
        event_type=event_type,
        category=candidate.category_hint,
    )
    return candidate.id


async def handle(message: NewsRawMessage) -> None:
    config = await get_ai_config()
    async with AsyncSessionLocal() as session:
        await process_news(
            session, message, llm=get_llm_client(), config=config, publisher=queue_service
        )


if __name__ == "__main__":
    asyncio.run(stage_main(WORKER_TYPE, QueueName.NEWS_RAW, handle))

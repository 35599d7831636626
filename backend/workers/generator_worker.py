"""Generator worker: drafts a market definition for each candidate.

Consumes ``candidates`` and publishes ``drafts.validate``.

Run from backend dir:
  python -m workers.generator_worker
"""

from __future__ import annotations

import asyncio
import os
import sys

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from sqlalchemy.ext.asyncio import AsyncSession

from models.database import AsyncSessionLocal, Candidate, Market, NewsItem, Proposal
from models.messages import CandidateMessage, DraftValidateMessage, QueueName
from models.status import MarketStatus, NewsStatus
from services.ai import LLMClient, get_llm_client
from services.ai.market_llm import generate_market
from services.ai_config import AIConfig, get_ai_config
from services.audit import record_audit
from services.queue import QueueService, queue_service
from services.rate_limits import can_auto_publish
from utils.logger import get_logger
from utils.utcnow import utcnow
from workers.runtime import stage_main

logger = get_logger("generator_worker")

WORKER_TYPE = "generator"


def validate_message_for(market: Market) -> DraftValidateMessage:
    if market.source_news_id:
        return DraftValidateMessage(
            draft_market_id=market.id, source_type="news", source_id=market.source_news_id
        )
    return DraftValidateMessage(
        draft_market_id=market.id,
        source_type="proposal",
        source_id=market.source_proposal_id or "",
    )


async def _publish(publisher: QueueService, market: Market) -> None:
    if not await publisher.publish_draft_validate(validate_message_for(market)):
        raise RuntimeError(f"Broker did not accept draft {market.id}")


async def _load_candidate(session: AsyncSession, message: CandidateMessage) -> Candidate:
    candidate = await session.get(Candidate, message.candidate_id)
    if candidate is not None:
        return candidate
    candidate = Candidate(
        id=message.candidate_id,
        news_id=message.news_id,
        proposal_id=message.proposal_id,
        entities=list(message.entities),
        event_type=message.event_type,
        category_hint=message.category_hint,
        relevant_text=message.relevant_text,
        created_at=utcnow(),
    )
    session.add(candidate)
    await session.flush()
    return candidate


async def process_candidate(
    session: AsyncSession,
    message: CandidateMessage,
    *,
    llm: LLMClient,
    config: AIConfig,
    publisher: QueueService,
) -> str:
    """Draft one market for ``message``; returns the draft market id."""
    candidate = await _load_candidate(session, message)

    if candidate.processed and candidate.draft_market_id:
        market = await session.get(Market, candidate.draft_market_id)
        if market is not None and market.status == MarketStatus.DRAFT.value:
            await _publish(publisher, market)
        logger.info(
            "Candidate already drafted", candidate_id=candidate.id, draft_market_id=candidate.draft_market_id
        )
        return candidate.draft_market_id

    proposal_id = candidate.proposal_id or message.proposal_id
    budget = None
    if proposal_id is None:
        budget = await can_auto_publish(session, config)
        if not budget["allowed"]:
            logger.info(
                "Auto-publish budget spent; draft will need review unless budget frees up",
                candidate_id=candidate.id,
                current_count=budget["current_count"],
                limit=budget["limit"],
            )

    generated, response = await generate_market(
        llm,
        config.llm_model,
        categories=list(config.categories),
        relevant_text=candidate.relevant_text,
        entities=list(candidate.entities or []),
        event_type=candidate.event_type,
        category_hint=candidate.category_hint,
    )
    logger.info(
        "Market generated",
        candidate_id=candidate.id,
        title=generated.title,
        confidence=generated.confidence_score,
        llm_request_id=response.request_id,
    )

    market = Market(
        title=generated.title,
        description=generated.description,
        category=generated.category if generated.category in config.categories else "misc",
        ai_version=config.ai_version,
        confidence_score=generated.confidence_score,
        source_news_id=candidate.news_id,
        source_proposal_id=proposal_id,
        resolution=generated.resolution,
        status=MarketStatus.DRAFT.value,
        created_by=WORKER_TYPE,
        created_at=utcnow(),
    )
    session.add(market)
    await session.flush()

    candidate.processed = True
    candidate.draft_market_id = market.id

    if proposal_id is not None:
        proposal = await session.get(Proposal, proposal_id)
        if proposal is not None:
            proposal.draft_market_id = market.id
            proposal.confidence_score = generated.confidence_score
    if candidate.news_id is not None:
        news = await session.get(NewsItem, candidate.news_id)
        if news is not None:
            news.status = NewsStatus.PROCESSED.value

    details = {
        "candidate_id": candidate.id,
        "confidence_score": generated.confidence_score,
        "title": generated.title,
    }
    if budget is not None:
        details["auto_publish_budget"] = budget
    record_audit(
        session,
        action="draft_generated",
        entity_type="market",
        entity_id=market.id,
        actor=WORKER_TYPE,
        details=details,
        ai_version=config.ai_version,
        llm_request_id=response.request_id,
    )
    await session.commit()

    await _publish(publisher, market)
    logger.info(
        "Draft market created and queued for validation",
        candidate_id=candidate.id,
        draft_market_id=market.id,
    )
    return market.id


async def handle(message: CandidateMessage) -> None:
    config = await get_ai_config()
    async with AsyncSessionLocal() as session:
        await process_candidate(
            session, message, llm=get_llm_client(), config=config, publisher=queue_service
        )


if __name__ == "__main__":
    asyncio.run(stage_main(WORKER_TYPE, QueueName.CANDIDATES, handle))

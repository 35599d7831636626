"""Validator worker: gates drafts before they go live.

Consumes ``drafts.validate``; approved drafts are published to
``markets.publish``, the rest are canceled or parked for human review.

Run from backend dir:
  python -m workers.validator_worker
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

from sqlalchemy.ext.asyncio import AsyncSession

from models.database import AsyncSessionLocal, Market
from models.messages import DraftValidateMessage, MarketPublishMessage, QueueName
from models.status import InvalidTransitionError, MarketStatus, ProposalStatus
from services.ai import LLMClient, get_llm_client
from services.ai.market_llm import ValidationResult, validate_market
from services.ai_config import AIConfig, get_ai_config
from services.audit import record_audit
from services.errors import EntityNotFoundError
from services.lifecycle import transition_market, transition_proposal
from services.queue import QueueService, queue_service
from services.rate_limits import can_auto_publish
from utils.logger import get_logger
from utils.utcnow import utcnow
from workers.runtime import stage_main

logger = get_logger("validator_worker")

WORKER_TYPE = "validator"


def decide(
    validation: ValidationResult, confidence: float, threshold: float
) -> tuple[MarketStatus, ProposalStatus]:
    """Map an LLM validation onto the market and proposal outcome."""
    if validation.is_forbidden:
        return MarketStatus.CANCELED, ProposalStatus.REJECTED
    if not validation.overall_valid:
        if validation.recommendation == "needs_human":
            return MarketStatus.PENDING_REVIEW, ProposalStatus.NEEDS_HUMAN
        return MarketStatus.CANCELED, ProposalStatus.REJECTED
    if confidence < threshold:
        return MarketStatus.PENDING_REVIEW, ProposalStatus.NEEDS_HUMAN
    return MarketStatus.ACTIVE, ProposalStatus.APPROVED


def _market_payload(market: Market) -> dict:
    return {
        "title": market.title,
        "description": market.description,
        "category": market.category,
        "resolution": market.resolution,
    }


async def _publish(publisher: QueueService, market_id: str, validation_id: str) -> None:
    message = MarketPublishMessage(draft_market_id=market_id, validation_id=validation_id)
    if not await publisher.publish_market_publish(message):
        raise RuntimeError(f"Broker did not accept publish request for {market_id}")


async def process_validation(
    session: AsyncSession,
    message: DraftValidateMessage,
    *,
    llm: LLMClient,
    config: AIConfig,
    publisher: QueueService,
) -> Optional[MarketStatus]:
    market = await session.get(Market, message.draft_market_id)
    if market is None:
        logger.error("Draft market not found", draft_market_id=message.draft_market_id)
        return None

    if market.status != MarketStatus.DRAFT.value:
        if market.status == MarketStatus.ACTIVE.value and not market.market_address:
            # Approved earlier but the publish request was lost.
            validation_id = (market.validation_decision or {}).get("llm_request_id") or market.id
            await _publish(publisher, market.id, validation_id)
        logger.info("Draft already validated", draft_market_id=market.id, status=market.status)
        return MarketStatus(market.status)

    validation, response = await validate_market(llm, config.llm_model, _market_payload(market))
    logger.info(
        "Validation completed",
        draft_market_id=market.id,
        recommendation=validation.recommendation,
        overall_valid=validation.overall_valid,
        llm_request_id=response.request_id,
    )

    market_status, proposal_status = decide(
        validation, float(market.confidence_score or 0), config.validation_confidence_threshold
    )

    budget = None
    if market_status == MarketStatus.ACTIVE and market.source_proposal_id is None:
        budget = await can_auto_publish(session, config)
        if not budget["allowed"]:
            logger.info(
                "Auto-publish limit reached, parking for review",
                draft_market_id=market.id,
                current_count=budget["current_count"],
                limit=budget["limit"],
            )
            market_status, proposal_status = MarketStatus.PENDING_REVIEW, ProposalStatus.NEEDS_HUMAN

    now = utcnow()
    decision = {**validation.model_dump(), "llm_request_id": response.request_id}
    await transition_market(
        session,
        market.id,
        market_status,
        expected=[MarketStatus.DRAFT],
        validation_decision=decision,
    )

    if market.source_proposal_id:
        try:
            await transition_proposal(
                session,
                market.source_proposal_id,
                proposal_status,
                expected=[ProposalStatus.PENDING],
                processed_at=now,
            )
        except (InvalidTransitionError, EntityNotFoundError) as exc:
            logger.warning(
                "Proposal not updated", proposal_id=market.source_proposal_id, error=str(exc)
            )

    details = {
        "recommendation": validation.recommendation,
        "overall_valid": validation.overall_valid,
        "final_status": market_status.value,
        "confidence_score": market.confidence_score,
        "has_ambiguity": validation.has_ambiguity,
        "is_forbidden": validation.is_forbidden,
    }
    if budget is not None:
        details["auto_publish_budget"] = budget
    record_audit(
        session,
        action="validation_completed",
        entity_type="market",
        entity_id=market.id,
        actor=WORKER_TYPE,
        details=details,
        ai_version=config.ai_version,
        llm_request_id=response.request_id,
    )
    await session.commit()

    if market_status == MarketStatus.ACTIVE:
        await _publish(publisher, market.id, response.request_id)
        logger.info("Market approved and queued for publishing", draft_market_id=market.id)
    elif market_status == MarketStatus.CANCELED:
        logger.info(
            "Market rejected",
            draft_market_id=market.id,
            reasons=validation.ambiguity_details
            + validation.fairness_issues
            + validation.forbidden_reason,
        )
    else:
        logger.info("Market queued for human review", draft_market_id=market.id)
    return market_status


async def handle(message: DraftValidateMessage) -> None:
    config = await get_ai_config()
    async with AsyncSessionLocal() as session:
        await process_validation(
            session, message, llm=get_llm_client(), config=config, publisher=queue_service
        )


if __name__ == "__main__":
    asyncio.run(stage_main(WORKER_TYPE, QueueName.DRAFTS_VALIDATE, handle))

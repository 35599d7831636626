"""Dispute agent: first-pass AI review of user disputes.

Consumes ``disputes``. Confident verdicts close the dispute (and finalize the
resolution and market); anything else is escalated to an admin.

Run from backend dir:
  python -m workers.dispute_agent_worker
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

from interfaces.chain_client import ChainClient
from models.database import AsyncSessionLocal, Dispute, Market, Resolution
from models.messages import DisputeMessage, QueueName, ResolutionRules
from models.status import DisputeStatus, ResolutionResult
from services.ai import LLMClient, get_llm_client
from services.ai.market_llm import DisputeVerdict, review_dispute
from services.ai_config import AIConfig, get_ai_config
from services.audit import record_audit
from services.chain_client import get_chain_client
from services.dispute_review import apply_dispute_decision
from services.errors import EntityNotFoundError
from services.evidence import EvidenceFetcher, evidence_text, is_allowed_source
from services.lifecycle import transition_dispute
from utils.logger import get_logger
from workers.runtime import stage_main

logger = get_logger("dispute_agent_worker")

WORKER_TYPE = "dispute-agent"
AUTO_DECISION_CONFIDENCE = 0.85
AGENT_STATUSES = (DisputeStatus.PENDING.value, DisputeStatus.REVIEWING.value)


def decide(verdict: DisputeVerdict) -> tuple[DisputeStatus, Optional[ResolutionResult]]:
    """Final dispute status for a verdict; anything uncertain is escalated."""
    if verdict.decision == "escalate" or verdict.confidence < AUTO_DECISION_CONFIDENCE:
        return DisputeStatus.ESCALATED, None
    if verdict.decision == "upheld":
        return DisputeStatus.UPHELD, None
    if verdict.decision == "overturned" and verdict.new_result:
        return DisputeStatus.OVERTURNED, ResolutionResult(verdict.new_result)
    return DisputeStatus.ESCALATED, None


def _ai_review(verdict: DisputeVerdict, request_id: str) -> dict:
    return {
        "decision": verdict.decision,
        "reasoning": verdict.reasoning,
        "confidence": verdict.confidence,
        "new_evidence_relevant": verdict.new_evidence_relevant,
        "new_evidence_analysis": verdict.new_evidence_analysis,
        "escalation_reason": verdict.escalation_reason,
        "llm_request_id": request_id,
    }


async def process_dispute(
    session: AsyncSession,
    message: DisputeMessage,
    *,
    llm: LLMClient,
    config: AIConfig,
    fetcher: EvidenceFetcher,
    chain: ChainClient,
) -> Optional[DisputeStatus]:
    dispute = await session.get(Dispute, message.dispute_id)
    if dispute is None:
        raise EntityNotFoundError("dispute", message.dispute_id)
    if dispute.status not in AGENT_STATUSES:
        logger.warning("Dispute not in reviewable status", dispute_id=dispute.id, status=dispute.status)
        return None

    resolution = await session.get(Resolution, dispute.resolution_id)
    if resolution is None:
        raise EntityNotFoundError("resolution", dispute.resolution_id)
    market = await session.get(Market, resolution.market_id)
    if market is None:
        raise EntityNotFoundError("market", resolution.market_id)

    if dispute.status == DisputeStatus.PENDING.value:
        await transition_dispute(
            session, dispute.id, DisputeStatus.REVIEWING, expected=[DisputeStatus.PENDING]
        )
        await session.commit()

    rules = ResolutionRules.from_stored(market.resolution)
    evidence_urls = list(dispute.evidence_urls or [])
    accepted = [url for url in evidence_urls if is_allowed_source(url, rules.allowed_sources)]
    rejected = [url for url in evidence_urls if url not in accepted]
    if rejected:
        logger.info("Evidence URLs outside allowed sources ignored", dispute_id=dispute.id, urls=rejected)

    user_evidence = [item for item in [await fetcher.fetch(url) for url in accepted] if item.success]
    refetched = [item for item in await fetcher.fetch_sources(rules.allowed_sources) if item.success]
    combined = "\n\n".join(
        part
        for part in (
            evidence_text(user_evidence, label="Source"),
            "--- Re-fetched Original Sources ---",
            evidence_text(refetched, label="Re-fetch"),
        )
        if part
    )

    verdict, response = await review_dispute(
        llm,
        config.llm_model,
        title=market.title,
        rules=rules,
        original={
            "final_result": resolution.final_result,
            "evidence_hash": resolution.evidence_hash,
            "resolution_source": resolution.resolution_source,
            "must_meet_all_results": resolution.must_meet_all_results,
            "must_not_count_results": resolution.must_not_count_results,
        },
        dispute_reason=dispute.reason,
        evidence_urls=evidence_urls,
        evidence=combined,
    )
    status, new_result = decide(verdict)
    review = _ai_review(verdict, response.request_id)
    logger.info(
        "LLM dispute review completed",
        dispute_id=dispute.id,
        decision=verdict.decision,
        confidence=verdict.confidence,
        final_status=status.value,
    )

    if status == DisputeStatus.ESCALATED:
        await transition_dispute(
            session,
            dispute.id,
            DisputeStatus.ESCALATED,
            expected=[DisputeStatus.REVIEWING],
            ai_review=review,
        )
        record_audit(
            session,
            action="dispute_escalated",
            entity_type="dispute",
            entity_id=dispute.id,
            actor=WORKER_TYPE,
            details={
                "escalation_reason": verdict.escalation_reason or "Low confidence",
                "confidence": verdict.confidence,
            },
            ai_version=config.ai_version,
            llm_request_id=response.request_id,
        )
        await session.commit()
        return status

    upheld = status == DisputeStatus.UPHELD
    await apply_dispute_decision(
        session,
        dispute,
        decision="uphold" if upheld else "overturn",
        reason=verdict.reasoning or verdict.decision,
        new_result=new_result,
        reviewer=WORKER_TYPE,
        review_field="ai_review",
        review_extra=review,
        audit_action="dispute_upheld" if upheld else "dispute_overturned",
        ai_version=config.ai_version,
        llm_request_id=response.request_id,
    )
    await session.commit()

    if new_result is not None and resolution.market_address:
        tx_signature = await chain.submit_resolution(resolution.market_address, new_result.value)
        logger.info(
            "Resolution update submitted",
            market_id=market.id,
            new_result=new_result.value,
            tx_signature=tx_signature,
        )
    return status


async def handle(message: DisputeMessage) -> None:
    config = await get_ai_config()
    async with AsyncSessionLocal() as session:
        await process_dispute(
            session,
            message,
            llm=get_llm_client(),
            config=config,
            fetcher=EvidenceFetcher(),
            chain=get_chain_client(),
        )


if __name__ == "__main__":
    asyncio.run(stage_main(WORKER_TYPE, QueueName.DISPUTES, handle))

"""Resolver worker: settles expired markets from their allowed sources.

Consumes ``markets.resolve`` (published by the scheduler's resolution sweep).
Every allowed source is fetched, the evidence is judged by the LLM against
the market's conditions, and a pending Resolution opens the dispute window.

Run from backend dir:
  python -m workers.resolver_worker
"""

from __future__ import annotations

import asyncio
import os
import sys
from datetime import timedelta
from typing import Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from interfaces.chain_client import ChainClient
from models.database import AsyncSessionLocal, Market, Resolution
from models.messages import MarketResolveMessage, QueueName, ResolutionRules
from models.status import MarketStatus, ResolutionStatus
from services.ai import LLMClient, get_llm_client
from services.ai.market_llm import resolve_market
from services.ai_config import AIConfig, get_ai_config
from services.audit import record_audit
from services.chain_client import get_chain_client
from services.errors import EntityNotFoundError
from services.evidence import (
    EvidenceFetcher,
    combined_hash,
    evidence_raw,
    evidence_text,
)
from services.lifecycle import transition_market
from utils.logger import get_logger
from utils.utcnow import to_iso, utc_iso, utcnow
from workers.runtime import stage_main

logger = get_logger("resolver_worker")

WORKER_TYPE = "resolver"


class EvidenceUnavailableError(RuntimeError):
    """None of the market's allowed sources could be fetched."""


async def process_resolution(
    session: AsyncSession,
    message: MarketResolveMessage,
    *,
    llm: LLMClient,
    config: AIConfig,
    fetcher: EvidenceFetcher,
    chain: ChainClient,
) -> Optional[str]:
    """Resolve one market; returns the new resolution id."""
    market = await session.get(Market, message.market_id)
    if market is None:
        raise EntityNotFoundError("market", message.market_id)
    if market.status != MarketStatus.RESOLVING.value:
        logger.warning("Market not in resolving status", market_id=market.id, status=market.status)
        return None

    existing = await session.scalar(select(Resolution.id).where(Resolution.market_id == market.id))
    if existing is not None:
        logger.warning("Resolution already recorded", market_id=market.id, resolution_id=existing)
        return existing

    rules = ResolutionRules.from_stored(market.resolution)
    evidence = await fetcher.fetch_sources(rules.allowed_sources)
    fetched = [item for item in evidence if item.success]

    if not fetched:
        record_audit(
            session,
            action="resolution_failed",
            entity_type="market",
            entity_id=market.id,
            actor=WORKER_TYPE,
            details={
                "reason": "All source fetches failed",
                "sources": [
                    {"url": item.source_url, "success": item.success, "error": item.error}
                    for item in evidence
                ],
            },
        )
        await session.commit()
        raise EvidenceUnavailableError(f"All source fetches failed for market {market.id}")

    verdict, response = await resolve_market(
        llm,
        config.llm_model,
        title=market.title,
        rules=rules,
        evidence=evidence_text(fetched),
        fetched_at=utc_iso(),
    )

    tx_signature = None
    if market.market_address:
        tx_signature = await chain.submit_resolution(market.market_address, verdict.final_result)

    now = utcnow()
    window_ends = now + timedelta(hours=config.dispute_window_hours)
    evidence_hash = combined_hash(fetched)
    resolution = Resolution(
        market_id=market.id,
        market_address=market.market_address,
        final_result=verdict.final_result,
        resolution_source=fetched[0].source_url,
        evidence_hash=evidence_hash,
        evidence_raw=evidence_raw(fetched),
        must_meet_all_results=[item.model_dump() for item in verdict.must_meet_all_results],
        must_not_count_results=[item.model_dump() for item in verdict.must_not_count_results],
        status=ResolutionStatus.PENDING.value,
        resolved_by=WORKER_TYPE,
        resolved_at=now,
        tx_signature=tx_signature,
        dispute_window_ends=window_ends,
    )
    session.add(resolution)
    await session.flush()

    await transition_market(
        session, market.id, MarketStatus.RESOLVED, expected=[MarketStatus.RESOLVING], resolved_at=now
    )
    record_audit(
        session,
        action="market_resolved",
        entity_type="market",
        entity_id=market.id,
        actor=WORKER_TYPE,
        details={
            "resolution_id": resolution.id,
            "final_result": verdict.final_result,
            "evidence_hash": evidence_hash,
            "reasoning": verdict.reasoning,
            "sources_fetched": len(fetched),
            "dispute_window_ends": to_iso(window_ends),
            "tx_signature": tx_signature,
        },
        ai_version=config.ai_version,
        llm_request_id=response.request_id,
    )
    await session.commit()

    logger.info(
        "Market resolution completed",
        market_id=market.id,
        resolution_id=resolution.id,
        result=verdict.final_result,
        dispute_window_ends=to_iso(window_ends),
    )
    return resolution.id


async def handle(message: MarketResolveMessage) -> None:
    config = await get_ai_config()
    async with AsyncSessionLocal() as session:
        await process_resolution(
            session,
            message,
            llm=get_llm_client(),
            config=config,
            fetcher=EvidenceFetcher(),
            chain=get_chain_client(),
        )


if __name__ == "__main__":
    asyncio.run(stage_main(WORKER_TYPE, QueueName.MARKETS_RESOLVE, handle))

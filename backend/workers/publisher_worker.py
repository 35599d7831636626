"""Publisher worker: creates approved markets on chain.

Consumes ``markets.publish``. The chain client is the dry-run client unless a
live one has been installed and ``DRY_RUN`` is off.

Run from backend dir:
  python -m workers.publisher_worker
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

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from interfaces.chain_client import ChainClient
from models.database import AsyncSessionLocal, Market
from models.messages import MarketPublishMessage, QueueName, ResolutionRules
from models.status import MarketStatus
from services.audit import record_audit
from services.chain_client import get_chain_client, market_params
from utils.logger import get_logger
from utils.utcnow import utcnow
from workers.runtime import stage_main

logger = get_logger("publisher_worker")

WORKER_TYPE = "publisher"


async def process_publish(
    session: AsyncSession, message: MarketPublishMessage, *, chain: ChainClient
) -> Optional[str]:
    """Create the on-chain market; returns its address."""
    # Redeliveries may share a session; re-read the row rather than the identity map.
    market = await session.get(Market, message.draft_market_id, populate_existing=True)
    if market is None:
        logger.error("Market not found", market_id=message.draft_market_id)
        return None
    if market.market_address:
        logger.info(
            "Market already published", market_id=market.id, market_address=market.market_address
        )
        return market.market_address
    if market.status != MarketStatus.ACTIVE.value:
        logger.warning("Market not active, skipping publish", market_id=market.id, status=market.status)
        return None

    market_id = market.id
    receipt = await chain.create_market(market_id, market_params(market.title))

    now = utcnow()
    # Guarded so two publishers racing on a redelivery cannot both write an address.
    result = await session.execute(
        update(Market)
        .where(Market.id == market_id, Market.market_address.is_(None))
        .values(market_address=receipt.market_address, published_at=now)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        await session.rollback()
        logger.warning("Market was published concurrently", market_id=market_id)
        return None

    try:
        expiry = ResolutionRules.from_stored(market.resolution).expiry
    except ValueError:
        expiry = None
    record_audit(
        session,
        action="market_published",
        entity_type="market",
        entity_id=market.id,
        actor=WORKER_TYPE,
        details={
            "market_address": receipt.market_address,
            "yes_token_mint": receipt.yes_token_mint,
            "no_token_mint": receipt.no_token_mint,
            "tx_signature": receipt.tx_signature,
            "title": market.title,
            "expiry": expiry,
            "validation_id": message.validation_id,
        },
    )
    await session.commit()
    logger.info(
        "Market published",
        market_id=market.id,
        market_address=receipt.market_address,
        tx_signature=receipt.tx_signature,
    )
    return receipt.market_address


async def handle(message: MarketPublishMessage) -> None:
    async with AsyncSessionLocal() as session:
        await process_publish(session, message, chain=get_chain_client())


if __name__ == "__main__":
    asyncio.run(stage_main(WORKER_TYPE, QueueName.MARKETS_PUBLISH, handle))

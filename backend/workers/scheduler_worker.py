"""Scheduler worker: periodic pipeline housekeeping.

Jobs (each runs when its interval has elapsed on a one-minute tick):
  resolution_sweep    every minute   expired active markets -> resolving, queue for resolver
  finalization_sweep  every 5 min    undisputed resolutions past their window -> finalized
  rate_limit_cleanup  hourly         drop rate-limit buckets older than a day
  config_refresh      every 15 min   broadcast config.refresh to every worker
  stale_check         every 10 min   requeue stuck resolving markets, report stuck proposals

Run from backend dir:
  python -m workers.scheduler_worker
"""

from __future__ import annotations

import asyncio
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import AsyncSessionLocal, Dispute, Market, Proposal, Resolution, init_database
from models.messages import MarketResolveMessage, ResolutionRules
from models.status import (
    InvalidTransitionError,
    MarketStatus,
    ProposalStatus,
    REVIEWABLE_DISPUTE_STATUSES,
    ResolutionStatus,
    status_values,
)
from services.ai_config import ai_config_cache
from services.audit import record_audit
from services.lifecycle import transition_market, transition_resolution
from services.queue import QueueService, queue_service
from services.rate_limits import cleanup_rate_limits
from utils.logger import get_logger, setup_logging
from utils.utcnow import parse_iso, to_iso, utcnow
from workers.runtime import HeartbeatClient, install_signal_handlers

logger = get_logger("scheduler_worker")

WORKER_TYPE = "scheduler"
STALE_RESOLVING_AFTER = timedelta(minutes=30)
STALE_PROPOSAL_AFTER = timedelta(hours=1)


def market_expiry(market_id: str, resolution: Optional[dict]) -> Optional[datetime]:
    try:
        return parse_iso(ResolutionRules.from_stored(resolution).expiry)
    except ValueError:
        logger.warning("Market has an unparseable expiry", market_id=market_id)
        return None


async def _queue_resolution(
    publisher: QueueService, market_id: str, market_address: Optional[str], expiry: Optional[datetime]
) -> bool:
    message = MarketResolveMessage(
        market_id=market_id,
        market_address=market_address,
        expiry=to_iso(expiry),
    )
    return await publisher.publish_market_resolve(message)


async def resolution_sweep(
    session: AsyncSession, publisher: QueueService, now: Optional[datetime] = None
) -> int:
    """Move expired, published markets to ``resolving`` and queue them."""
    now = now or utcnow()
    rows = (
        await session.execute(
            select(Market.id, Market.market_address, Market.resolution).where(
                Market.status == MarketStatus.ACTIVE.value,
                Market.market_address.is_not(None),
            )
        )
    ).all()

    queued = 0
    for market_id, market_address, resolution in rows:
        expiry = market_expiry(market_id, resolution)
        if expiry is None or expiry >= now:
            continue
        try:
            await transition_market(
                session, market_id, MarketStatus.RESOLVING, expected=[MarketStatus.ACTIVE]
            )
            await session.commit()
        except InvalidTransitionError as exc:
            await session.rollback()
            logger.info("Market already picked up", market_id=market_id, current=exc.current)
            continue
        if await _queue_resolution(publisher, market_id, market_address, expiry):
            queued += 1
        else:
            logger.warning("Resolve request not accepted; stale check will retry", market_id=market_id)

    if queued:
        logger.info("Queued markets for resolution", count=queued)
    return queued


async def finalization_sweep(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Finalize resolutions whose dispute window closed without an active dispute."""
    now = now or utcnow()
    active_dispute = (
        select(Dispute.id)
        .where(
            Dispute.resolution_id == Resolution.id,
            Dispute.status.in_(status_values(REVIEWABLE_DISPUTE_STATUSES)),
        )
        .exists()
    )
    rows = (
        await session.execute(
            select(Resolution.id, Resolution.market_id)
            .join(Market, Market.id == Resolution.market_id)
            .where(
                Market.status == MarketStatus.RESOLVED.value,
                Resolution.status == ResolutionStatus.PENDING.value,
                Resolution.dispute_window_ends < now,
                ~active_dispute,
            )
        )
    ).all()

    finalized = 0
    for resolution_id, market_id in rows:
        try:
            await transition_market(
                session,
                market_id,
                MarketStatus.FINALIZED,
                expected=[MarketStatus.RESOLVED],
                finalized_at=now,
            )
            await transition_resolution(
                session, resolution_id, ResolutionStatus.FINALIZED, finalized_at=now
            )
            record_audit(
                session,
                action="market_finalized",
                entity_type="market",
                entity_id=market_id,
                actor=WORKER_TYPE,
                details={"resolution_id": resolution_id, "auto_finalized": True},
            )
            await session.commit()
            finalized += 1
        except InvalidTransitionError as exc:
            # A dispute landed between the query and the update.
            await session.rollback()
            logger.info("Finalization skipped", market_id=market_id, current=exc.current)

    if finalized:
        logger.info("Finalized markets", count=finalized)
    return finalized


async def rate_limit_cleanup(session: AsyncSession) -> int:
    removed = await cleanup_rate_limits(session)
    logger.info("Rate limit buckets cleaned up", removed=removed)
    return removed


async def config_refresh(publisher: QueueService) -> bool:
    ai_config_cache.invalidate()
    accepted = await publisher.publish_config_refresh("all")
    logger.info("Config refresh broadcast", accepted=accepted)
    return accepted


async def stale_check(
    session: AsyncSession, publisher: QueueService, now: Optional[datetime] = None
) -> dict[str, int]:
    """Requeue markets stuck in ``resolving``; report proposals stuck in ``pending``."""
    now = now or utcnow()
    resolving = (
        await session.execute(
            select(Market.id, Market.market_address, Market.resolution).where(
                Market.status == MarketStatus.RESOLVING.value,
                Market.resolved_at.is_(None),
            )
        )
    ).all()

    requeued = 0
    for market_id, market_address, resolution in resolving:
        expiry = market_expiry(market_id, resolution)
        if expiry is not None and now - expiry < STALE_RESOLVING_AFTER:
            continue
        if await _queue_resolution(publisher, market_id, market_address, expiry):
            requeued += 1

    stale_proposals = await session.scalar(
        select(func.count(Proposal.id)).where(
            Proposal.status == ProposalStatus.PENDING.value,
            Proposal.created_at < now - STALE_PROPOSAL_AFTER,
        )
    )
    stale_proposals = int(stale_proposals or 0)
    if requeued or stale_proposals:
        logger.warning(
            "Stale pipeline items found",
            requeued_markets=requeued,
            stale_pending_proposals=stale_proposals,
        )
    return {"requeued_markets": requeued, "stale_pending_proposals": stale_proposals}


@dataclass
class Job:
    name: str
    interval_seconds: int
    run: Callable[[], Awaitable[Any]]
    last_run: Optional[float] = None

    def due(self, now: float) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval_seconds


def build_jobs(publisher: QueueService) -> list[Job]:
    async def _with_session(fn, *args):
        async with AsyncSessionLocal() as session:
            return await fn(session, *args)

    return [
        Job("resolution_sweep", 60, lambda: _with_session(resolution_sweep, publisher)),
        Job("finalization_sweep", 5 * 60, lambda: _with_session(finalization_sweep)),
        Job("rate_limit_cleanup", 60 * 60, lambda: _with_session(rate_limit_cleanup)),
        Job("config_refresh", 15 * 60, lambda: config_refresh(publisher)),
        Job("stale_check", 10 * 60, lambda: _with_session(stale_check, publisher)),
    ]


async def run_due_jobs(jobs: list[Job], heartbeat: HeartbeatClient, now: float) -> None:
    for job in jobs:
        if not job.due(now):
            continue
        job.last_run = now
        try:
            await job.run()
        except Exception as exc:
            logger.exception("Scheduled job failed", job=job.name, error=str(exc))
            heartbeat.record_failure(f"{job.name}: {exc}")
        else:
            heartbeat.record_success()


async def main() -> None:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
    logger.info("Starting worker", worker_type=WORKER_TYPE)
    await init_database()

    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    heartbeat = HeartbeatClient(WORKER_TYPE)
    heartbeat.start()
    jobs = build_jobs(queue_service)
    loop = asyncio.get_running_loop()

    try:
        while not stop_event.is_set():
            if heartbeat.enabled:
                await run_due_jobs(jobs, heartbeat, loop.time())
            heartbeat.set_idle()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=settings.SCHEDULER_TICK_SECONDS)
            except asyncio.TimeoutError:
                pass
    finally:
        logger.info("Worker shutting down", worker_type=WORKER_TYPE)
        await heartbeat.stop()
        await queue_service.close()


if __name__ == "__main__":
    asyncio.run(main())

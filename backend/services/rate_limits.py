"""Admission control for auto-published markets and public submissions."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import Market, RateLimitEntry, dialect_insert
from models.status import MarketStatus
from services.ai_config import AIConfig
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

WINDOW_SECONDS: dict[str, int] = {
    "minute": 60,
    "hour": 60 * 60,
    "day": 24 * 60 * 60,
}
PROPOSE_ENDPOINT = "/api/v1/propose"
DISPUTE_ENDPOINT = "/api/v1/disputes"
RATE_LIMIT_RETENTION = timedelta(hours=24)


async def can_auto_publish(
    session: AsyncSession, config: AIConfig, now: Optional[datetime] = None
) -> dict[str, Any]:
    """Whether another AI-originated market may go live this hour."""
    now = now or utcnow()
    since = now - timedelta(hours=1)
    current = await session.scalar(
        select(func.count(Market.id)).where(
            Market.source_proposal_id.is_(None),
            Market.published_at.is_not(None),
            Market.published_at >= since,
            Market.status == MarketStatus.ACTIVE.value,
        )
    )
    limit = config.rate_limits.auto_publish_per_hour
    current = int(current or 0)
    return {"allowed": current < limit, "current_count": current, "limit": limit}


def propose_limits(config: AIConfig) -> dict[str, int]:
    rl = config.rate_limits
    return {
        "minute": rl.propose_per_minute,
        "hour": rl.propose_per_hour,
        "day": rl.propose_per_day,
    }


def dispute_limits(config: AIConfig) -> dict[str, int]:
    rl = config.rate_limits
    return {"hour": rl.dispute_per_hour, "day": rl.dispute_per_day}


async def check_rate_limit(
    session: AsyncSession,
    identifier: str,
    endpoint: str,
    limits: Mapping[str, int],
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Evaluate each window in order; the first exhausted one denies.

    ``retry_after`` is the number of seconds until the oldest counted request
    in the exhausted window ages out.
    """
    now = now or utcnow()
    for window_type, limit in limits.items():
        span = timedelta(seconds=WINDOW_SECONDS[window_type])
        window_open = now - span
        scope = (
            RateLimitEntry.identifier == identifier,
            RateLimitEntry.endpoint == endpoint,
            RateLimitEntry.window_type == window_type,
            RateLimitEntry.window_start > window_open,
        )
        total = await session.scalar(
            select(func.coalesce(func.sum(RateLimitEntry.count), 0)).where(*scope)
        )
        if int(total or 0) < limit:
            continue

        oldest = await session.scalar(select(func.min(RateLimitEntry.window_start)).where(*scope))
        if oldest is not None:
            retry_after = math.ceil((oldest + span - now).total_seconds())
        else:
            retry_after = int(span.total_seconds())
        return {
            "allowed": False,
            "limit": limit,
            "window": window_type,
            "retry_after": max(1, retry_after),
        }
    return {"allowed": True}


async def check_propose_limit(
    session: AsyncSession,
    identifier: str,
    config: AIConfig,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    return await check_rate_limit(
        session, identifier, PROPOSE_ENDPOINT, propose_limits(config), now
    )


async def record_request(
    session: AsyncSession,
    identifier: str,
    endpoint: str,
    window_types: Iterable[str],
    now: Optional[datetime] = None,
) -> None:
    """Count one request in every window type. Not committed here."""
    now = now or utcnow()
    for window_type in window_types:
        stmt = dialect_insert(session, RateLimitEntry).values(
            identifier=identifier,
            endpoint=endpoint,
            window_start=now,
            window_type=window_type,
            count=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["identifier", "endpoint", "window_start", "window_type"],
            set_={"count": RateLimitEntry.count + 1},
        )
        await session.execute(stmt)


async def record_propose(
    session: AsyncSession, identifier: str, now: Optional[datetime] = None
) -> None:
    await record_request(session, identifier, PROPOSE_ENDPOINT, WINDOW_SECONDS, now)


async def cleanup_rate_limits(
    session: AsyncSession, older_than: Optional[datetime] = None
) -> int:
    """Drop counter rows older than the retention window; returns rows deleted."""
    cutoff = older_than or (utcnow() - RATE_LIMIT_RETENTION)
    result = await session.execute(
        delete(RateLimitEntry).where(RateLimitEntry.window_start < cutoff)
    )
    await session.commit()
    deleted = int(result.rowcount or 0)
    if deleted:
        logger.info("Removed %d expired rate limit rows", deleted)
    return deleted

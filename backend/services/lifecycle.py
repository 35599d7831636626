"""Status-guarded transitions for markets, proposals, disputes and resolutions.

Each helper issues a single ``UPDATE ... WHERE id = :id AND status IN (...)``
built from the central transition table. Concurrent stage instances therefore
never need a lock: whoever updates the row first wins, and the loser sees zero
affected rows and gets ``InvalidTransitionError`` carrying the row's current
status. Nothing is committed here; callers own the transaction.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import Dispute, Market, Proposal, Resolution
from models.status import (
    DisputeStatus,
    InvalidTransitionError,
    MarketStatus,
    ProposalStatus,
    ResolutionStatus,
    sources_for,
)
from services.errors import EntityNotFoundError

logger = logging.getLogger(__name__)


async def _guarded_transition(
    session: AsyncSession,
    model,
    entity: str,
    entity_id: str,
    target: enum.Enum,
    expected: Optional[Iterable[enum.Enum]],
    values: Optional[dict[str, Any]],
) -> None:
    allowed = set(sources_for(target))
    if expected is not None:
        allowed &= set(expected)
    if not allowed:
        raise InvalidTransitionError(entity, "?", target.value)

    stmt = (
        update(model)
        .where(model.id == entity_id, model.status.in_(sorted(s.value for s in allowed)))
        .values(status=target.value, **(values or {}))
        .execution_options(synchronize_session="fetch")
    )
    result = await session.execute(stmt)
    if result.rowcount == 1:
        logger.info("%s %s -> %s", entity, entity_id, target.value)
        return

    current = await session.scalar(select(model.status).where(model.id == entity_id))
    if current is None:
        raise EntityNotFoundError(entity, entity_id)
    raise InvalidTransitionError(entity, current, target.value)


async def transition_market(
    session: AsyncSession,
    market_id: str,
    target: MarketStatus,
    *,
    expected: Optional[Iterable[MarketStatus]] = None,
    **values: Any,
) -> None:
    await _guarded_transition(session, Market, "market", market_id, target, expected, values)


async def transition_proposal(
    session: AsyncSession,
    proposal_id: str,
    target: ProposalStatus,
    *,
    expected: Optional[Iterable[ProposalStatus]] = None,
    **values: Any,
) -> None:
    await _guarded_transition(
        session, Proposal, "proposal", proposal_id, target, expected, values
    )


async def transition_dispute(
    session: AsyncSession,
    dispute_id: str,
    target: DisputeStatus,
    *,
    expected: Optional[Iterable[DisputeStatus]] = None,
    **values: Any,
) -> None:
    await _guarded_transition(session, Dispute, "dispute", dispute_id, target, expected, values)


async def transition_resolution(
    session: AsyncSession,
    resolution_id: str,
    target: ResolutionStatus,
    *,
    expected: Optional[Iterable[ResolutionStatus]] = None,
    **values: Any,
) -> None:
    await _guarded_transition(
        session, Resolution, "resolution", resolution_id, target, expected, values
    )

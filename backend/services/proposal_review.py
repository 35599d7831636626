"""Human review of AI-drafted markets parked as ``needs_human`` proposals."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import Market, Proposal
from models.messages import MarketPublishMessage, ResolutionRules
from models.status import (
    InvalidTransitionError,
    MarketStatus,
    ProposalStatus,
    coerce_status,
)
from services.audit import record_audit
from services.errors import (
    EntityNotFoundError,
    RequestValidationError,
    StateConflictError,
)
from services.lifecycle import transition_market, transition_proposal
from services.pagination import after_cursor, clamp_limit, encode_cursor
from utils.utcnow import to_iso, utcnow

logger = logging.getLogger(__name__)

REVIEW_DECISIONS = ("approve", "reject")


def _market_fields(market: Optional[Market]) -> dict[str, Any]:
    if market is None:
        return {
            "market_id": None,
            "market_title": None,
            "market_description": None,
            "market_category": None,
            "market_resolution": None,
            "market_confidence": None,
            "validation_decision": None,
            "market_status": None,
        }
    return {
        "market_id": market.id,
        "market_title": market.title,
        "market_description": market.description,
        "market_category": market.category,
        "market_resolution": market.resolution,
        "market_confidence": market.confidence_score,
        "validation_decision": market.validation_decision,
        "market_status": market.status,
    }


def proposal_to_dict(proposal: Proposal) -> dict[str, Any]:
    return {
        "id": proposal.id,
        "user_id": proposal.user_id,
        "proposal_text": proposal.proposal_text,
        "category_hint": proposal.category_hint,
        "status": proposal.status,
        "draft_market_id": proposal.draft_market_id,
        "confidence_score": proposal.confidence_score,
        "rejection_reason": proposal.rejection_reason,
        "created_at": to_iso(proposal.created_at),
        "processed_at": to_iso(proposal.processed_at),
    }


async def list_proposals(
    session: AsyncSession,
    *,
    status: Optional[str] = None,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
) -> dict[str, Any]:
    """Newest-first page of proposals; defaults to the ``needs_human`` queue."""
    try:
        wanted = coerce_status(ProposalStatus, status or ProposalStatus.NEEDS_HUMAN.value)
    except ValueError:
        raise RequestValidationError(f"Unknown proposal status '{status}'", field="status") from None
    limit = clamp_limit(limit)

    query = (
        select(Proposal, Market)
        .outerjoin(Market, Market.id == Proposal.draft_market_id)
        .where(Proposal.status == wanted.value)
    )
    clause = after_cursor(Proposal, cursor)
    if clause is not None:
        query = query.where(clause)
    query = query.order_by(Proposal.created_at.desc(), Proposal.id.desc()).limit(limit + 1)

    rows = (await session.execute(query)).all()
    has_more = len(rows) > limit
    rows = rows[:limit]

    items = []
    for proposal, market in rows:
        item = proposal_to_dict(proposal)
        item["draft_title"] = market.title if market is not None else None
        item["draft_confidence"] = market.confidence_score if market is not None else None
        item["validation_decision"] = market.validation_decision if market is not None else None
        items.append(item)

    next_cursor = None
    if has_more and rows:
        last = rows[-1][0]
        next_cursor = encode_cursor(last.created_at, last.id)
    return {
        "items": items,
        "pagination": {
            "total": len(items),
            "limit": limit,
            "has_more": has_more,
            "next_cursor": next_cursor,
        },
    }


async def get_proposal_detail(session: AsyncSession, proposal_id: str) -> dict[str, Any]:
    row = (
        await session.execute(
            select(Proposal, Market)
            .outerjoin(Market, Market.id == Proposal.draft_market_id)
            .where(Proposal.id == proposal_id)
        )
    ).first()
    if row is None:
        raise EntityNotFoundError("proposal", proposal_id)
    proposal, market = row
    return {**proposal_to_dict(proposal), **_market_fields(market)}


def _validate_review(decision: str, reason: Optional[str]) -> str:
    if decision not in REVIEW_DECISIONS:
        raise RequestValidationError(
            "decision must be one of: approve, reject", field="decision"
        )
    reason = (reason or "").strip()
    if not reason:
        raise RequestValidationError("reason is required", field="reason")
    return reason


def _merged_resolution(market: Market, changes: dict[str, Any]) -> dict[str, Any]:
    merged = {**(market.resolution or {}), **changes}
    try:
        ResolutionRules.from_stored(merged)
    except ValidationError as exc:
        raise RequestValidationError(
            "modifications.resolution is not a valid resolution contract",
            field="modifications.resolution",
            details={"errors": exc.errors(include_url=False)},
        ) from exc
    return merged


async def review_proposal(
    session: AsyncSession,
    proposal_id: str,
    *,
    decision: str,
    reason: Optional[str],
    actor: str,
    modifications: Optional[dict[str, Any]] = None,
    request_id: Optional[str] = None,
    publisher=None,
) -> dict[str, Any]:
    """Approve or reject a ``needs_human`` proposal in one transaction.

    Approval activates the linked market and, after the commit, asks
    ``publisher`` (a ``QueueService``) to enqueue on-chain creation; a failed
    publish is logged and reported in the result, never raised.
    """
    reason = _validate_review(decision, reason)

    proposal = await session.get(Proposal, proposal_id, populate_existing=True)
    if proposal is None:
        raise EntityNotFoundError("proposal", proposal_id)
    if proposal.status != ProposalStatus.NEEDS_HUMAN.value:
        raise StateConflictError(
            f"Proposal is in {proposal.status} status and cannot be reviewed",
            current_status=proposal.status,
        )

    market_id = proposal.draft_market_id
    now = utcnow()
    try:
        if decision == "approve":
            if market_id:
                updates: dict[str, Any] = {}
                mods = modifications or {}
                market = await session.get(Market, market_id)
                if market is None:
                    raise EntityNotFoundError("market", market_id)
                if mods.get("title"):
                    updates["title"] = str(mods["title"]).strip()
                if mods.get("resolution"):
                    updates["resolution"] = _merged_resolution(market, dict(mods["resolution"]))
                await transition_market(session, market_id, MarketStatus.ACTIVE, **updates)
            await transition_proposal(
                session,
                proposal_id,
                ProposalStatus.APPROVED,
                expected={ProposalStatus.NEEDS_HUMAN},
                processed_at=now,
            )
            details = {"decision": "approve", "reason": reason, "modifications": modifications or None}
        else:
            await transition_proposal(
                session,
                proposal_id,
                ProposalStatus.REJECTED,
                expected={ProposalStatus.NEEDS_HUMAN},
                rejection_reason=reason,
                processed_at=now,
            )
            if market_id:
                await transition_market(session, market_id, MarketStatus.CANCELED)
            details = {"decision": "reject", "reason": reason}

        record_audit(
            session,
            action="admin_action",
            entity_type="proposal",
            entity_id=proposal_id,
            actor=actor,
            details=details,
        )
        await session.commit()
    except InvalidTransitionError as exc:
        await session.rollback()
        raise StateConflictError(str(exc), current_status=exc.current) from exc
    except Exception:
        await session.rollback()
        raise

    logger.info("Proposal %s %sd by %s", proposal_id, decision, actor)
    result: dict[str, Any] = {
        "proposal_id": proposal_id,
        "status": ProposalStatus.APPROVED.value if decision == "approve" else ProposalStatus.REJECTED.value,
        "decision": decision,
        "reason": reason,
        "published": False,
    }

    if decision == "approve" and market_id and publisher is not None and publisher.is_configured():
        message = MarketPublishMessage(
            draft_market_id=market_id,
            validation_id=f"admin_review_{request_id or proposal_id}",
        )
        try:
            result["published"] = await publisher.publish_market_publish(message)
        except Exception as exc:
            logger.error("Failed to enqueue publish for market %s: %s", market_id, exc)
        else:
            if not result["published"]:
                logger.warning("Publish of market %s was not accepted by the broker", market_id)
    return result

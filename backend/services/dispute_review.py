"""Dispute intake and adjudication.

A dispute is opened against a pending resolution inside its dispute window and
moves the market ``resolved -> disputed``. Adjudication (admin or the dispute
agent) ends it as ``upheld`` or ``overturned`` and finalizes both the
resolution and the market in the same transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import Dispute, Market, Resolution
from models.status import (
    REVIEWABLE_DISPUTE_STATUSES,
    DisputeStatus,
    InvalidTransitionError,
    MarketStatus,
    ResolutionResult,
    ResolutionStatus,
    coerce_status,
    status_values,
)
from services.audit import record_audit
from services.errors import (
    EntityNotFoundError,
    RequestValidationError,
    StateConflictError,
)
from services.lifecycle import transition_dispute, transition_market, transition_resolution
from services.pagination import after_cursor, clamp_limit, encode_cursor
from utils.utcnow import to_iso, utcnow

logger = logging.getLogger(__name__)

DISPUTE_DECISIONS = ("uphold", "overturn")
DEFAULT_LIST_STATUSES = (DisputeStatus.PENDING, DisputeStatus.ESCALATED)


def dispute_to_dict(dispute: Dispute) -> dict[str, Any]:
    return {
        "id": dispute.id,
        "resolution_id": dispute.resolution_id,
        "market_address": dispute.market_address,
        "user_address": dispute.user_address,
        "user_token_balance": dispute.user_token_balance,
        "reason": dispute.reason,
        "evidence_urls": list(dispute.evidence_urls or []),
        "status": dispute.status,
        "ai_review": dispute.ai_review,
        "admin_review": dispute.admin_review,
        "new_result": dispute.new_result,
        "created_at": to_iso(dispute.created_at),
        "resolved_at": to_iso(dispute.resolved_at),
    }


def _statuses(status: Optional[str]) -> list[str]:
    if not status:
        return status_values(DEFAULT_LIST_STATUSES)
    try:
        return [coerce_status(DisputeStatus, status).value]
    except ValueError:
        raise RequestValidationError(f"Unknown dispute status '{status}'", field="status") from None


async def list_disputes(
    session: AsyncSession,
    *,
    status: Optional[str] = None,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
) -> dict[str, Any]:
    """Newest-first page of disputes; defaults to pending and escalated."""
    limit = clamp_limit(limit)
    query = (
        select(Dispute, Resolution, Market)
        .join(Resolution, Resolution.id == Dispute.resolution_id)
        .join(Market, Market.id == Resolution.market_id)
        .where(Dispute.status.in_(_statuses(status)))
    )
    clause = after_cursor(Dispute, cursor)
    if clause is not None:
        query = query.where(clause)
    query = query.order_by(Dispute.created_at.desc(), Dispute.id.desc()).limit(limit + 1)

    rows = (await session.execute(query)).all()
    has_more = len(rows) > limit
    rows = rows[:limit]

    items = [
        {
            **dispute_to_dict(dispute),
            "original_result": resolution.final_result,
            "resolution_source": resolution.resolution_source,
            "market_title": market.title,
            "market_address": market.market_address,
        }
        for dispute, resolution, market in rows
    ]
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


async def get_dispute_detail(session: AsyncSession, dispute_id: str) -> dict[str, Any]:
    row = (
        await session.execute(
            select(Dispute, Resolution, Market)
            .join(Resolution, Resolution.id == Dispute.resolution_id)
            .join(Market, Market.id == Resolution.market_id)
            .where(Dispute.id == dispute_id)
        )
    ).first()
    if row is None:
        raise EntityNotFoundError("dispute", dispute_id)
    dispute, resolution, market = row
    return {
        **dispute_to_dict(dispute),
        "original_result": resolution.final_result,
        "resolution_status": resolution.status,
        "resolution_source": resolution.resolution_source,
        "evidence_hash": resolution.evidence_hash,
        "evidence_raw": resolution.evidence_raw,
        "must_meet_all_results": resolution.must_meet_all_results,
        "must_not_count_results": resolution.must_not_count_results,
        "dispute_window_ends": to_iso(resolution.dispute_window_ends),
        "market_id": market.id,
        "market_title": market.title,
        "market_description": market.description,
        "market_address": market.market_address,
        "market_resolution": market.resolution,
        "market_status": market.status,
    }


def validate_decision(
    decision: str, reason: Optional[str], new_result: Optional[str]
) -> tuple[str, Optional[ResolutionResult]]:
    """Check a review request before anything is read or written."""
    if decision not in DISPUTE_DECISIONS:
        raise RequestValidationError("decision must be one of: uphold, overturn", field="decision")
    reason = (reason or "").strip()
    if not reason:
        raise RequestValidationError("reason is required", field="reason")
    if decision == "overturn":
        if not new_result:
            raise RequestValidationError(
                "new_result is required when overturning a dispute", field="new_result"
            )
        try:
            return reason, ResolutionResult(str(new_result).upper())
        except ValueError:
            raise RequestValidationError(
                "new_result must be one of: YES, NO", field="new_result"
            ) from None
    return reason, None


async def apply_dispute_decision(
    session: AsyncSession,
    dispute: Dispute,
    *,
    decision: str,
    reason: str,
    new_result: Optional[ResolutionResult],
    reviewer: str,
    review_field: str = "admin_review",
    review_extra: Optional[dict[str, Any]] = None,
    audit_action: str = "dispute_resolved",
    ai_version: Optional[str] = None,
    llm_request_id: Optional[str] = None,
) -> DisputeStatus:
    """Close ``dispute`` and finalize its resolution and market. Not committed here."""
    now = utcnow()
    target = DisputeStatus.UPHELD if decision == "uphold" else DisputeStatus.OVERTURNED

    review: dict[str, Any] = {"decision": decision, "reason": reason, "reviewed_by": reviewer}
    values: dict[str, Any] = {"resolved_at": now}
    if new_result is not None:
        review["new_result"] = new_result.value
        values["new_result"] = new_result.value
    review.update(review_extra or {})
    values[review_field] = review

    await transition_dispute(
        session, dispute.id, target, expected=REVIEWABLE_DISPUTE_STATUSES, **values
    )

    resolution = await session.get(Resolution, dispute.resolution_id, populate_existing=True)
    if resolution is None:
        raise EntityNotFoundError("resolution", dispute.resolution_id)
    final_result = new_result.value if new_result is not None else resolution.final_result
    if resolution.status == ResolutionStatus.FINALIZED.value:
        # Already finalized by the sweep; only the recorded outcome can change.
        resolution.final_result = final_result
    else:
        await transition_resolution(
            session,
            resolution.id,
            ResolutionStatus.FINALIZED,
            final_result=final_result,
            finalized_at=now,
        )

    market_status = await session.scalar(
        select(Market.status).where(Market.id == resolution.market_id)
    )
    if market_status != MarketStatus.FINALIZED.value:
        await transition_market(
            session, resolution.market_id, MarketStatus.FINALIZED, finalized_at=now
        )

    record_audit(
        session,
        action=audit_action,
        entity_type="dispute",
        entity_id=dispute.id,
        actor=reviewer,
        details={
            "decision": decision,
            "reason": reason,
            "new_result": new_result.value if new_result is not None else None,
        },
        ai_version=ai_version,
        llm_request_id=llm_request_id,
    )
    return target


async def review_dispute(
    session: AsyncSession,
    dispute_id: str,
    *,
    decision: str,
    reason: Optional[str],
    actor: str,
    new_result: Optional[str] = None,
) -> dict[str, Any]:
    reason, result = validate_decision(decision, reason, new_result)

    dispute = await session.get(Dispute, dispute_id, populate_existing=True)
    if dispute is None:
        raise EntityNotFoundError("dispute", dispute_id)
    if coerce_status(DisputeStatus, dispute.status) not in REVIEWABLE_DISPUTE_STATUSES:
        raise StateConflictError(
            f"Dispute is in {dispute.status} status and cannot be reviewed",
            current_status=dispute.status,
        )

    try:
        status = await apply_dispute_decision(
            session,
            dispute,
            decision=decision,
            reason=reason,
            new_result=result,
            reviewer=actor,
        )
        await session.commit()
    except InvalidTransitionError as exc:
        await session.rollback()
        raise StateConflictError(str(exc), current_status=exc.current) from exc
    except Exception:
        await session.rollback()
        raise

    logger.info("Dispute %s %s by %s", dispute_id, status.value, actor)
    return {
        "dispute_id": dispute_id,
        "status": status.value,
        "decision": decision,
        "new_result": result.value if result is not None else None,
        "reason": reason,
    }


async def open_dispute(
    session: AsyncSession,
    *,
    resolution_id: str,
    user_address: str,
    reason: str,
    evidence_urls: Iterable[str] = (),
    user_token_balance: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dispute:
    """Contest a pending resolution; moves its market to ``disputed``."""
    now = now or utcnow()
    resolution = await session.get(Resolution, resolution_id)
    if resolution is None:
        raise EntityNotFoundError("resolution", resolution_id)
    if resolution.status != ResolutionStatus.PENDING.value:
        raise StateConflictError(
            f"Resolution is {resolution.status} and can no longer be disputed",
            current_status=resolution.status,
        )
    if resolution.dispute_window_ends <= now:
        raise StateConflictError("The dispute window for this resolution has closed")

    active = await session.scalar(
        select(Dispute.id).where(
            Dispute.resolution_id == resolution_id,
            Dispute.status.in_(status_values(REVIEWABLE_DISPUTE_STATUSES)),
        )
    )
    if active is not None:
        raise StateConflictError("An active dispute already exists for this resolution")

    dispute = Dispute(
        resolution_id=resolution_id,
        market_address=resolution.market_address,
        user_address=user_address,
        user_token_balance=dict(user_token_balance or {}),
        reason=reason,
        evidence_urls=list(evidence_urls),
        status=DisputeStatus.PENDING.value,
        created_at=now,
    )
    try:
        await transition_market(session, resolution.market_id, MarketStatus.DISPUTED)
        session.add(dispute)
        await session.flush()
        record_audit(
            session,
            action="dispute_opened",
            entity_type="dispute",
            entity_id=dispute.id,
            actor=user_address,
            details={"resolution_id": resolution_id, "evidence_count": len(dispute.evidence_urls)},
        )
        await session.commit()
    except InvalidTransitionError as exc:
        await session.rollback()
        raise StateConflictError(str(exc), current_status=exc.current) from exc
    except IntegrityError as exc:
        await session.rollback()
        raise StateConflictError("An active dispute already exists for this resolution") from exc

    logger.info("Dispute %s opened against resolution %s", dispute.id, resolution_id)
    return dispute

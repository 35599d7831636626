"""Public submission of market proposals."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.envelope import NotFoundError, RateLimitError, ValidationError, get_request_id, ok
from models.database import Candidate, Market, Proposal, get_db_session
from models.messages import CandidateMessage, ResolutionRules
from models.status import ProposalStatus
from services.ai_config import get_ai_config
from services.proposal_review import proposal_to_dict
from services.queue import queue_service
from services.rate_limits import check_propose_limit, record_propose
from utils.logger import get_logger
from utils.utcnow import to_iso, utcnow

logger = get_logger(__name__)
router = APIRouter(prefix="/propose", tags=["Proposals"])

USER_PROPOSAL_EVENT = "user_proposal"
WINDOW_ADJECTIVE = {"minute": "per-minute", "hour": "hourly", "day": "daily"}


class ProposeRequest(BaseModel):
    proposal_text: str = Field(..., min_length=10, max_length=500)
    category_hint: Optional[str] = None


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rules_summary(resolution: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not resolution:
        return None
    try:
        rules = ResolutionRules.from_stored(resolution)
    except PydanticValidationError:
        return None
    return {
        "exact_question": rules.exact_question,
        "expiry": rules.expiry,
        "must_meet_all": rules.must_meet_all,
        "must_not_count": rules.must_not_count,
        "sources": [source.name for source in rules.allowed_sources],
    }


@router.post("")
async def submit_proposal(
    body: ProposeRequest,
    request: Request,
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    identifier = client_identifier(request)
    config = await get_ai_config()
    now = utcnow()

    if body.category_hint and body.category_hint not in config.categories:
        raise ValidationError(
            f"category_hint must be one of: {', '.join(config.categories)}",
            details={"field": "category_hint"},
        )

    limit = await check_propose_limit(session, identifier, config, now)
    if not limit["allowed"]:
        window = limit["window"]
        logger.info("Proposal rate limited", identifier=identifier, window=window)
        raise RateLimitError(
            f"You have exceeded the {WINDOW_ADJECTIVE.get(window, window)} proposal limit",
            limit=limit["limit"],
            window=window,
            retry_after=limit["retry_after"],
        )

    proposal = Proposal(
        proposal_text=body.proposal_text.strip(),
        category_hint=body.category_hint,
        status=ProposalStatus.PENDING.value,
        ip_address=identifier,
        created_at=now,
    )
    session.add(proposal)
    await record_propose(session, identifier, now)
    await session.flush()

    candidate: Optional[Candidate] = None
    if queue_service.is_configured():
        candidate = Candidate(
            news_id=None,
            proposal_id=proposal.id,
            entities=[],
            event_type=USER_PROPOSAL_EVENT,
            category_hint=body.category_hint or "misc",
            relevant_text=proposal.proposal_text,
            created_at=now,
        )
        session.add(candidate)
    await session.commit()

    queued = False
    if candidate is not None:
        message = CandidateMessage(
            candidate_id=candidate.id,
            news_id=None,
            entities=[],
            event_type=USER_PROPOSAL_EVENT,
            category_hint=candidate.category_hint,
            relevant_text=candidate.relevant_text,
            proposal_id=proposal.id,
        )
        try:
            queued = await queue_service.publish_candidate(message)
        except Exception as exc:
            logger.error("Failed to queue proposal", proposal_id=proposal.id, error=str(exc))
        if not queued:
            logger.warning("Proposal saved but not queued", proposal_id=proposal.id)

    return ok(
        {
            "proposal_id": proposal.id,
            "status": proposal.status,
            "queued": queued,
            "created_at": to_iso(proposal.created_at),
            "message": "Proposal submitted for processing"
            if queued
            else "Proposal saved; processing will start when the pipeline is available",
        },
        request_id,
    )


@router.get("/{proposal_id}")
async def get_proposal_status(
    proposal_id: str,
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    row = (
        await session.execute(
            select(Proposal, Market)
            .outerjoin(Market, Market.id == Proposal.draft_market_id)
            .where(Proposal.id == proposal_id)
        )
    ).first()
    if row is None:
        raise NotFoundError(f"Proposal not found: {proposal_id}")
    proposal, market = row

    data = proposal_to_dict(proposal)
    data.pop("user_id", None)
    data["draft_market"] = (
        {
            "id": market.id,
            "title": market.title,
            "description": market.description,
            "category": market.category,
            "status": market.status,
            "confidence_score": market.confidence_score,
            "market_address": market.market_address,
        }
        if market is not None
        else None
    )
    data["rules_summary"] = rules_summary(market.resolution) if market is not None else None
    return ok(data, request_id)

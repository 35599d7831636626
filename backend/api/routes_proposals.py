"""Admin review of proposals parked as ``needs_human``."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.envelope import get_request_id, ok, service_errors
from config import settings
from models.database import get_db_session
from services.pagination import DEFAULT_LIMIT
from services.proposal_review import get_proposal_detail, list_proposals, review_proposal
from services.queue import queue_service

router = APIRouter(prefix="/proposals", tags=["Admin Proposals"])


class ProposalModifications(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=256)
    resolution: Optional[dict[str, Any]] = None


class ProposalReviewRequest(BaseModel):
    decision: str
    reason: Optional[str] = None
    modifications: Optional[ProposalModifications] = None


@router.get("")
async def get_proposals(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=DEFAULT_LIMIT),
    cursor: Optional[str] = Query(default=None),
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    with service_errors():
        page = await list_proposals(session, status=status, limit=limit, cursor=cursor)
    return ok(page, request_id)


@router.get("/{proposal_id}")
async def get_proposal(
    proposal_id: str,
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    with service_errors():
        detail = await get_proposal_detail(session, proposal_id)
    return ok(detail, request_id)


@router.post("/{proposal_id}/review")
async def post_proposal_review(
    proposal_id: str,
    body: ProposalReviewRequest,
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    modifications = (
        body.modifications.model_dump(exclude_none=True) if body.modifications else None
    )
    with service_errors():
        result = await review_proposal(
            session,
            proposal_id,
            decision=body.decision,
            reason=body.reason,
            actor=settings.ADMIN_ACTOR,
            modifications=modifications or None,
            request_id=request_id,
            publisher=queue_service,
        )
    return ok(result, request_id)

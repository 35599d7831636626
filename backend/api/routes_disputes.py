"""Admin adjudication of disputed resolutions."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.envelope import get_request_id, ok, service_errors
from config import settings
from models.database import get_db_session
from services.dispute_review import get_dispute_detail, list_disputes, review_dispute
from services.pagination import DEFAULT_LIMIT

router = APIRouter(prefix="/disputes", tags=["Admin Disputes"])


class DisputeReviewRequest(BaseModel):
    decision: str
    reason: Optional[str] = None
    new_result: Optional[str] = None


@router.get("")
async def get_disputes(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=DEFAULT_LIMIT),
    cursor: Optional[str] = Query(default=None),
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    with service_errors():
        page = await list_disputes(session, status=status, limit=limit, cursor=cursor)
    return ok(page, request_id)


@router.get("/{dispute_id}")
async def get_dispute(
    dispute_id: str,
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    with service_errors():
        detail = await get_dispute_detail(session, dispute_id)
    return ok(detail, request_id)


@router.post("/{dispute_id}/review")
async def post_dispute_review(
    dispute_id: str,
    body: DisputeReviewRequest,
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    with service_errors():
        result = await review_dispute(
            session,
            dispute_id,
            decision=body.decision,
            reason=body.reason,
            new_result=body.new_result,
            actor=settings.ADMIN_ACTOR,
        )
    return ok(result, request_id)

"""Public dispute intake for pending resolutions."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.envelope import RateLimitError, ValidationError, get_request_id, ok, service_errors
from models.database import get_db_session
from models.messages import DisputeMessage
from services.ai_config import get_ai_config
from services.dispute_review import dispute_to_dict, open_dispute
from services.evidence import is_https
from services.queue import queue_service
from services.rate_limits import DISPUTE_ENDPOINT, check_rate_limit, dispute_limits, record_request
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger(__name__)
router = APIRouter(prefix="/disputes", tags=["Disputes"])

MAX_EVIDENCE_URLS = 10


class OpenDisputeRequest(BaseModel):
    resolution_id: str = Field(..., min_length=1)
    user_address: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(..., min_length=10, max_length=2000)
    evidence_urls: list[str] = Field(default_factory=list, max_length=MAX_EVIDENCE_URLS)
    user_token_balance: Optional[dict[str, Any]] = None


@router.post("")
async def post_dispute(
    body: OpenDisputeRequest,
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    bad_urls = [url for url in body.evidence_urls if not is_https(url)]
    if bad_urls:
        raise ValidationError(
            "Only HTTPS evidence URLs are allowed",
            details={"field": "evidence_urls", "invalid": bad_urls},
        )

    config = await get_ai_config()
    now = utcnow()
    limits = dispute_limits(config)
    limit = await check_rate_limit(session, body.user_address, DISPUTE_ENDPOINT, limits, now)
    if not limit["allowed"]:
        window = limit["window"]
        raise RateLimitError(
            f"You have exceeded the {'hourly' if window == 'hour' else 'daily'} dispute limit",
            limit=limit["limit"],
            window=window,
            retry_after=limit["retry_after"],
        )

    # Counted in the same transaction as the dispute itself.
    await record_request(session, body.user_address, DISPUTE_ENDPOINT, limits.keys(), now)
    with service_errors():
        dispute = await open_dispute(
            session,
            resolution_id=body.resolution_id,
            user_address=body.user_address,
            reason=body.reason.strip(),
            evidence_urls=body.evidence_urls,
            user_token_balance=body.user_token_balance,
            now=now,
        )

    queued = False
    if queue_service.is_configured():
        try:
            queued = await queue_service.publish_dispute(DisputeMessage(dispute_id=dispute.id))
        except Exception as exc:
            logger.error("Failed to queue dispute", dispute_id=dispute.id, error=str(exc))
        if not queued:
            logger.warning("Dispute saved but not queued", dispute_id=dispute.id)

    return ok({**dispute_to_dict(dispute), "queued": queued}, request_id)

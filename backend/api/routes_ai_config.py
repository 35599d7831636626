"""Admin read/update of the hot-reloadable AI pipeline configuration."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.envelope import get_request_id, ok, service_errors
from config import settings
from models.database import get_db_session
from services.ai_config import read_ai_config, update_ai_config
from services.queue import queue_service
from utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/ai-config", tags=["Admin AI Config"])


async def _broadcast_refresh(keys: list[str]) -> bool:
    """Tell every worker process to drop its cached config."""
    if not queue_service.is_configured():
        return False
    try:
        accepted = await queue_service.publish_config_refresh(
            "all" if len(keys) != 1 else keys[0]
        )
    except Exception as exc:
        logger.warning("Config refresh broadcast failed", error=str(exc), keys=keys)
        return False
    if not accepted:
        logger.warning("Config refresh broadcast not accepted", keys=keys)
    return accepted


@router.get("")
async def get_ai_config_route(
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    return ok(await read_ai_config(session), request_id)


@router.patch("")
async def patch_ai_config(
    patch: dict[str, Any] = Body(...),
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    with service_errors():
        result = await update_ai_config(session, patch, actor=settings.ADMIN_ACTOR)
    result["broadcast"] = await _broadcast_refresh(result["updated"])
    return ok(result, request_id)

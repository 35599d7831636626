"""Worker enablement, heartbeat ingestion and health for the pipeline stages."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.envelope import ServiceUnavailableError, get_request_id, ok, service_errors
from config import settings
from models.database import get_db_session
from services.errors import EntityNotFoundError
from services.queue import queue_service
from services.worker_state import (
    HeartbeatReport,
    get_worker_config,
    record_heartbeat,
    set_worker_enabled,
    summarize_workers,
    worker_detail,
)
from utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/workers", tags=["Admin Workers"])


class WorkerEnabledPatch(BaseModel):
    enabled: bool


def _normalize_worker_name(raw: str) -> str:
    name = (raw or "").strip().lower().replace("_", "-")
    if name.endswith("-worker"):
        name = name[: -len("-worker")]
    return name


@router.get("")
async def get_workers(
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    return ok(await summarize_workers(session), request_id)


@router.get("/{worker_type}")
async def get_worker(
    worker_type: str,
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    with service_errors():
        detail = await worker_detail(session, _normalize_worker_name(worker_type))
    return ok(detail, request_id)


@router.patch("/{worker_type}")
async def patch_worker(
    worker_type: str,
    body: WorkerEnabledPatch,
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    with service_errors():
        result = await set_worker_enabled(
            session,
            _normalize_worker_name(worker_type),
            body.enabled,
            actor=settings.ADMIN_ACTOR,
        )
    return ok(result, request_id)


@router.post("/{worker_type}/heartbeat")
async def post_worker_heartbeat(
    worker_type: str,
    report: HeartbeatReport,
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    name = _normalize_worker_name(worker_type)
    enabled = await record_heartbeat(session, name, report)
    return ok({"worker_type": name, "instance_id": report.instance_id, "enabled": enabled}, request_id)


@router.get("/{worker_type}/queues")
async def get_worker_queues(
    worker_type: str,
    request_id: str = Depends(get_request_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Input queue and DLQ depth for a consuming stage."""
    name = _normalize_worker_name(worker_type)
    with service_errors():
        config = await get_worker_config(session, name)
        if config is None:
            raise EntityNotFoundError("worker", name)
    if not config.input_queue:
        return ok({"worker_type": name, "input_queue": None, "queue": None, "dlq": None}, request_id)
    if not queue_service.is_configured():
        raise ServiceUnavailableError("RABBITMQ_URL is not configured")
    try:
        stats = await queue_service.stage_stats(config.input_queue)
    except Exception as exc:
        logger.warning("Queue stats unavailable", worker_type=name, error=str(exc))
        raise ServiceUnavailableError(f"Queue stats unavailable: {exc}") from exc
    return ok({"worker_type": name, "input_queue": config.input_queue, **stats}, request_id)

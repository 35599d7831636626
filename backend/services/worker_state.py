"""DB-backed stage enablement and heartbeat-based health monitoring."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import WorkerConfig, WorkerHeartbeat, dialect_insert
from models.messages import QueueName
from models.status import ACTIVE_WORKER_STATUSES, WorkerStatus
from services.audit import record_audit
from services.errors import EntityNotFoundError
from utils.logger import get_logger
from utils.utcnow import to_iso, utcnow

logger = get_logger("worker_state")

HEALTH_WINDOW = timedelta(minutes=5)
METRICS_WINDOW = timedelta(hours=24)

# Pipeline order; also the seed set.
DEFAULT_WORKERS: tuple[dict[str, Any], ...] = (
    {
        "worker_type": "crawler",
        "display_name": "News Crawler",
        "description": "Polls RSS feeds for news articles",
        "poll_interval_ms": 900000,
        "input_queue": None,
        "output_queue": QueueName.NEWS_RAW.value,
    },
    {
        "worker_type": "extractor",
        "display_name": "Entity Extractor",
        "description": "Extracts market candidates from news",
        "input_queue": QueueName.NEWS_RAW.value,
        "output_queue": QueueName.CANDIDATES.value,
    },
    {
        "worker_type": "generator",
        "display_name": "Market Generator",
        "description": "Generates draft markets using AI",
        "input_queue": QueueName.CANDIDATES.value,
        "output_queue": QueueName.DRAFTS_VALIDATE.value,
    },
    {
        "worker_type": "validator",
        "display_name": "Market Validator",
        "description": "Validates draft markets for quality",
        "input_queue": QueueName.DRAFTS_VALIDATE.value,
        "output_queue": QueueName.MARKETS_PUBLISH.value,
    },
    {
        "worker_type": "publisher",
        "display_name": "Blockchain Publisher",
        "description": "Publishes markets on-chain",
        "input_queue": QueueName.MARKETS_PUBLISH.value,
        "output_queue": None,
    },
    {
        "worker_type": "scheduler",
        "display_name": "Task Scheduler",
        "description": "Runs scheduled maintenance tasks",
        "input_queue": None,
        "output_queue": QueueName.MARKETS_RESOLVE.value,
    },
    {
        "worker_type": "resolver",
        "display_name": "Market Resolver",
        "description": "Resolves market outcomes",
        "input_queue": QueueName.MARKETS_RESOLVE.value,
        "output_queue": None,
    },
    {
        "worker_type": "dispute-agent",
        "display_name": "Dispute Agent",
        "description": "Handles disputed resolutions",
        "input_queue": QueueName.DISPUTES.value,
        "output_queue": None,
    },
)
WORKER_ORDER: dict[str, int] = {w["worker_type"]: i for i, w in enumerate(DEFAULT_WORKERS)}


class HeartbeatReport(BaseModel):
    """One liveness report; counters are deltas since the previous report."""

    instance_id: str = Field(..., min_length=1, max_length=64)
    status: WorkerStatus
    messages_processed: int = Field(0, ge=0)
    messages_failed: int = Field(0, ge=0)
    current_queue_size: Optional[int] = Field(None, ge=0)
    last_error: Optional[str] = None
    hostname: Optional[str] = None
    pid: Optional[int] = None


def _config_dict(row: WorkerConfig) -> dict[str, Any]:
    return {
        "id": row.id,
        "worker_type": row.worker_type,
        "display_name": row.display_name,
        "description": row.description,
        "enabled": bool(row.enabled),
        "poll_interval_ms": row.poll_interval_ms,
        "cron_expression": row.cron_expression,
        "input_queue": row.input_queue,
        "output_queue": row.output_queue,
        "created_at": to_iso(row.created_at),
        "updated_at": to_iso(row.updated_at),
    }


def _heartbeat_dict(row: WorkerHeartbeat) -> dict[str, Any]:
    return {
        "id": row.id,
        "worker_type": row.worker_type,
        "worker_instance_id": row.worker_instance_id,
        "status": row.status,
        "last_heartbeat": to_iso(row.last_heartbeat),
        "messages_processed": int(row.messages_processed or 0),
        "messages_failed": int(row.messages_failed or 0),
        "current_queue_size": row.current_queue_size,
        "last_error": row.last_error,
        "last_error_at": to_iso(row.last_error_at),
        "consecutive_errors": int(row.consecutive_errors or 0),
        "hostname": row.hostname,
        "pid": row.pid,
        "started_at": to_iso(row.started_at),
    }


async def seed_worker_configs(session: AsyncSession) -> int:
    """Insert any missing stage rows; existing rows are left untouched."""
    result = await session.execute(select(WorkerConfig.worker_type))
    existing = set(result.scalars().all())
    created = 0
    for defaults in DEFAULT_WORKERS:
        if defaults["worker_type"] in existing:
            continue
        session.add(WorkerConfig(enabled=True, **defaults))
        created += 1
    if created:
        await session.commit()
    return created


async def list_worker_configs(session: AsyncSession) -> list[WorkerConfig]:
    result = await session.execute(select(WorkerConfig))
    rows = list(result.scalars().all())
    rows.sort(key=lambda r: (WORKER_ORDER.get(r.worker_type, len(WORKER_ORDER)), r.worker_type))
    return rows


async def get_worker_config(session: AsyncSession, worker_type: str) -> Optional[WorkerConfig]:
    result = await session.execute(
        select(WorkerConfig).where(WorkerConfig.worker_type == worker_type)
    )
    return result.scalar_one_or_none()


async def is_worker_enabled(session: AsyncSession, worker_type: str) -> bool:
    """Unknown stages report enabled so an unseeded worker keeps running."""
    enabled = await session.scalar(
        select(WorkerConfig.enabled).where(WorkerConfig.worker_type == worker_type)
    )
    return True if enabled is None else bool(enabled)


async def set_worker_enabled(
    session: AsyncSession, worker_type: str, enabled: bool, *, actor: str
) -> dict[str, Any]:
    row = await get_worker_config(session, worker_type)
    if row is None:
        raise EntityNotFoundError("worker", worker_type)

    await session.execute(
        update(WorkerConfig)
        .where(WorkerConfig.id == row.id)
        .values(enabled=bool(enabled), updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    record_audit(
        session,
        action="worker_enabled" if enabled else "worker_disabled",
        entity_type="worker_config",
        entity_id=row.id,
        actor=actor,
        details={"worker_type": worker_type, "enabled": bool(enabled)},
    )
    await session.commit()
    await session.refresh(row)
    logger.info("Worker enablement changed", worker_type=worker_type, enabled=bool(enabled))
    return {
        **_config_dict(row),
        "message": f"Worker '{worker_type}' {'enabled' if enabled else 'disabled'}",
    }


async def record_heartbeat(
    session: AsyncSession,
    worker_type: str,
    report: HeartbeatReport,
    now: Optional[datetime] = None,
) -> bool:
    """Upsert one instance's heartbeat; returns whether the stage is enabled.

    Counters are added in the UPDATE itself so concurrent reports from many
    instances never lose increments.
    """
    now = now or utcnow()
    is_error = report.status == WorkerStatus.ERROR

    stmt = dialect_insert(session, WorkerHeartbeat).values(
        worker_type=worker_type,
        worker_instance_id=report.instance_id,
        status=report.status.value,
        last_heartbeat=now,
        messages_processed=report.messages_processed,
        messages_failed=report.messages_failed,
        current_queue_size=report.current_queue_size,
        last_error=report.last_error,
        last_error_at=now if report.last_error else None,
        consecutive_errors=1 if is_error else 0,
        hostname=report.hostname,
        pid=report.pid,
        started_at=now,
    )
    set_: dict[str, Any] = {
        "status": report.status.value,
        "last_heartbeat": now,
        "messages_processed": WorkerHeartbeat.messages_processed + report.messages_processed,
        "messages_failed": WorkerHeartbeat.messages_failed + report.messages_failed,
        "current_queue_size": report.current_queue_size,
        "last_error": func.coalesce(stmt.excluded.last_error, WorkerHeartbeat.last_error),
        "consecutive_errors": (WorkerHeartbeat.consecutive_errors + 1) if is_error else 0,
        "hostname": func.coalesce(stmt.excluded.hostname, WorkerHeartbeat.hostname),
        "pid": func.coalesce(stmt.excluded.pid, WorkerHeartbeat.pid),
    }
    if report.last_error:
        set_["last_error_at"] = now
    stmt = stmt.on_conflict_do_update(
        index_elements=["worker_type", "worker_instance_id"],
        set_=set_,
    )
    await session.execute(stmt)
    await session.commit()

    return await is_worker_enabled(session, worker_type)


def health_reason(enabled: bool, active_instances: int) -> str:
    if not enabled:
        return "disabled"
    if active_instances > 0:
        return "active_instances"
    return "no_active_instances"


def _status_view(
    config: WorkerConfig, recent: list[WorkerHeartbeat]
) -> dict[str, Any]:
    active_values = {s.value for s in ACTIVE_WORKER_STATUSES}
    active = sum(1 for hb in recent if hb.status in active_values)
    reason = health_reason(bool(config.enabled), active)
    return {
        **_config_dict(config),
        "heartbeats": [_heartbeat_dict(hb) for hb in recent],
        "is_healthy": reason != "no_active_instances",
        "health_reason": reason,
        "active_instances": active,
    }


async def _heartbeats_since(
    session: AsyncSession, since: datetime, worker_type: Optional[str] = None
) -> list[WorkerHeartbeat]:
    query = select(WorkerHeartbeat).where(WorkerHeartbeat.last_heartbeat > since)
    if worker_type is not None:
        query = query.where(WorkerHeartbeat.worker_type == worker_type)
    query = query.order_by(WorkerHeartbeat.worker_type, WorkerHeartbeat.last_heartbeat.desc())
    result = await session.execute(query)
    return list(result.scalars().all())


async def summarize_workers(
    session: AsyncSession, now: Optional[datetime] = None
) -> dict[str, Any]:
    now = now or utcnow()
    configs = await list_worker_configs(session)
    by_type: dict[str, list[WorkerHeartbeat]] = {}
    for hb in await _heartbeats_since(session, now - HEALTH_WINDOW):
        by_type.setdefault(hb.worker_type, []).append(hb)

    workers = [_status_view(cfg, by_type.get(cfg.worker_type, [])) for cfg in configs]
    return {
        "workers": workers,
        "summary": {
            "total": len(workers),
            "enabled": sum(1 for w in workers if w["enabled"]),
            "healthy": sum(1 for w in workers if w["is_healthy"]),
            "unhealthy": sum(1 for w in workers if not w["is_healthy"]),
        },
    }


def success_rate(processed: int, failed: int) -> str:
    if processed <= 0:
        return "N/A"
    return f"{(processed - failed) / processed * 100:.2f}%"


async def worker_detail(
    session: AsyncSession, worker_type: str, now: Optional[datetime] = None
) -> dict[str, Any]:
    now = now or utcnow()
    config = await get_worker_config(session, worker_type)
    if config is None:
        raise EntityNotFoundError("worker", worker_type)

    day = await _heartbeats_since(session, now - METRICS_WINDOW, worker_type)
    recent_cutoff = now - HEALTH_WINDOW
    recent = [hb for hb in day if hb.last_heartbeat > recent_cutoff]

    processed = sum(int(hb.messages_processed or 0) for hb in day)
    failed = sum(int(hb.messages_failed or 0) for hb in day)
    return {
        **_status_view(config, recent),
        "metrics": {
            "total_processed_24h": processed,
            "total_failed_24h": failed,
            "success_rate": success_rate(processed, failed),
        },
    }

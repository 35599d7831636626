"""Append-only audit trail.

``record_audit`` only adds the row to the caller's session; it commits together
with the state change it describes, so an action and its audit entry either
both land or neither does.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.database import AuditLog
from utils.utcnow import utcnow


def record_audit(
    session: AsyncSession,
    *,
    action: str,
    entity_type: str,
    entity_id: str,
    actor: str,
    details: Optional[dict[str, Any]] = None,
    ai_version: Optional[str] = None,
    llm_request_id: Optional[str] = None,
) -> AuditLog:
    row = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        actor=actor,
        details=dict(details or {}),
        ai_version=ai_version,
        llm_request_id=llm_request_id,
        created_at=utcnow(),
    )
    session.add(row)
    return row

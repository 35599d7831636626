"""Opaque keyset cursors over ``(created_at, id)``, newest first."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_

from services.errors import RequestValidationError
from utils.utcnow import parse_iso, to_iso

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def clamp_limit(limit: Optional[int]) -> int:
    if not limit or limit < 1:
        return DEFAULT_LIMIT
    return min(int(limit), MAX_LIMIT)


def encode_cursor(created_at: datetime, row_id: str) -> str:
    raw = f"{to_iso(created_at)}|{row_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        stamp, row_id = raw.split("|", 1)
        created_at = parse_iso(stamp)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise RequestValidationError("Invalid cursor", field="cursor") from exc
    if created_at is None or not row_id:
        raise RequestValidationError("Invalid cursor", field="cursor")
    return created_at, row_id


def after_cursor(model, cursor: Optional[str]):
    """WHERE clause selecting rows strictly after ``cursor`` in newest-first order."""
    if not cursor:
        return None
    created_at, row_id = decode_cursor(cursor)
    return or_(
        model.created_at < created_at,
        and_(model.created_at == created_at, model.id < row_id),
    )

"""Hot-reloadable pipeline configuration.

The ``ai_config`` table holds one row per overridden field. Readers get a typed
``AIConfig`` built by layering those rows over compiled-in defaults; a missing,
unknown or invalid row never turns into a read error, it just leaves the
default in place.

``AIConfigCache`` keeps the merged value for a TTL (5 minutes by default) and
takes an injectable clock so expiry can be driven from tests. A failed reload
is logged and answered with the defaults; the failure is not cached, so the
next call tries the store again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import threading
import time
import uuid
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import AIConfigEntry
from services.audit import record_audit
from services.errors import ConfigValidationError, RequestValidationError
from utils.utcnow import to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: tuple[str, ...] = (
    "politics",
    "product_launch",
    "finance",
    "sports",
    "entertainment",
    "technology",
    "misc",
)
ALLOWED_LLM_MODELS: tuple[str, ...] = (
    "gpt-3.5-turbo",
    "gpt-4",
    "gpt-4-turbo",
    "gpt-4o",
    "gpt-4o-mini",
)
_JSON_SCALAR_RE = re.compile(r"^-?\d+(\.\d+)?([eE][+-]?\d+)?$")


class RateLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    propose_per_minute: int = Field(5, ge=0)
    propose_per_hour: int = Field(20, ge=0)
    propose_per_day: int = Field(50, ge=0)
    dispute_per_hour: int = Field(3, ge=0)
    dispute_per_day: int = Field(10, ge=0)
    auto_publish_per_hour: int = Field(3, ge=0)


class AIConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    ai_version: str = "v1.0"
    llm_model: str = "gpt-4o-mini"
    validation_confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)
    categories: tuple[str, ...] = DEFAULT_CATEGORIES
    rate_limits: RateLimits = Field(default_factory=RateLimits)
    dispute_window_hours: int = Field(24, ge=1, le=168)
    max_retries: int = Field(3, ge=0, le=10)
    processing_delay_ms: int = Field(60000, ge=0, le=600000)

    @field_validator("llm_model")
    @classmethod
    def _known_model(cls, value: str) -> str:
        if value not in ALLOWED_LLM_MODELS:
            raise ValueError(f"llm_model must be one of: {', '.join(ALLOWED_LLM_MODELS)}")
        return value


CONFIG_KEYS: tuple[str, ...] = tuple(AIConfig.model_fields)
RATE_LIMIT_KEYS: tuple[str, ...] = tuple(RateLimits.model_fields)


def parse_config_value(raw: Any) -> Any:
    """Decode a stored value: JSON when it looks like JSON, else the raw scalar."""
    if not isinstance(raw, str):
        return raw
    text = raw.strip()
    if not text:
        return raw
    looks_like_json = (
        text[0] in "{[\""
        or text in ("true", "false", "null")
        or _JSON_SCALAR_RE.match(text) is not None
    )
    if not looks_like_json:
        return raw
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return raw


def apply_overrides(base: AIConfig, overrides: Mapping[str, Any]) -> AIConfig:
    """Layer stored key/value overrides over ``base``, one field at a time."""
    data = base.model_dump()
    for key, raw in overrides.items():
        if key not in CONFIG_KEYS:
            logger.debug("Ignoring unknown ai_config key %s", key)
            continue
        value = parse_config_value(raw)
        if key == "rate_limits":
            if not isinstance(value, Mapping):
                logger.warning("Ignoring non-object rate_limits override")
                continue
            value = {
                **data["rate_limits"],
                **{k: v for k, v in value.items() if k in RATE_LIMIT_KEYS},
            }
        try:
            trial = AIConfig.model_validate({**data, key: value})
        except ValidationError as exc:
            logger.warning(
                "Ignoring invalid ai_config override for %s: %s", key, exc.errors()[0]["msg"]
            )
            continue
        data = trial.model_dump()
    return AIConfig.model_validate(data)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_range(key: str, value: Any, low: float, high: float, message: str) -> None:
    if not _is_number(value) or not math.isfinite(value) or value < low or value > high:
        raise ConfigValidationError(key, message, value)


def validate_config_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    """Validate every key of an admin patch; the first bad field raises.

    Returns the values to persist. Nothing is written until the whole patch
    has passed.
    """
    validated: dict[str, Any] = {}
    for key, value in patch.items():
        if value is None:
            continue
        if key not in CONFIG_KEYS:
            raise ConfigValidationError(key, f"Unknown configuration key '{key}'", value)

        if key == "validation_confidence_threshold":
            _check_range(key, value, 0, 1, "validation_confidence_threshold must be between 0 and 1")
        elif key == "dispute_window_hours":
            _check_range(key, value, 1, 168, "dispute_window_hours must be between 1 and 168")
        elif key == "processing_delay_ms":
            _check_range(
                key,
                value,
                0,
                600000,
                "processing_delay_ms must be between 0 and 600000 (10 minutes)",
            )
        elif key == "llm_model":
            if value not in ALLOWED_LLM_MODELS:
                raise ConfigValidationError(
                    key, f"llm_model must be one of: {', '.join(ALLOWED_LLM_MODELS)}", value
                )
        elif key == "max_retries":
            if not _is_int(value) or not 0 <= value <= 10:
                raise ConfigValidationError(key, "max_retries must be an integer between 0 and 10", value)
        elif key == "ai_version":
            if not isinstance(value, str) or not value.strip():
                raise ConfigValidationError(key, "ai_version must be a non-empty string", value)
        elif key == "categories":
            if (
                not isinstance(value, list)
                or not value
                or not all(isinstance(c, str) and c.strip() for c in value)
            ):
                raise ConfigValidationError(
                    key, "categories must be a non-empty list of strings", value
                )
        elif key == "rate_limits":
            if not isinstance(value, Mapping):
                raise ConfigValidationError(key, "rate_limits must be an object", value)
            for limit_key, limit_value in value.items():
                field = f"rate_limits.{limit_key}"
                if limit_key not in RATE_LIMIT_KEYS:
                    raise ConfigValidationError(field, f"Unknown rate limit '{limit_key}'", limit_value)
                if not _is_int(limit_value) or limit_value < 0:
                    raise ConfigValidationError(
                        field, f"{field} must be a non-negative integer", limit_value
                    )

        validated[key] = value
    return validated


# ==================== CACHE ====================


ConfigLoader = Callable[[], Awaitable[Mapping[str, Any]]]


async def load_config_rows() -> dict[str, Any]:
    """Read every override row from the store."""
    from models.database import AsyncSessionLocal

    async with AsyncSessionLocal() as session:
        return await read_config_rows(session)


async def read_config_rows(session: AsyncSession) -> dict[str, Any]:
    result = await session.execute(select(AIConfigEntry.key, AIConfigEntry.value))
    return {key: value for key, value in result.all()}


class AIConfigCache:
    """Process-local cached ``AIConfig`` with explicit refresh/invalidate."""

    def __init__(
        self,
        loader: Optional[ConfigLoader] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader or load_config_rows
        self._ttl = float(
            ttl_seconds if ttl_seconds is not None else settings.CONFIG_CACHE_TTL_SECONDS
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._reload_lock: Optional[asyncio.Lock] = None
        self._value: Optional[AIConfig] = None
        self._loaded_at: Optional[float] = None

    def _fresh_value(self) -> Optional[AIConfig]:
        with self._lock:
            if self._value is None or self._loaded_at is None:
                return None
            if self._clock() - self._loaded_at >= self._ttl:
                return None
            return self._value

    def is_fresh(self) -> bool:
        return self._fresh_value() is not None

    async def get(self) -> AIConfig:
        cached = self._fresh_value()
        if cached is not None:
            return cached
        return await self.refresh(force=False)

    async def refresh(self, force: bool = True) -> AIConfig:
        """Reload from the store; on failure serve defaults without caching them."""
        if self._reload_lock is None:
            self._reload_lock = asyncio.Lock()
        async with self._reload_lock:
            if not force:
                cached = self._fresh_value()
                if cached is not None:
                    return cached
            try:
                rows = await self._loader()
                value = apply_overrides(AIConfig(), rows)
            except Exception as exc:
                logger.error("Failed to load AI config, serving defaults: %s", exc)
                return AIConfig()
            with self._lock:
                self._value = value
                self._loaded_at = self._clock()
            return value

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None


ai_config_cache = AIConfigCache()


async def get_ai_config() -> AIConfig:
    return await ai_config_cache.get()


# ==================== ADMIN READ / WRITE ====================


async def read_ai_config(session: AsyncSession) -> dict[str, Any]:
    """Effective config plus per-key override metadata, read straight from the store."""
    result = await session.execute(select(AIConfigEntry).order_by(AIConfigEntry.key))
    rows = list(result.scalars().all())
    overrides = {row.key: row.value for row in rows}
    effective = apply_overrides(AIConfig(), overrides)
    return {
        "config": effective.model_dump(mode="json"),
        "overrides": overrides,
        "metadata": {
            row.key: {"updated_at": to_iso(row.updated_at), "updated_by": row.updated_by}
            for row in rows
        },
    }


async def update_ai_config(
    session: AsyncSession,
    patch: Mapping[str, Any],
    *,
    actor: str,
    cache: Optional[AIConfigCache] = None,
) -> dict[str, Any]:
    """Validate and persist an admin patch in one transaction.

    Writes every changed key plus a single ``config_update`` audit row, then
    invalidates ``cache`` (the module cache by default).
    """
    validated = validate_config_patch(patch)
    if not validated:
        raise RequestValidationError("No updates provided")

    now = utcnow()
    existing = await session.execute(
        select(AIConfigEntry).where(AIConfigEntry.key.in_(list(validated)))
    )
    rows = {row.key: row for row in existing.scalars().all()}

    try:
        for key, value in validated.items():
            row = rows.get(key)
            if row is None:
                session.add(AIConfigEntry(key=key, value=value, updated_at=now, updated_by=actor))
            else:
                row.value = value
                row.updated_at = now
                row.updated_by = actor

        record_audit(
            session,
            action="config_update",
            entity_type="ai_config",
            entity_id=str(uuid.uuid4()),
            actor=actor,
            details={"updated_keys": list(validated), "values": dict(validated)},
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    (cache or ai_config_cache).invalidate()
    logger.info("AI config updated by %s: %s", actor, ", ".join(validated))
    return {"updated": list(validated), "config": dict(validated)}

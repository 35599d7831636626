import sys
from pathlib import Path

import pytest
from sqlalchemy import func, select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import AIConfigEntry, AuditLog
from services.ai_config import (
    AIConfig,
    AIConfigCache,
    apply_overrides,
    parse_config_value,
    read_ai_config,
    update_ai_config,
    validate_config_patch,
)
from services.errors import ConfigValidationError, RequestValidationError


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_defaults():
    config = AIConfig()
    assert config.llm_model == "gpt-4o-mini"
    assert config.validation_confidence_threshold == 0.7
    assert config.dispute_window_hours == 24
    assert config.rate_limits.propose_per_minute == 5
    assert config.rate_limits.auto_publish_per_hour == 3
    assert "misc" in config.categories


def test_parse_config_value_decodes_json_text():
    assert parse_config_value("0.85") == 0.85
    assert parse_config_value('["a", "b"]') == ["a", "b"]
    assert parse_config_value("true") is True
    assert parse_config_value("gpt-4o") == "gpt-4o"
    assert parse_config_value(12) == 12


def test_apply_overrides_skips_invalid_and_unknown_rows():
    config = apply_overrides(
        AIConfig(),
        {
            "validation_confidence_threshold": "0.85",
            "dispute_window_hours": 500,
            "llm_model": "not-a-model",
            "mystery_key": 1,
            "rate_limits": {"propose_per_minute": 2, "bogus": 9},
        },
    )
    assert config.validation_confidence_threshold == 0.85
    assert config.dispute_window_hours == 24
    assert config.llm_model == "gpt-4o-mini"
    assert config.rate_limits.propose_per_minute == 2
    assert config.rate_limits.propose_per_hour == 20


def test_validate_patch_rejects_out_of_range_threshold():
    with pytest.raises(ConfigValidationError) as exc_info:
        validate_config_patch({"dispute_window_hours": 12, "validation_confidence_threshold": 1.5})
    assert exc_info.value.field == "validation_confidence_threshold"


@pytest.mark.parametrize(
    "key,value",
    [
        ("validation_confidence_threshold", float("nan")),
        ("validation_confidence_threshold", float("inf")),
        ("dispute_window_hours", float("nan")),
        ("processing_delay_ms", float("-inf")),
    ],
)
def test_validate_patch_rejects_non_finite_numbers(key, value):
    with pytest.raises(ConfigValidationError) as exc_info:
        validate_config_patch({key: value})
    assert exc_info.value.field == key


def test_validate_patch_checks_nested_rate_limits():
    with pytest.raises(ConfigValidationError) as exc_info:
        validate_config_patch({"rate_limits": {"propose_per_hour": -1}})
    assert exc_info.value.field == "rate_limits.propose_per_hour"


@pytest.mark.asyncio
async def test_cache_serves_value_until_ttl_expires():
    clock = FakeClock()
    rows = {"validation_confidence_threshold": 0.8}
    loads = []

    async def loader():
        loads.append(1)
        return dict(rows)

    cache = AIConfigCache(loader=loader, ttl_seconds=300, clock=clock)

    assert (await cache.get()).validation_confidence_threshold == 0.8
    rows["validation_confidence_threshold"] = 0.9
    clock.now += 299
    assert (await cache.get()).validation_confidence_threshold == 0.8
    clock.now += 1
    assert (await cache.get()).validation_confidence_threshold == 0.9
    assert len(loads) == 2


@pytest.mark.asyncio
async def test_cache_invalidate_forces_reload():
    rows = {"dispute_window_hours": 48}

    async def loader():
        return dict(rows)

    cache = AIConfigCache(loader=loader, ttl_seconds=300, clock=FakeClock())
    assert (await cache.get()).dispute_window_hours == 48

    rows["dispute_window_hours"] = 72
    cache.invalidate()
    assert cache.is_fresh() is False
    assert (await cache.get()).dispute_window_hours == 72


@pytest.mark.asyncio
async def test_cache_load_failure_serves_defaults_without_caching():
    calls = {"n": 0}

    async def loader():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("database unavailable")
        return {"max_retries": 5}

    cache = AIConfigCache(loader=loader, ttl_seconds=300, clock=FakeClock())

    assert await cache.get() == AIConfig()
    assert cache.is_fresh() is False
    assert (await cache.get()).max_retries == 5


@pytest.mark.asyncio
async def test_update_writes_rows_audit_and_invalidates(db_session):
    async def loader():
        return {}

    cache = AIConfigCache(loader=loader, ttl_seconds=300, clock=FakeClock())
    await cache.get()
    assert cache.is_fresh()

    result = await update_ai_config(
        db_session,
        {"validation_confidence_threshold": 0.8, "dispute_window_hours": 48},
        actor="admin",
        cache=cache,
    )

    assert sorted(result["updated"]) == ["dispute_window_hours", "validation_confidence_threshold"]
    assert cache.is_fresh() is False

    stored = await read_ai_config(db_session)
    assert stored["config"]["validation_confidence_threshold"] == 0.8
    assert stored["config"]["dispute_window_hours"] == 48
    assert stored["metadata"]["dispute_window_hours"]["updated_by"] == "admin"

    audit = (
        await db_session.execute(select(AuditLog).where(AuditLog.action == "config_update"))
    ).scalar_one()
    assert audit.actor == "admin"
    assert sorted(audit.details["updated_keys"]) == [
        "dispute_window_hours",
        "validation_confidence_threshold",
    ]


@pytest.mark.asyncio
async def test_update_overwrites_existing_row(db_session):
    await update_ai_config(db_session, {"max_retries": 2}, actor="admin")
    await update_ai_config(db_session, {"max_retries": 4}, actor="ops")

    rows = (await db_session.execute(select(AIConfigEntry))).scalars().all()
    assert len(rows) == 1
    assert rows[0].value == 4
    assert rows[0].updated_by == "ops"


@pytest.mark.asyncio
async def test_rejected_patch_writes_nothing(db_session):
    with pytest.raises(ConfigValidationError):
        await update_ai_config(
            db_session,
            {"dispute_window_hours": 12, "validation_confidence_threshold": 1.5},
            actor="admin",
        )

    assert await db_session.scalar(select(func.count(AIConfigEntry.id))) == 0
    assert await db_session.scalar(select(func.count(AuditLog.id))) == 0


@pytest.mark.asyncio
async def test_nan_threshold_is_never_stored(db_session):
    with pytest.raises(ConfigValidationError):
        await update_ai_config(
            db_session, {"validation_confidence_threshold": float("nan")}, actor="admin"
        )

    assert await db_session.scalar(select(func.count(AIConfigEntry.id))) == 0
    assert (await read_ai_config(db_session)).validation_confidence_threshold == 0.7


@pytest.mark.asyncio
async def test_empty_patch_is_rejected(db_session):
    with pytest.raises(RequestValidationError):
        await update_ai_config(db_session, {}, actor="admin")

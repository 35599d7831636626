from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from contextlib import contextmanager
from pathlib import Path
import logging
import os
import uuid

from config import settings
from models.status import (
    DisputeStatus,
    MarketStatus,
    NewsStatus,
    ProposalStatus,
    ResolutionStatus,
    WorkerStatus,
)
from models.types import ConfidenceScore
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


# ==================== INGESTION ====================


class NewsItem(Base):
    """Raw article pulled by the crawler, deduplicated on content hash."""

    __tablename__ = "news_items"

    id = Column(String, primary_key=True, default=new_id)
    source = Column(String(64), nullable=False)
    source_url = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    published_at = Column(DateTime, nullable=False)
    status = Column(String(32), nullable=False, default=NewsStatus.INGESTED.value)
    extracted_entities = Column(JSON, nullable=True)
    event_type = Column(String(64), nullable=True)
    content_hash = Column(String(64), nullable=False, unique=True)
    ingested_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_news_items_status", "status"),)


class Candidate(Base):
    """Market-worthy event extracted from news or a user proposal."""

    __tablename__ = "candidates"

    id = Column(String, primary_key=True, default=new_id)
    news_id = Column(String, ForeignKey("news_items.id"), nullable=True)
    proposal_id = Column(String, nullable=True)
    entities = Column(JSON, default=list, nullable=False)
    event_type = Column(String(64), nullable=False)
    category_hint = Column(String(32), nullable=False)
    relevant_text = Column(Text, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)
    draft_market_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_candidates_processed", "processed"),
        Index("idx_candidates_news_id", "news_id"),
    )


# ==================== MARKETS ====================


class Market(Base):
    """AI-authored market metadata; on-chain state is owned by the chain client."""

    __tablename__ = "ai_markets"

    id = Column(String, primary_key=True, default=new_id)
    chain_id = Column(String(32), nullable=False, default=lambda: settings.CHAIN_ID)
    market_address = Column(String(64), nullable=True)

    title = Column(String(256), nullable=False)
    description = Column(Text, nullable=False, default="")
    category = Column(String(32), nullable=False)
    image_url = Column(Text, nullable=True)

    ai_version = Column(String(64), nullable=False, default="v1.0")
    confidence_score = Column(ConfidenceScore, nullable=False, default=0)
    source_news_id = Column(String, ForeignKey("news_items.id"), nullable=True)
    # NULL marks an AI-originated market (subject to auto-publish limits).
    source_proposal_id = Column(String, nullable=True)

    resolution = Column(JSON, nullable=False)
    status = Column(String(32), nullable=False, default=MarketStatus.DRAFT.value)
    validation_decision = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    published_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    finalized_at = Column(DateTime, nullable=True)
    created_by = Column(String(64), nullable=False, default="generator")

    __table_args__ = (
        Index("idx_ai_markets_status", "status"),
        Index("idx_ai_markets_category", "category"),
        Index("idx_ai_markets_market_address", "market_address"),
        Index("idx_ai_markets_created_at", "created_at"),
        Index("idx_ai_markets_auto_publish", "source_proposal_id", "published_at"),
    )


class Proposal(Base):
    """User-submitted market idea awaiting AI drafting and, possibly, review."""

    __tablename__ = "proposals"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=True)
    proposal_text = Column(Text, nullable=False)
    category_hint = Column(String(32), nullable=True)
    status = Column(String(32), nullable=False, default=ProposalStatus.PENDING.value)
    draft_market_id = Column(String, ForeignKey("ai_markets.id"), nullable=True)
    confidence_score = Column(ConfidenceScore, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_proposals_status", "status"),
        Index("idx_proposals_created_at", "created_at"),
    )


class Resolution(Base):
    """Outcome record; exactly one per market."""

    __tablename__ = "resolutions"

    id = Column(String, primary_key=True, default=new_id)
    market_id = Column(String, ForeignKey("ai_markets.id"), nullable=False, unique=True)
    market_address = Column(String(64), nullable=True)

    final_result = Column(String(3), nullable=False)
    resolution_source = Column(Text, nullable=False, default="")
    evidence_hash = Column(String(64), nullable=False, default="")
    evidence_raw = Column(Text, nullable=False, default="")
    must_meet_all_results = Column(JSON, nullable=False, default=list)
    must_not_count_results = Column(JSON, nullable=False, default=list)

    status = Column(String(32), nullable=False, default=ResolutionStatus.PENDING.value)
    resolved_by = Column(String(64), nullable=False, default="resolver")
    resolved_at = Column(DateTime, default=utcnow, nullable=False)
    tx_signature = Column(String(128), nullable=True)
    dispute_window_ends = Column(DateTime, nullable=False)
    finalized_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_resolutions_status", "status"),
        Index("idx_resolutions_dispute_window", "dispute_window_ends"),
    )


_ACTIVE_DISPUTE_PREDICATE = text(
    "status IN ('"
    + "', '".join(
        s.value
        for s in (DisputeStatus.PENDING, DisputeStatus.ESCALATED, DisputeStatus.REVIEWING)
    )
    + "')"
)


class Dispute(Base):
    """User contest of a resolution inside its dispute window."""

    __tablename__ = "disputes"

    id = Column(String, primary_key=True, default=new_id)
    resolution_id = Column(String, ForeignKey("resolutions.id"), nullable=False)
    market_address = Column(String(64), nullable=True)
    user_address = Column(String(64), nullable=False)
    user_token_balance = Column(JSON, nullable=False, default=dict)
    reason = Column(Text, nullable=False)
    evidence_urls = Column(JSON, nullable=False, default=list)
    status = Column(String(32), nullable=False, default=DisputeStatus.PENDING.value)
    ai_review = Column(JSON, nullable=True)
    admin_review = Column(JSON, nullable=True)
    new_result = Column(String(3), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_disputes_status", "status"),
        Index("idx_disputes_resolution_id", "resolution_id"),
        # At most one non-terminal dispute per resolution.
        Index(
            "uq_disputes_active_resolution",
            "resolution_id",
            unique=True,
            sqlite_where=_ACTIVE_DISPUTE_PREDICATE,
            postgresql_where=_ACTIVE_DISPUTE_PREDICATE,
        ),
    )


# ==================== AUDIT / CONFIG ====================


class AuditLog(Base):
    """Append-only record of every state-changing action."""

    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_id)
    action = Column(String(64), nullable=False)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String, nullable=False)
    actor = Column(String(64), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    ai_version = Column(String(64), nullable=True)
    llm_request_id = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_audit_logs_action", "action"),
        Index("idx_audit_logs_entity", "entity_type", "entity_id"),
        Index("idx_audit_logs_created_at", "created_at"),
    )


class AIConfigEntry(Base):
    """Key/value row overriding one AIConfig field."""

    __tablename__ = "ai_config"

    id = Column(String, primary_key=True, default=new_id)
    key = Column(String(64), nullable=False, unique=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    updated_by = Column(String(64), nullable=False, default="system")


class RateLimitEntry(Base):
    """Counter bucket for one identifier/endpoint/window."""

    __tablename__ = "rate_limits"

    id = Column(String, primary_key=True, default=new_id)
    identifier = Column(String(128), nullable=False)
    endpoint = Column(String(64), nullable=False)
    window_start = Column(DateTime, nullable=False)
    window_type = Column(String(16), nullable=False)
    count = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint(
            "identifier", "endpoint", "window_start", "window_type", name="rate_limits_unique"
        ),
        Index("idx_rate_limits_lookup", "identifier", "endpoint", "window_type", "window_start"),
    )


# ==================== WORKER RUNTIME STATE ====================


class WorkerConfig(Base):
    """One row per pipeline stage; enablement is changed only by admins."""

    __tablename__ = "worker_config"

    id = Column(String, primary_key=True, default=new_id)
    worker_type = Column(String(32), nullable=False, unique=True)
    display_name = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    poll_interval_ms = Column(Integer, nullable=True)
    cron_expression = Column(String(64), nullable=True)
    input_queue = Column(String(64), nullable=True)
    output_queue = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class WorkerHeartbeat(Base):
    """Latest liveness report of one worker instance; counters are cumulative."""

    __tablename__ = "worker_heartbeats"

    id = Column(String, primary_key=True, default=new_id)
    worker_type = Column(String(32), nullable=False)
    worker_instance_id = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default=WorkerStatus.STARTING.value)
    last_heartbeat = Column(DateTime, default=utcnow, nullable=False)
    messages_processed = Column(Integer, nullable=False, default=0)
    messages_failed = Column(Integer, nullable=False, default=0)
    current_queue_size = Column(Integer, nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)
    consecutive_errors = Column(Integer, nullable=False, default=0)
    hostname = Column(String(128), nullable=True)
    pid = Column(Integer, nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "worker_type", "worker_instance_id", name="uq_worker_heartbeats_instance"
        ),
        Index("idx_worker_heartbeats_type", "worker_type"),
        Index("idx_worker_heartbeats_last_heartbeat", "last_heartbeat"),
    )


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for concurrent access from the API and worker processes."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


@contextmanager
def _sqlite_migration_lock():
    """Serialize Alembic upgrades across worker processes sharing one SQLite file."""
    if "sqlite" not in settings.DATABASE_URL or os.name != "posix":
        yield
        return

    import fcntl

    lock_path = Path(__file__).resolve().parents[1] / ".alembic.sqlite.lock"
    with lock_path.open("a", encoding="utf-8") as lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


async def init_database():
    """Apply Alembic migrations and seed the pipeline stage rows."""
    from services.worker_state import seed_worker_configs

    with _sqlite_migration_lock():
        async with async_engine.begin() as conn:
            await conn.run_sync(_run_alembic_upgrade)

    async with AsyncSessionLocal() as session:
        created = await seed_worker_configs(session)
    if created:
        logger.info("Seeded %d worker config rows", created)


def dialect_insert(session: AsyncSession, model):
    """INSERT construct supporting ``on_conflict_do_update`` for the bound dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert is not supported on {dialect}")
    return insert(model)


async def get_db_session() -> AsyncSession:
    """Get database session"""
    async with AsyncSessionLocal() as session:
        yield session

"""Shared fixtures for the market pipeline tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from datetime import timedelta
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from models.database import (
    Base,
    Candidate,
    Dispute,
    Market,
    NewsItem,
    Proposal,
    Resolution,
)
from models.status import (
    DisputeStatus,
    MarketStatus,
    NewsStatus,
    ProposalStatus,
    ResolutionStatus,
)
from services.ai.llm_provider import LLMResponse
from services.evidence import sha256_hex
from utils.utcnow import to_iso, utcnow


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakePublisher:
    """Stands in for ``QueueService``: records every publish per queue."""

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.published: list[tuple[str, Any]] = []

    def is_configured(self) -> bool:
        return True

    def messages(self, queue: str) -> list[Any]:
        return [message for name, message in self.published if name == queue]

    async def _record(self, queue: str, message: Any) -> bool:
        self.published.append((queue, message))
        return self.accept

    async def publish_news_raw(self, message):
        return await self._record("news.raw", message)

    async def publish_candidate(self, message):
        return await self._record("candidates", message)

    async def publish_draft_validate(self, message):
        return await self._record("drafts.validate", message)

    async def publish_market_publish(self, message):
        return await self._record("markets.publish", message)

    async def publish_market_resolve(self, message):
        return await self._record("markets.resolve", message)

    async def publish_dispute(self, message):
        return await self._record("disputes", message)

    async def publish_config_refresh(self, key: str = "all"):
        return await self._record("config.refresh", key)


class FakeLLM:
    """Answers ``complete_json`` from a queue of canned JSON objects."""

    def __init__(self, *replies: dict):
        self.replies = list(replies)
        self.calls: list[dict[str, str]] = []

    def queue(self, reply: dict) -> None:
        self.replies.append(reply)

    async def complete_json(self, *, system: str, user: str, model: str, temperature: float = 0.0):
        self.calls.append({"system": system, "user": user, "model": model})
        if not self.replies:
            raise AssertionError("FakeLLM received an unexpected call")
        reply = self.replies.pop(0)
        return reply, LLMResponse(content="", request_id=f"req-{len(self.calls)}", model=model)


class FakeChain:
    def __init__(self):
        self.created: list[str] = []
        self.resolutions: list[tuple[str, str]] = []

    async def create_market(self, market_id, params):
        from interfaces.chain_client import ChainReceipt

        self.created.append(market_id)
        return ChainReceipt(
            market_address=f"addr-{market_id[:8]}",
            tx_signature=f"tx-{market_id[:8]}",
            yes_token_mint="yes-mint",
            no_token_mint="no-mint",
        )

    async def submit_resolution(self, market_address, result):
        self.resolutions.append((market_address, result))
        return f"tx-resolve-{result}"


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def chain():
    return FakeChain()


# ---------------------------------------------------------------------------
# Record factories
# ---------------------------------------------------------------------------


def resolution_rules(
    *,
    expiry: Optional[str] = None,
    sources: Optional[list[dict]] = None,
) -> dict:
    return {
        "type": "binary",
        "exact_question": "Will Acme ship the Model Z before 2026-12-31?",
        "criteria": {
            "must_meet_all": ["Acme announces general availability of Model Z"],
            "must_not_count": ["Beta or preview programs"],
            "allowed_sources": sources
            if sources is not None
            else [
                {
                    "name": "Acme Newsroom",
                    "url": "https://news.acme.example/releases",
                    "method": "GET",
                    "condition": "Press release announcing availability",
                }
            ],
        },
        "expiry": expiry or to_iso(utcnow() + timedelta(days=30)),
    }


class Factory:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _save(self, row):
        self.session.add(row)
        await self.session.commit()
        return row

    async def news(self, **overrides) -> NewsItem:
        values = {
            "source": "techwire",
            "source_url": "https://techwire.example/acme-model-z",
            "title": "Acme to launch Model Z next month",
            "content": "Acme said it will launch the Model Z handset in November.",
            "published_at": utcnow(),
            "status": NewsStatus.INGESTED.value,
        }
        values.update(overrides)
        values.setdefault(
            "content_hash",
            sha256_hex(f"{values['source_url']}\n{values['title']}\n{values['content']}"),
        )
        return await self._save(NewsItem(**values))

    async def candidate(self, **overrides) -> Candidate:
        values = {
            "entities": ["Acme", "Model Z"],
            "event_type": "product_launch",
            "category_hint": "product_launch",
            "relevant_text": "Acme said it will launch the Model Z handset in November.",
            "created_at": utcnow(),
        }
        values.update(overrides)
        return await self._save(Candidate(**values))

    async def proposal(self, **overrides) -> Proposal:
        values = {
            "proposal_text": "Will Acme ship the Model Z before the end of the year?",
            "status": ProposalStatus.PENDING.value,
            "ip_address": "203.0.113.7",
            "created_at": utcnow(),
        }
        values.update(overrides)
        return await self._save(Proposal(**values))

    async def market(self, **overrides) -> Market:
        values = {
            "title": "Will Acme ship the Model Z in 2026?",
            "description": "Resolves YES if Model Z is generally available.",
            "category": "product_launch",
            "confidence_score": 0.9,
            "resolution": resolution_rules(),
            "status": MarketStatus.DRAFT.value,
            "created_at": utcnow(),
        }
        values.update(overrides)
        return await self._save(Market(**values))

    async def resolution(self, market: Market, **overrides) -> Resolution:
        values = {
            "market_id": market.id,
            "market_address": market.market_address,
            "final_result": "YES",
            "resolution_source": "https://news.acme.example/releases",
            "evidence_hash": "0" * 64,
            "evidence_raw": "[]",
            "status": ResolutionStatus.PENDING.value,
            "resolved_at": utcnow(),
            "dispute_window_ends": utcnow() + timedelta(hours=24),
        }
        values.update(overrides)
        return await self._save(Resolution(**values))

    async def dispute(self, resolution: Resolution, **overrides) -> Dispute:
        values = {
            "resolution_id": resolution.id,
            "market_address": resolution.market_address,
            "user_address": "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU",
            "reason": "The launch was a limited preview, not general availability.",
            "evidence_urls": [],
            "status": DisputeStatus.PENDING.value,
            "created_at": utcnow(),
        }
        values.update(overrides)
        return await self._save(Dispute(**values))


@pytest.fixture
def factory(db_session):
    return Factory(db_session)


@pytest.fixture
def make_llm():
    return FakeLLM


@pytest.fixture
def rules():
    return resolution_rules

import sys
from pathlib import Path

import pytest
from sqlalchemy import select, update

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import AuditLog, Candidate, Market, NewsItem, Proposal
from models.messages import (
    CandidateMessage,
    DraftValidateMessage,
    MarketPublishMessage,
    NewsRawMessage,
)
from models.status import MarketStatus, NewsStatus, ProposalStatus
from services.ai.llm_provider import LLMError
from services.ai.market_llm import ValidationResult
from services.ai_config import AIConfig, RateLimits
from services.chain_client import DryRunChainClient, market_params
from utils.utcnow import utcnow
from workers import extractor_worker, generator_worker, publisher_worker, validator_worker


def _news_message(**overrides) -> NewsRawMessage:
    values = {
        "news_id": "news-1",
        "source": "techwire",
        "source_url": "https://techwire.example/acme-model-z",
        "title": "Acme to launch Model Z next month",
        "content": "Acme said it will launch the Model Z handset in November.",
        "published_at": utcnow(),
    }
    values.update(overrides)
    return NewsRawMessage(**values)


def _generated(rules, **overrides) -> dict:
    reply = {
        "title": "Will Acme ship the Model Z before 2026-12-31?",
        "description": "Resolves YES on a general availability announcement.",
        "category": "product_launch",
        "resolution": rules(),
        "confidence_score": 0.82,
    }
    reply.update(overrides)
    return reply


APPROVED = {"overall_valid": True, "recommendation": "approved"}


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


def test_event_type_detection_and_forbidden_topics():
    assert extractor_worker.detect_event_type("Acme will unveil a phone") == "product_launch"
    assert extractor_worker.detect_event_type("Quarterly earnings beat") == "finance"
    assert extractor_worker.detect_event_type("Local bakery wins regional pastry prize") is None
    assert extractor_worker.contains_forbidden_topic("Reports of TERRORISM in the region")
    assert not extractor_worker.contains_forbidden_topic("A quiet day on the markets")


@pytest.mark.asyncio
async def test_keyword_match_creates_candidate_without_llm(db_session, publisher, make_llm):
    llm = make_llm()

    candidate_id = await extractor_worker.process_news(
        db_session, _news_message(), llm=llm, config=AIConfig(), publisher=publisher
    )

    assert llm.calls == []
    candidate = await db_session.get(Candidate, candidate_id)
    assert candidate.event_type == "product_launch"
    assert candidate.category_hint == "product_launch"
    assert candidate.news_id == "news-1"

    news = await db_session.get(NewsItem, "news-1")
    assert news.status == NewsStatus.EXTRACTED.value
    assert len(news.content_hash) == 64

    sent = publisher.messages("candidates")
    assert [message.candidate_id for message in sent] == [candidate_id]


@pytest.mark.asyncio
async def test_forbidden_topic_is_skipped(db_session, publisher, make_llm):
    message = _news_message(title="Terrorism trial opens", content="The trial began today.")

    result = await extractor_worker.process_news(
        db_session, message, llm=make_llm(), config=AIConfig(), publisher=publisher
    )

    assert result is None
    assert (await db_session.get(NewsItem, "news-1")).status == NewsStatus.SKIPPED.value
    assert publisher.published == []


@pytest.mark.asyncio
async def test_llm_decides_when_no_keyword_matches(db_session, publisher, make_llm):
    message = _news_message(
        title="Local bakery wins regional pastry prize",
        content="The shop on Elm Street took first place for its croissants.",
    )
    llm = make_llm({"is_market_worthy": False, "reasoning": "Too local"})

    result = await extractor_worker.process_news(
        db_session, message, llm=llm, config=AIConfig(), publisher=publisher
    )

    assert result is None
    assert len(llm.calls) == 1
    assert (await db_session.get(NewsItem, "news-1")).status == NewsStatus.SKIPPED.value


@pytest.mark.asyncio
async def test_llm_worthy_news_uses_llm_entities(db_session, publisher, make_llm):
    message = _news_message(
        title="Local bakery wins regional pastry prize",
        content="The shop on Elm Street took first place for its croissants.",
    )
    llm = make_llm(
        {
            "is_market_worthy": True,
            "event_type": "competition",
            "category": "cooking",
            "entities": [{"name": "Elm Street Bakery", "type": "organization"}],
        }
    )

    candidate_id = await extractor_worker.process_news(
        db_session, message, llm=llm, config=AIConfig(), publisher=publisher
    )

    candidate = await db_session.get(Candidate, candidate_id)
    assert candidate.entities == ["Elm Street Bakery"]
    # Unknown categories fall back to misc.
    assert candidate.category_hint == "misc"


@pytest.mark.asyncio
async def test_redelivered_news_republishes_existing_candidate(db_session, publisher, make_llm):
    first = await extractor_worker.process_news(
        db_session, _news_message(), llm=make_llm(), config=AIConfig(), publisher=publisher
    )
    second = await extractor_worker.process_news(
        db_session, _news_message(), llm=make_llm(), config=AIConfig(), publisher=publisher
    )

    assert first == second
    assert len((await db_session.execute(select(Candidate))).scalars().all()) == 1
    assert len(publisher.messages("candidates")) == 2


@pytest.mark.asyncio
async def test_refused_publish_raises_for_redelivery(db_session, publisher, make_llm):
    publisher.accept = False

    with pytest.raises(RuntimeError):
        await extractor_worker.process_news(
            db_session, _news_message(), llm=make_llm(), config=AIConfig(), publisher=publisher
        )

    # Row is committed so the redelivery only has to republish.
    assert (await db_session.get(NewsItem, "news-1")).status == NewsStatus.EXTRACTED.value


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


def _candidate_message(candidate) -> CandidateMessage:
    return CandidateMessage(
        candidate_id=candidate.id,
        news_id=candidate.news_id,
        entities=candidate.entities,
        event_type=candidate.event_type,
        category_hint=candidate.category_hint,
        relevant_text=candidate.relevant_text,
        proposal_id=candidate.proposal_id,
    )


@pytest.mark.asyncio
async def test_generator_drafts_market_from_news(factory, db_session, publisher, make_llm, rules):
    news = await factory.news(status=NewsStatus.EXTRACTED.value)
    candidate = await factory.candidate(news_id=news.id)

    market_id = await generator_worker.process_candidate(
        db_session,
        _candidate_message(candidate),
        llm=make_llm(_generated(rules)),
        config=AIConfig(),
        publisher=publisher,
    )

    market = await db_session.get(Market, market_id)
    assert market.status == MarketStatus.DRAFT.value
    assert market.source_news_id == news.id
    assert market.created_by == "generator"
    assert float(market.confidence_score) == pytest.approx(0.82)

    stored_candidate = await db_session.get(Candidate, candidate.id, populate_existing=True)
    assert stored_candidate.processed is True
    assert stored_candidate.draft_market_id == market_id
    assert (await db_session.get(NewsItem, news.id, populate_existing=True)).status == "processed"

    audit = (await db_session.execute(select(AuditLog))).scalar_one()
    assert audit.action == "draft_generated"
    assert audit.llm_request_id == "req-1"
    assert audit.details["auto_publish_budget"]["allowed"] is True

    sent = publisher.messages("drafts.validate")
    assert len(sent) == 1
    assert sent[0].source_type == "news"
    assert sent[0].source_id == news.id


@pytest.mark.asyncio
async def test_generator_links_proposal(factory, db_session, publisher, make_llm, rules):
    proposal = await factory.proposal()
    candidate = await factory.candidate(proposal_id=proposal.id, event_type="user_proposal")

    market_id = await generator_worker.process_candidate(
        db_session,
        _candidate_message(candidate),
        llm=make_llm(_generated(rules, category="astrology")),
        config=AIConfig(),
        publisher=publisher,
    )

    market = await db_session.get(Market, market_id)
    assert market.category == "misc"
    stored = await db_session.get(Proposal, proposal.id, populate_existing=True)
    assert stored.draft_market_id == market_id
    assert stored.status == ProposalStatus.PENDING.value

    audit = (await db_session.execute(select(AuditLog))).scalar_one()
    assert "auto_publish_budget" not in audit.details
    assert publisher.messages("drafts.validate")[0].source_type == "proposal"


@pytest.mark.asyncio
async def test_generator_rejects_malformed_llm_output(factory, db_session, publisher, make_llm):
    candidate = await factory.candidate()

    with pytest.raises(LLMError):
        await generator_worker.process_candidate(
            db_session,
            _candidate_message(candidate),
            llm=make_llm({"title": "No resolution here", "confidence_score": 0.7}),
            config=AIConfig(),
            publisher=publisher,
        )
    assert publisher.published == []


@pytest.mark.asyncio
async def test_generator_redelivery_reuses_draft(factory, db_session, publisher, make_llm, rules):
    candidate = await factory.candidate()
    message = _candidate_message(candidate)

    first = await generator_worker.process_candidate(
        db_session, message, llm=make_llm(_generated(rules)), config=AIConfig(), publisher=publisher
    )
    second = await generator_worker.process_candidate(
        db_session, message, llm=make_llm(), config=AIConfig(), publisher=publisher
    )

    assert first == second
    assert len(publisher.messages("drafts.validate")) == 2


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "fields, confidence, expected",
    [
        ({"overall_valid": True, "recommendation": "approved"}, 0.9, ("active", "approved")),
        ({"overall_valid": True, "recommendation": "approved"}, 0.6, ("pending_review", "needs_human")),
        ({"overall_valid": False, "recommendation": "needs_human"}, 0.9, ("pending_review", "needs_human")),
        ({"overall_valid": False, "recommendation": "rejected"}, 0.9, ("canceled", "rejected")),
        (
            {"overall_valid": True, "recommendation": "approved", "is_forbidden": True},
            0.99,
            ("canceled", "rejected"),
        ),
    ],
)
def test_validation_decision(fields, confidence, expected):
    market_status, proposal_status = validator_worker.decide(
        ValidationResult(**fields), confidence, 0.8
    )
    assert (market_status.value, proposal_status.value) == expected


@pytest.mark.asyncio
async def test_confident_ai_market_goes_active(factory, db_session, publisher, make_llm):
    market = await factory.market(confidence_score=0.9)

    status = await validator_worker.process_validation(
        db_session,
        DraftValidateMessage(draft_market_id=market.id, source_type="news", source_id="news-1"),
        llm=make_llm(APPROVED),
        config=AIConfig(),
        publisher=publisher,
    )

    assert status == MarketStatus.ACTIVE
    stored = await db_session.get(Market, market.id, populate_existing=True)
    assert stored.status == "active"
    assert stored.validation_decision["llm_request_id"] == "req-1"

    sent = publisher.messages("markets.publish")
    assert [(m.draft_market_id, m.validation_id) for m in sent] == [(market.id, "req-1")]

    audit = (await db_session.execute(select(AuditLog))).scalar_one()
    assert audit.action == "validation_completed"
    assert audit.details["final_status"] == "active"


@pytest.mark.asyncio
async def test_spent_auto_publish_budget_parks_market(factory, db_session, publisher, make_llm):
    market = await factory.market(confidence_score=0.95)
    config = AIConfig(rate_limits=RateLimits(auto_publish_per_hour=0))

    status = await validator_worker.process_validation(
        db_session,
        DraftValidateMessage(draft_market_id=market.id, source_type="news", source_id="news-1"),
        llm=make_llm(APPROVED),
        config=config,
        publisher=publisher,
    )

    assert status == MarketStatus.PENDING_REVIEW
    assert publisher.published == []
    audit = (await db_session.execute(select(AuditLog))).scalar_one()
    assert audit.details["auto_publish_budget"] == {"allowed": False, "current_count": 0, "limit": 0}


@pytest.mark.asyncio
async def test_low_confidence_proposal_needs_human(factory, db_session, publisher, make_llm):
    proposal = await factory.proposal()
    market = await factory.market(confidence_score=0.55, source_proposal_id=proposal.id)

    status = await validator_worker.process_validation(
        db_session,
        DraftValidateMessage(draft_market_id=market.id, source_type="proposal", source_id=proposal.id),
        llm=make_llm(APPROVED),
        config=AIConfig(),
        publisher=publisher,
    )

    assert status == MarketStatus.PENDING_REVIEW
    stored = await db_session.get(Proposal, proposal.id, populate_existing=True)
    assert stored.status == ProposalStatus.NEEDS_HUMAN.value
    assert stored.processed_at is not None


@pytest.mark.asyncio
async def test_rejected_proposal_market_is_canceled(factory, db_session, publisher, make_llm):
    proposal = await factory.proposal()
    market = await factory.market(source_proposal_id=proposal.id)

    status = await validator_worker.process_validation(
        db_session,
        DraftValidateMessage(draft_market_id=market.id, source_type="proposal", source_id=proposal.id),
        llm=make_llm({"overall_valid": False, "recommendation": "rejected", "is_forbidden": True}),
        config=AIConfig(),
        publisher=publisher,
    )

    assert status == MarketStatus.CANCELED
    assert (await db_session.get(Proposal, proposal.id, populate_existing=True)).status == "rejected"


@pytest.mark.asyncio
async def test_redelivered_validation_republishes_unpublished_market(factory, db_session, publisher, make_llm):
    market = await factory.market(
        status=MarketStatus.ACTIVE.value, validation_decision={"llm_request_id": "req-9"}
    )

    status = await validator_worker.process_validation(
        db_session,
        DraftValidateMessage(draft_market_id=market.id, source_type="news", source_id="news-1"),
        llm=make_llm(),
        config=AIConfig(),
        publisher=publisher,
    )

    assert status == MarketStatus.ACTIVE
    assert publisher.messages("markets.publish")[0].validation_id == "req-9"


# ---------------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_publisher_records_address_once(factory, db_session, chain):
    market = await factory.market(status=MarketStatus.ACTIVE.value)
    message = MarketPublishMessage(draft_market_id=market.id, validation_id="req-1")

    address = await publisher_worker.process_publish(db_session, message, chain=chain)
    again = await publisher_worker.process_publish(db_session, message, chain=chain)

    assert address == f"addr-{market.id[:8]}"
    assert again == address
    assert chain.created == [market.id]

    stored = await db_session.get(Market, market.id, populate_existing=True)
    assert stored.market_address == address
    assert stored.published_at is not None

    audit = (await db_session.execute(select(AuditLog))).scalar_one()
    assert audit.action == "market_published"
    assert audit.details["validation_id"] == "req-1"
    assert audit.details["tx_signature"] == f"tx-{market.id[:8]}"


@pytest.mark.asyncio
async def test_publisher_backs_off_when_address_written_concurrently(factory, db_session, chain):
    market = await factory.market(status=MarketStatus.ACTIVE.value)
    market_id = market.id

    class RacingChain:
        async def create_market(self, market_id, params):
            receipt = await chain.create_market(market_id, params)
            # Another publisher writes its address first.
            await db_session.execute(
                update(Market)
                .where(Market.id == market_id)
                .values(market_address="addr-other")
                .execution_options(synchronize_session=False)
            )
            return receipt

    result = await publisher_worker.process_publish(
        db_session,
        MarketPublishMessage(draft_market_id=market_id, validation_id="v"),
        chain=RacingChain(),
    )

    assert result is None
    assert chain.created == [market_id]
    assert (await db_session.execute(select(AuditLog))).scalars().all() == []


@pytest.mark.asyncio
async def test_publisher_skips_markets_that_are_not_active(factory, db_session, chain):
    market = await factory.market(status=MarketStatus.PENDING_REVIEW.value)

    result = await publisher_worker.process_publish(
        db_session, MarketPublishMessage(draft_market_id=market.id, validation_id="v"), chain=chain
    )

    assert result is None
    assert chain.created == []


@pytest.mark.asyncio
async def test_dry_run_publish_is_deterministic(factory, db_session):
    market = await factory.market(status=MarketStatus.ACTIVE.value)
    expected = (
        await DryRunChainClient().create_market(market.id, market_params(market.title))
    ).market_address

    address = await publisher_worker.process_publish(
        db_session,
        MarketPublishMessage(draft_market_id=market.id, validation_id="v"),
        chain=DryRunChainClient(),
    )

    assert address == expected

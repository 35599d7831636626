import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import AuditLog, Market, Proposal
from models.status import MarketStatus, ProposalStatus
from services.errors import EntityNotFoundError, RequestValidationError, StateConflictError
from services.proposal_review import get_proposal_detail, list_proposals, review_proposal
from utils.utcnow import utcnow


async def _parked(factory, **market_overrides):
    proposal = await factory.proposal(status=ProposalStatus.NEEDS_HUMAN.value)
    market = await factory.market(
        status=MarketStatus.PENDING_REVIEW.value,
        source_proposal_id=proposal.id,
        confidence_score=0.55,
        **market_overrides,
    )
    proposal.draft_market_id = market.id
    await factory.session.commit()
    return proposal, market


@pytest.mark.asyncio
async def test_approve_activates_market_and_enqueues_publish(factory, db_session, publisher):
    proposal, market = await _parked(factory)

    result = await review_proposal(
        db_session,
        proposal.id,
        decision="approve",
        reason="Sources check out",
        actor="admin",
        request_id="req-42",
        publisher=publisher,
    )

    assert result["status"] == "approved"
    assert result["published"] is True
    sent = publisher.messages("markets.publish")
    assert len(sent) == 1
    assert sent[0].draft_market_id == market.id
    assert sent[0].validation_id == "admin_review_req-42"

    stored_market = await db_session.get(Market, market.id, populate_existing=True)
    stored_proposal = await db_session.get(Proposal, proposal.id, populate_existing=True)
    assert stored_market.status == "active"
    assert stored_proposal.status == "approved"
    assert stored_proposal.processed_at is not None

    audit = (await db_session.execute(select(AuditLog))).scalar_one()
    assert audit.action == "admin_action"
    assert audit.details["decision"] == "approve"


@pytest.mark.asyncio
async def test_approve_applies_title_and_resolution_modifications(factory, db_session, publisher):
    proposal, market = await _parked(factory)

    await review_proposal(
        db_session,
        proposal.id,
        decision="approve",
        reason="Tightened wording",
        actor="admin",
        modifications={"title": "Will Acme ship Model Z by Dec 31?", "resolution": {"expiry": "2026-12-31T23:59:59Z"}},
        publisher=publisher,
    )

    stored = await db_session.get(Market, market.id, populate_existing=True)
    assert stored.title == "Will Acme ship Model Z by Dec 31?"
    assert stored.resolution["expiry"] == "2026-12-31T23:59:59Z"
    assert stored.resolution["criteria"]["must_meet_all"]


@pytest.mark.asyncio
async def test_reject_cancels_market(factory, db_session, publisher):
    proposal, market = await _parked(factory)

    result = await review_proposal(
        db_session,
        proposal.id,
        decision="reject",
        reason="Outcome depends on a private filing",
        actor="admin",
        publisher=publisher,
    )

    assert result["status"] == "rejected"
    assert publisher.published == []
    stored_market = await db_session.get(Market, market.id, populate_existing=True)
    stored_proposal = await db_session.get(Proposal, proposal.id, populate_existing=True)
    assert stored_market.status == "canceled"
    assert stored_proposal.rejection_reason == "Outcome depends on a private filing"


@pytest.mark.asyncio
async def test_review_requires_needs_human(factory, db_session):
    proposal = await factory.proposal(status=ProposalStatus.APPROVED.value)

    with pytest.raises(StateConflictError) as exc_info:
        await review_proposal(
            db_session, proposal.id, decision="reject", reason="late", actor="admin"
        )
    assert exc_info.value.current_status == "approved"


@pytest.mark.asyncio
async def test_review_validates_input_before_reading(db_session):
    with pytest.raises(RequestValidationError):
        await review_proposal(db_session, "any", decision="maybe", reason="x", actor="admin")
    with pytest.raises(RequestValidationError):
        await review_proposal(db_session, "any", decision="approve", reason="  ", actor="admin")
    with pytest.raises(EntityNotFoundError):
        await review_proposal(db_session, "missing", decision="approve", reason="ok", actor="admin")


@pytest.mark.asyncio
async def test_list_defaults_to_needs_human_and_paginates(factory, db_session):
    base = utcnow()
    ids = []
    for offset in range(3):
        proposal = await factory.proposal(
            status=ProposalStatus.NEEDS_HUMAN.value,
            created_at=base - timedelta(minutes=offset),
        )
        ids.append(proposal.id)
    await factory.proposal(status=ProposalStatus.PENDING.value)

    first = await list_proposals(db_session, limit=2)
    assert [item["id"] for item in first["items"]] == ids[:2]
    assert first["pagination"]["has_more"] is True

    second = await list_proposals(db_session, limit=2, cursor=first["pagination"]["next_cursor"])
    assert [item["id"] for item in second["items"]] == ids[2:]
    assert second["pagination"]["has_more"] is False
    assert second["pagination"]["next_cursor"] is None


@pytest.mark.asyncio
async def test_list_rejects_unknown_status_and_bad_cursor(db_session):
    with pytest.raises(RequestValidationError):
        await list_proposals(db_session, status="archived")
    with pytest.raises(RequestValidationError):
        await list_proposals(db_session, cursor="not-a-cursor")


@pytest.mark.asyncio
async def test_detail_includes_draft_market(factory, db_session):
    proposal, market = await _parked(factory)

    detail = await get_proposal_detail(db_session, proposal.id)

    assert detail["market_id"] == market.id
    assert detail["market_status"] == "pending_review"
    assert detail["market_confidence"] == pytest.approx(0.55)

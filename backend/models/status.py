"""Closed status enums and the central transition tables for the pipeline.

Every status column in the store holds one of these values. Code that moves a
record between states goes through ``assert_transition`` (directly, or via
``services.lifecycle``) so the legal edges live in exactly one place.
"""

from __future__ import annotations

import enum
from typing import Iterable, Mapping


class InvalidTransitionError(Exception):
    """Raised when a record is asked to move along an edge the table forbids."""

    def __init__(self, entity: str, current: str, target: str, message: str | None = None):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            message or f"{entity} cannot transition from '{current}' to '{target}'"
        )


class MarketStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    ACTIVE = "active"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    FINALIZED = "finalized"
    DISPUTED = "disputed"
    CANCELED = "canceled"


class ProposalStatus(str, enum.Enum):
    PENDING = "pending"
    NEEDS_HUMAN = "needs_human"
    APPROVED = "approved"
    REJECTED = "rejected"


class DisputeStatus(str, enum.Enum):
    PENDING = "pending"
    ESCALATED = "escalated"
    REVIEWING = "reviewing"
    UPHELD = "upheld"
    OVERTURNED = "overturned"


class ResolutionStatus(str, enum.Enum):
    PENDING = "pending"
    FINALIZED = "finalized"


class ResolutionResult(str, enum.Enum):
    YES = "YES"
    NO = "NO"


class WorkerStatus(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    IDLE = "idle"
    ERROR = "error"
    STOPPED = "stopped"


class NewsStatus(str, enum.Enum):
    INGESTED = "ingested"
    EXTRACTED = "extracted"
    PROCESSED = "processed"
    SKIPPED = "skipped"


MARKET_TRANSITIONS: Mapping[MarketStatus, frozenset[MarketStatus]] = {
    MarketStatus.DRAFT: frozenset(
        {MarketStatus.PENDING_REVIEW, MarketStatus.ACTIVE, MarketStatus.CANCELED}
    ),
    MarketStatus.PENDING_REVIEW: frozenset({MarketStatus.ACTIVE, MarketStatus.CANCELED}),
    MarketStatus.ACTIVE: frozenset({MarketStatus.RESOLVING}),
    MarketStatus.RESOLVING: frozenset({MarketStatus.RESOLVED}),
    MarketStatus.RESOLVED: frozenset({MarketStatus.FINALIZED, MarketStatus.DISPUTED}),
    MarketStatus.DISPUTED: frozenset({MarketStatus.FINALIZED}),
    MarketStatus.FINALIZED: frozenset(),
    MarketStatus.CANCELED: frozenset(),
}

PROPOSAL_TRANSITIONS: Mapping[ProposalStatus, frozenset[ProposalStatus]] = {
    ProposalStatus.PENDING: frozenset(
        {ProposalStatus.NEEDS_HUMAN, ProposalStatus.APPROVED, ProposalStatus.REJECTED}
    ),
    ProposalStatus.NEEDS_HUMAN: frozenset(
        {ProposalStatus.APPROVED, ProposalStatus.REJECTED}
    ),
    ProposalStatus.APPROVED: frozenset(),
    ProposalStatus.REJECTED: frozenset(),
}

DISPUTE_TRANSITIONS: Mapping[DisputeStatus, frozenset[DisputeStatus]] = {
    DisputeStatus.PENDING: frozenset(
        {
            DisputeStatus.REVIEWING,
            DisputeStatus.ESCALATED,
            DisputeStatus.UPHELD,
            DisputeStatus.OVERTURNED,
        }
    ),
    DisputeStatus.REVIEWING: frozenset(
        {DisputeStatus.ESCALATED, DisputeStatus.UPHELD, DisputeStatus.OVERTURNED}
    ),
    DisputeStatus.ESCALATED: frozenset({DisputeStatus.UPHELD, DisputeStatus.OVERTURNED}),
    DisputeStatus.UPHELD: frozenset(),
    DisputeStatus.OVERTURNED: frozenset(),
}

RESOLUTION_TRANSITIONS: Mapping[ResolutionStatus, frozenset[ResolutionStatus]] = {
    ResolutionStatus.PENDING: frozenset({ResolutionStatus.FINALIZED}),
    ResolutionStatus.FINALIZED: frozenset(),
}

_TABLES = {
    MarketStatus: ("market", MARKET_TRANSITIONS),
    ProposalStatus: ("proposal", PROPOSAL_TRANSITIONS),
    DisputeStatus: ("dispute", DISPUTE_TRANSITIONS),
    ResolutionStatus: ("resolution", RESOLUTION_TRANSITIONS),
}

TERMINAL_DISPUTE_STATUSES = frozenset({DisputeStatus.UPHELD, DisputeStatus.OVERTURNED})
REVIEWABLE_DISPUTE_STATUSES = frozenset(
    {DisputeStatus.PENDING, DisputeStatus.ESCALATED, DisputeStatus.REVIEWING}
)
ACTIVE_WORKER_STATUSES = frozenset({WorkerStatus.RUNNING, WorkerStatus.IDLE})


def _table_for(status_cls: type[enum.Enum]):
    try:
        return _TABLES[status_cls]
    except KeyError:
        raise TypeError(f"No transition table for {status_cls.__name__}") from None


def can_transition(current: enum.Enum, target: enum.Enum) -> bool:
    if type(current) is not type(target):
        return False
    _, table = _table_for(type(current))
    return target in table.get(current, frozenset())


def assert_transition(current: enum.Enum, target: enum.Enum) -> None:
    entity, _ = _table_for(type(target))
    if not can_transition(current, target):
        raise InvalidTransitionError(entity, current.value, target.value)


def sources_for(target: enum.Enum) -> frozenset:
    """All states from which ``target`` is reachable in one step."""
    _, table = _table_for(type(target))
    return frozenset(src for src, targets in table.items() if target in targets)


def coerce_status(status_cls: type[enum.Enum], raw: object) -> enum.Enum:
    if isinstance(raw, status_cls):
        return raw
    return status_cls(str(raw))


def status_values(statuses: Iterable[enum.Enum]) -> list[str]:
    return sorted(s.value for s in statuses)

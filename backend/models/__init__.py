from .status import (
    DisputeStatus,
    InvalidTransitionError,
    MarketStatus,
    ProposalStatus,
    ResolutionResult,
    ResolutionStatus,
    WorkerStatus,
)
from .messages import (
    CandidateMessage,
    ConfigRefreshMessage,
    DisputeMessage,
    DraftValidateMessage,
    MarketPublishMessage,
    MarketResolveMessage,
    NewsRawMessage,
    QueueName,
    ResolutionRules,
)

__all__ = [
    "DisputeStatus",
    "InvalidTransitionError",
    "MarketStatus",
    "ProposalStatus",
    "ResolutionResult",
    "ResolutionStatus",
    "WorkerStatus",
    "CandidateMessage",
    "ConfigRefreshMessage",
    "DisputeMessage",
    "DraftValidateMessage",
    "MarketPublishMessage",
    "MarketResolveMessage",
    "NewsRawMessage",
    "QueueName",
    "ResolutionRules",
]

"""On-chain collaborator contract.

The pipeline only needs two things from the chain: create a market for an
approved draft, and submit the outcome of a resolved one. Transaction
construction lives behind this protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class CreateMarketParams:
    display_name: str
    yes_symbol: str
    no_symbol: str
    yes_uri: str
    no_uri: str
    initial_yes_prob_bps: int = 5000


@dataclass(frozen=True)
class ChainReceipt:
    market_address: str
    tx_signature: str
    yes_token_mint: Optional[str] = None
    no_token_mint: Optional[str] = None


class ChainClient(Protocol):
    """Write access to the prediction-market program."""

    async def create_market(self, market_id: str, params: CreateMarketParams) -> ChainReceipt:
        """Create the market account; returns its address and the tx signature."""

    async def submit_resolution(self, market_address: str, result: str) -> str:
        """Record ``result`` (YES/NO) on-chain; returns the tx signature."""

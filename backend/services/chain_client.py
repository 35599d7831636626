"""Chain client selection and the dry-run implementation."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from typing import Optional
from urllib.parse import quote

from config import settings
from interfaces.chain_client import ChainClient, ChainReceipt, CreateMarketParams

logger = logging.getLogger(__name__)

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


class ChainClientNotConfiguredError(RuntimeError):
    """Live mode was requested but no signing client is wired in."""


def _b58(raw: bytes) -> str:
    number = int.from_bytes(raw, "big")
    out = ""
    while number:
        number, rem = divmod(number, 58)
        out = _B58_ALPHABET[rem] + out
    pad = len(raw) - len(raw.lstrip(b"\0"))
    return "1" * pad + out


def token_symbol(title: str, is_yes: bool) -> str:
    prefix = re.sub(r"[^A-Z0-9]", "", title.upper())[:6]
    return f"{prefix}{'Y' if is_yes else 'N'}"


def metadata_uri(title: str, is_yes: bool, base_url: Optional[str] = None) -> str:
    side = "YES" if is_yes else "NO"
    if base_url:
        return f"{base_url.rstrip('/')}/{side}/{quote(title, safe='')}"
    metadata = {
        "name": f"{title} - {side}",
        "symbol": side,
        "description": f"{side} token for prediction market: {title}",
    }
    return "data:application/json," + quote(json.dumps(metadata), safe="")


def market_params(title: str, base_url: Optional[str] = None) -> CreateMarketParams:
    return CreateMarketParams(
        display_name=title[:64],
        yes_symbol=token_symbol(title, True),
        no_symbol=token_symbol(title, False),
        yes_uri=metadata_uri(title, True, base_url),
        no_uri=metadata_uri(title, False, base_url),
    )


class DryRunChainClient:
    """Logs what would be sent and returns addresses derived from the market id.

    Deterministic so a redelivered publish message produces the same address.
    """

    def __init__(self, chain_id: Optional[str] = None):
        self.chain_id = chain_id or settings.CHAIN_ID

    def _derive(self, *parts: str) -> str:
        return _b58(hashlib.sha256("|".join((self.chain_id, *parts)).encode("utf-8")).digest())

    async def create_market(self, market_id: str, params: CreateMarketParams) -> ChainReceipt:
        receipt = ChainReceipt(
            market_address=self._derive("market", market_id),
            tx_signature=f"dryrun-{self._derive('tx', market_id)[:32]}",
            yes_token_mint=self._derive("yes", market_id),
            no_token_mint=self._derive("no", market_id),
        )
        logger.info(
            "DRY RUN: would create market %s (%s) at %s",
            market_id,
            params.display_name,
            receipt.market_address,
        )
        return receipt

    async def submit_resolution(self, market_address: str, result: str) -> str:
        logger.info("DRY RUN: would resolve market %s as %s", market_address, result)
        return f"dryrun-{self._derive('resolve', market_address, result)[:32]}"


_chain_client: Optional[ChainClient] = None


def set_chain_client(client: Optional[ChainClient]) -> None:
    """Install the live client used when ``DRY_RUN`` is off."""
    global _chain_client
    _chain_client = client


def get_chain_client() -> ChainClient:
    if settings.DRY_RUN:
        return DryRunChainClient()
    if _chain_client is None:
        raise ChainClientNotConfiguredError(
            "DRY_RUN is disabled but no chain client has been installed"
        )
    return _chain_client

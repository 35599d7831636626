import json
import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import services.chain_client as chain_client
from models.messages import AllowedSource
from services.chain_client import (
    ChainClientNotConfiguredError,
    DryRunChainClient,
    get_chain_client,
    market_params,
    set_chain_client,
    token_symbol,
)
from services.evidence import (
    EvidenceFetcher,
    combined_hash,
    evidence_raw,
    evidence_text,
    is_allowed_source,
    is_https,
    sha256_hex,
)

SOURCES = [AllowedSource(name="Acme Newsroom", url="https://news.acme.example/releases")]


def _fetcher(handler, sleeps=None) -> EvidenceFetcher:
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return EvidenceFetcher(timeout=5, transport=httpx.MockTransport(handler), retry_sleep=fake_sleep)


@pytest.mark.asyncio
async def test_fetch_hashes_body_and_pretty_prints_json():
    def handler(request):
        return httpx.Response(200, json={"status": "available", "model": "Z"})

    item = await _fetcher(handler).fetch("https://news.acme.example/api/status")

    assert item.success is True
    assert item.http_status == 200
    assert item.source_name == "news.acme.example"
    assert json.loads(item.content) == {"status": "available", "model": "Z"}
    assert item.content_hash == sha256_hex(item.content)


@pytest.mark.asyncio
async def test_fetch_retries_network_errors_then_reports_failure():
    calls = []
    sleeps = []

    def handler(request):
        calls.append(request.url)
        raise httpx.ConnectError("connection refused", request=request)

    item = await _fetcher(handler, sleeps).fetch("https://news.acme.example/releases", "Acme")

    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]
    assert item.success is False
    assert item.http_status is None
    assert "connection refused" in item.error
    assert item.content_hash == sha256_hex("")


@pytest.mark.asyncio
async def test_http_error_status_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request.url)
        return httpx.Response(404, text="gone")

    item = await _fetcher(handler).fetch("https://news.acme.example/releases")

    assert len(calls) == 1
    assert item.success is False
    assert item.error == "HTTP 404"


@pytest.mark.asyncio
async def test_fetch_sources_keeps_source_names():
    fetched = await _fetcher(lambda request: httpx.Response(200, text="ok")).fetch_sources(SOURCES)

    assert [item.source_name for item in fetched] == ["Acme Newsroom"]


def test_allowed_source_matches_on_hostname():
    assert is_allowed_source("https://news.acme.example/another/page", SOURCES)
    assert not is_allowed_source("https://acme.example/releases", SOURCES)
    assert not is_allowed_source("not a url", SOURCES)
    assert is_https("https://news.acme.example")
    assert not is_https("http://news.acme.example")


@pytest.mark.asyncio
async def test_combined_hash_and_raw_record():
    fetched = await _fetcher(lambda request: httpx.Response(200, text=str(request.url))).fetch_sources(
        SOURCES + [AllowedSource(name="Wire", url="https://wire.example/acme")]
    )

    assert combined_hash(fetched) == sha256_hex(fetched[0].content_hash + fetched[1].content_hash)
    raw = json.loads(evidence_raw(fetched))
    assert [entry["url"] for entry in raw] == [
        "https://news.acme.example/releases",
        "https://wire.example/acme",
    ]
    assert set(raw[0]) == {"url", "name", "fetchedAt", "contentHash", "httpStatus"}
    assert "=== Source: Wire (https://wire.example/acme) ===" in evidence_text(fetched)


def test_market_params_derive_symbols_from_title():
    params = market_params("Will Acme ship Model Z?")

    assert params.yes_symbol == "WILLACY"
    assert params.no_symbol == "WILLACN"
    assert params.yes_uri.startswith("data:application/json,")
    assert token_symbol("2026 Finals", True) == "2026FIY"
    assert market_params("Title", base_url="https://meta.example/").no_uri == "https://meta.example/NO/Title"


@pytest.mark.asyncio
async def test_dry_run_client_is_deterministic():
    params = market_params("Will Acme ship Model Z?")

    first = await DryRunChainClient("devnet").create_market("market-1", params)
    second = await DryRunChainClient("devnet").create_market("market-1", params)
    other = await DryRunChainClient("devnet").create_market("market-2", params)

    assert first == second
    assert first.market_address != other.market_address
    assert first.tx_signature.startswith("dryrun-")
    assert await DryRunChainClient("devnet").submit_resolution(first.market_address, "YES") == (
        await DryRunChainClient("devnet").submit_resolution(first.market_address, "YES")
    )


def test_live_mode_without_client_refuses(monkeypatch):
    monkeypatch.setattr(chain_client.settings, "DRY_RUN", False)
    monkeypatch.setattr(chain_client, "_chain_client", None)

    with pytest.raises(ChainClientNotConfiguredError):
        get_chain_client()

    live = DryRunChainClient("mainnet")
    set_chain_client(live)
    assert get_chain_client() is live


def test_dry_run_is_default(monkeypatch):
    monkeypatch.setattr(chain_client.settings, "DRY_RUN", True)
    assert isinstance(get_chain_client(), DryRunChainClient)

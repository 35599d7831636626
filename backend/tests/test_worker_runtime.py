import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.messages import DisputeMessage, QueueName
from models.status import WorkerStatus
from services.ai_config import AIConfigCache
from workers.runtime import HeartbeatClient, StageDisabledError, StageHandler, run_queue_worker


def _heartbeat_transport(seen: list, enabled: bool = True, status_code: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((str(request.url), json.loads(request.content)))
        return httpx.Response(status_code, json={"success": True, "data": {"enabled": enabled}})

    return httpx.MockTransport(handler)


def _cache(delay_ms: int = 0) -> AIConfigCache:
    async def loader():
        return {"processing_delay_ms": delay_ms}

    return AIConfigCache(loader=loader, ttl_seconds=300)


@pytest.mark.asyncio
async def test_heartbeat_sends_deltas_and_resets_after_ack():
    seen = []
    client = HeartbeatClient(
        "validator",
        api_base_url="http://api.test",
        instance_id="val-1",
        transport=_heartbeat_transport(seen),
    )
    client.record_success()
    client.record_success()
    client.record_failure("LLM timeout")

    assert await client.send() is True

    url, body = seen[0]
    assert url == "http://api.test/api/v1/admin/workers/validator/heartbeat"
    assert body["instance_id"] == "val-1"
    assert body["messages_processed"] == 2
    assert body["messages_failed"] == 1
    assert body["last_error"] == "LLM timeout"
    assert body["status"] == "error"
    assert client.messages_processed == 0
    assert client.messages_failed == 0
    assert client.last_error is None


@pytest.mark.asyncio
async def test_rejected_heartbeat_keeps_counters():
    seen = []
    client = HeartbeatClient(
        "validator",
        api_base_url="http://api.test",
        transport=_heartbeat_transport(seen, status_code=500),
    )
    client.record_success()

    assert await client.send() is False
    assert client.messages_processed == 1


@pytest.mark.asyncio
async def test_heartbeat_picks_up_disable_flag():
    client = HeartbeatClient(
        "publisher",
        api_base_url="http://api.test",
        transport=_heartbeat_transport([], enabled=False),
    )

    await client.send()

    assert client.enabled is False


@pytest.mark.asyncio
async def test_heartbeat_without_api_url_is_skipped():
    client = HeartbeatClient("resolver", api_base_url="")
    assert client.is_configured() is False
    assert await client.send() is False


@pytest.mark.asyncio
async def test_stage_handler_records_success_and_throttles():
    heartbeat = HeartbeatClient("generator", api_base_url="")
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    inner = AsyncMock()
    stage = StageHandler("generator", inner, heartbeat=heartbeat, cache=_cache(1500), sleep=fake_sleep)

    await stage(DisputeMessage(dispute_id="d-1"))

    inner.assert_awaited_once()
    assert heartbeat.messages_processed == 1
    assert heartbeat.status == WorkerStatus.IDLE
    assert sleeps == [1.5]
    assert stage.in_flight == 0


@pytest.mark.asyncio
async def test_stage_handler_records_failure_and_reraises():
    heartbeat = HeartbeatClient("generator", api_base_url="")
    stage = StageHandler(
        "generator",
        AsyncMock(side_effect=RuntimeError("bad draft")),
        heartbeat=heartbeat,
        cache=_cache(),
    )

    with pytest.raises(RuntimeError):
        await stage(DisputeMessage(dispute_id="d-1"))

    assert heartbeat.messages_failed == 1
    assert heartbeat.last_error == "bad draft"
    assert heartbeat.status == WorkerStatus.ERROR


@pytest.mark.asyncio
async def test_disabled_stage_refuses_delivery():
    heartbeat = HeartbeatClient("generator", api_base_url="")
    heartbeat.enabled = False
    inner = AsyncMock()
    stage = StageHandler("generator", inner, heartbeat=heartbeat, cache=_cache())

    with pytest.raises(StageDisabledError):
        await stage(DisputeMessage(dispute_id="d-1"))
    inner.assert_not_awaited()


class FakeQueueService:
    def __init__(self):
        self.setup_topology = AsyncMock()
        self.subscribe_config_refresh = AsyncMock(return_value="refresh-tag")
        self.consume = AsyncMock(return_value="consumer-tag")
        self.cancel = AsyncMock()
        self.close = AsyncMock()
        self.consuming = True

    def is_consuming(self, consumer_tag):
        return self.consuming


@pytest.mark.asyncio
async def test_run_queue_worker_consumes_until_stopped():
    service = FakeQueueService()
    heartbeat = HeartbeatClient("dispute-agent", api_base_url="")
    stop_event = asyncio.Event()

    task = asyncio.create_task(
        run_queue_worker(
            "dispute-agent",
            QueueName.DISPUTES,
            AsyncMock(),
            service=service,
            cache=_cache(),
            heartbeat=heartbeat,
            stop_event=stop_event,
            poll_seconds=0.01,
        )
    )
    await asyncio.sleep(0.05)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1)

    service.setup_topology.assert_awaited_once()
    service.consume.assert_awaited_once()
    assert service.consume.await_args.args[0] == QueueName.DISPUTES
    cancelled = [call.args[0] for call in service.cancel.await_args_list]
    assert cancelled == ["consumer-tag", "refresh-tag"]
    service.close.assert_awaited_once()
    assert heartbeat.status == WorkerStatus.STOPPED


@pytest.mark.asyncio
async def test_run_queue_worker_pauses_while_disabled():
    service = FakeQueueService()
    heartbeat = HeartbeatClient("resolver", api_base_url="")
    stop_event = asyncio.Event()

    task = asyncio.create_task(
        run_queue_worker(
            "resolver",
            QueueName.MARKETS_RESOLVE,
            AsyncMock(),
            service=service,
            cache=_cache(),
            heartbeat=heartbeat,
            stop_event=stop_event,
            poll_seconds=0.01,
        )
    )
    await asyncio.sleep(0.05)
    heartbeat.enabled = False
    await asyncio.sleep(0.05)

    assert [call.args[0] for call in service.cancel.await_args_list] == ["consumer-tag"]

    heartbeat.enabled = True
    await asyncio.sleep(0.05)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1)

    assert service.consume.await_count == 2


@pytest.mark.asyncio
async def test_run_queue_worker_restarts_consumer_dropped_with_its_connection():
    service = FakeQueueService()
    stop_event = asyncio.Event()

    task = asyncio.create_task(
        run_queue_worker(
            "validator",
            QueueName.DRAFTS_VALIDATE,
            AsyncMock(),
            service=service,
            cache=_cache(),
            heartbeat=HeartbeatClient("validator", api_base_url=""),
            stop_event=stop_event,
            poll_seconds=0.01,
        )
    )
    await asyncio.sleep(0.05)
    service.consuming = False
    await asyncio.sleep(0.02)
    service.consuming = True
    await asyncio.sleep(0.03)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1)

    assert service.consume.await_count >= 2


@pytest.mark.asyncio
async def test_config_refresh_invalidates_cache():
    service = FakeQueueService()
    cache = _cache()
    await cache.get()
    stop_event = asyncio.Event()
    stop_event.set()

    await run_queue_worker(
        "extractor",
        QueueName.NEWS_RAW,
        AsyncMock(),
        service=service,
        cache=cache,
        heartbeat=HeartbeatClient("extractor", api_base_url=""),
        stop_event=stop_event,
    )

    on_refresh = service.subscribe_config_refresh.await_args.args[0]
    assert cache.is_fresh()
    await on_refresh(object())
    assert cache.is_fresh() is False

"""Shared runtime for the queue-consuming pipeline workers.

A stage worker is one process running ``run_queue_worker``: it consumes its
input queue with prefetch 1, reports liveness to the admin API every
``HEARTBEAT_INTERVAL_SECONDS``, pauses consumption while an admin has the
stage disabled, drops its cached AIConfig on every config-refresh broadcast,
and on SIGINT/SIGTERM stops taking deliveries, lets the in-flight message
settle, sends a final ``stopped`` heartbeat and exits.
"""

from __future__ import annotations

import asyncio
import os
import signal
import socket
import uuid
from typing import Any, Awaitable, Callable, Optional

import httpx
from aio_pika.exceptions import AMQPError
from pydantic import BaseModel

from config import settings
from models.messages import QueueName
from models.status import WorkerStatus
from services.ai_config import AIConfigCache, ai_config_cache
from services.queue import QueueService, queue_service
from utils.logger import get_logger

logger = get_logger("worker_runtime")

ENABLEMENT_POLL_SECONDS = 5.0


class StageDisabledError(RuntimeError):
    """The stage was disabled by an admin while a delivery was in hand."""


class HeartbeatClient:
    """Reports this process's status and throughput deltas to the admin API.

    Counters are deltas: what was sent is subtracted only after the API
    accepted the report, so a failed report is carried into the next one.
    """

    def __init__(
        self,
        worker_type: str,
        *,
        api_base_url: Optional[str] = None,
        interval_seconds: Optional[float] = None,
        instance_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.worker_type = worker_type
        self.api_base_url = (api_base_url if api_base_url is not None else settings.API_BASE_URL) or None
        self.interval_seconds = float(interval_seconds or settings.HEARTBEAT_INTERVAL_SECONDS)
        self.instance_id = instance_id or str(uuid.uuid4())
        self.hostname = socket.gethostname()
        self.pid = os.getpid()
        self._transport = transport

        self.status = WorkerStatus.STARTING
        self.messages_processed = 0
        self.messages_failed = 0
        self.last_error: Optional[str] = None
        self.enabled = True
        self._task: Optional[asyncio.Task] = None

    def is_configured(self) -> bool:
        return bool(self.api_base_url)

    @property
    def url(self) -> str:
        return f"{self.api_base_url}/api/v1/admin/workers/{self.worker_type}/heartbeat"

    def payload(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "instance_id": self.instance_id,
            "status": self.status.value,
            "messages_processed": self.messages_processed,
            "messages_failed": self.messages_failed,
            "hostname": self.hostname,
            "pid": self.pid,
        }
        if self.last_error:
            body["last_error"] = self.last_error
        return body

    # ---- status updates -------------------------------------------------

    def set_status(self, status: WorkerStatus) -> None:
        self.status = status

    def set_idle(self) -> None:
        self.status = WorkerStatus.IDLE

    def record_success(self) -> None:
        self.messages_processed += 1
        self.status = WorkerStatus.RUNNING

    def record_failure(self, error: Optional[str] = None) -> None:
        self.messages_failed += 1
        if error:
            self.last_error = error[:2000]
        self.status = WorkerStatus.ERROR

    # ---- reporting ------------------------------------------------------

    async def send(self) -> bool:
        """POST one heartbeat; returns True when the API accepted it."""
        if not self.is_configured():
            logger.debug("API_BASE_URL not set, skipping heartbeat")
            return False

        body = self.payload()
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.post(self.url, json=body)
        except httpx.HTTPError as exc:
            logger.debug("Error sending heartbeat", worker_type=self.worker_type, error=str(exc))
            return False

        if response.status_code != 200:
            logger.debug(
                "Heartbeat rejected", worker_type=self.worker_type, status=response.status_code
            )
            return False

        try:
            data = response.json().get("data") or {}
        except ValueError:
            data = {}
        enabled = data.get("enabled") is not False
        if self.enabled and not enabled:
            logger.warning("Worker disabled via admin API", worker_type=self.worker_type)
        elif not self.enabled and enabled:
            logger.info("Worker re-enabled via admin API", worker_type=self.worker_type)
        self.enabled = enabled

        self.messages_processed = max(0, self.messages_processed - body["messages_processed"])
        self.messages_failed = max(0, self.messages_failed - body["messages_failed"])
        if body.get("last_error") == self.last_error:
            self.last_error = None
        return True

    async def _loop(self) -> None:
        while True:
            await self.send()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None and self.is_configured():
            logger.info(
                "Starting heartbeat",
                worker_type=self.worker_type,
                instance_id=self.instance_id,
                interval_seconds=self.interval_seconds,
            )
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the periodic loop and send a final ``stopped`` heartbeat."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.status = WorkerStatus.STOPPED
        await self.send()
        logger.info("Heartbeat stopped", worker_type=self.worker_type, instance_id=self.instance_id)


class StageHandler:
    """Wraps a stage's message handler with heartbeat accounting and throttling."""

    def __init__(
        self,
        worker_type: str,
        handler: Callable[[BaseModel], Awaitable[None]],
        *,
        heartbeat: HeartbeatClient,
        cache: AIConfigCache,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.worker_type = worker_type
        self._handler = handler
        self._heartbeat = heartbeat
        self._cache = cache
        self._sleep = sleep
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    async def __call__(self, message: BaseModel) -> None:
        if not self._heartbeat.enabled:
            raise StageDisabledError(f"{self.worker_type} is disabled")

        self._in_flight += 1
        self._idle.clear()
        self._heartbeat.set_status(WorkerStatus.RUNNING)
        try:
            try:
                await self._handler(message)
            except Exception as exc:
                self._heartbeat.record_failure(str(exc))
                raise
            self._heartbeat.record_success()

            config = await self._cache.get()
            if config.processing_delay_ms > 0:
                await self._sleep(config.processing_delay_ms / 1000.0)
            self._heartbeat.set_idle()
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def wait_idle(self) -> None:
        await self._idle.wait()


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            pass


async def run_queue_worker(
    worker_type: str,
    queue: QueueName,
    handler: Callable[[BaseModel], Awaitable[None]],
    *,
    service: Optional[QueueService] = None,
    cache: Optional[AIConfigCache] = None,
    heartbeat: Optional[HeartbeatClient] = None,
    stop_event: Optional[asyncio.Event] = None,
    poll_seconds: float = ENABLEMENT_POLL_SECONDS,
) -> None:
    service = service or queue_service
    cache = cache or ai_config_cache
    heartbeat = heartbeat or HeartbeatClient(worker_type)
    if stop_event is None:
        stop_event = asyncio.Event()
        install_signal_handlers(stop_event)

    stage = StageHandler(worker_type, handler, heartbeat=heartbeat, cache=cache)

    async def _on_config_refresh(message: BaseModel) -> None:
        cache.invalidate()
        logger.info("AI config cache invalidated", worker_type=worker_type, key=getattr(message, "key", "all"))

    heartbeat.start()
    await service.setup_topology()
    refresh_tag = await service.subscribe_config_refresh(_on_config_refresh)
    consumer_tag: Optional[str] = None

    logger.info("Worker running", worker_type=worker_type, queue=queue.value)
    try:
        while not stop_event.is_set():
            if consumer_tag is not None and not service.is_consuming(consumer_tag):
                logger.warning("Consumer lost with its connection", worker_type=worker_type)
                consumer_tag = None
            if heartbeat.enabled and consumer_tag is None:
                try:
                    consumer_tag = await service.consume(queue, stage)
                except (AMQPError, ConnectionError) as exc:
                    logger.warning("Could not start consumer", worker_type=worker_type, error=str(exc))
                else:
                    heartbeat.set_idle()
            elif not heartbeat.enabled and consumer_tag is not None:
                logger.warning("Pausing consumption while disabled", worker_type=worker_type)
                await service.cancel(consumer_tag)
                consumer_tag = None
                await stage.wait_idle()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        logger.info("Worker shutting down", worker_type=worker_type)
        if consumer_tag is not None:
            await service.cancel(consumer_tag)
        await service.cancel(refresh_tag)
        await stage.wait_idle()
        await heartbeat.stop()
        await service.close()


async def stage_main(
    worker_type: str,
    queue: QueueName,
    handler: Callable[[BaseModel], Awaitable[None]],
) -> None:
    """Entry point shared by the ``python -m workers.<stage>_worker`` modules."""
    from models.database import init_database
    from utils.logger import setup_logging

    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
    logger.info("Starting worker", worker_type=worker_type)
    await init_database()
    await run_queue_worker(worker_type, queue, handler)

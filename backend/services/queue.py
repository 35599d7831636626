"""RabbitMQ topology, publishing and consuming for the pipeline stages.

Topology (one topic exchange, ``prediction.market`` by default):

- every stage queue in ``DURABLE_QUEUES`` is durable, bound under its own name,
  and dead-letters to ``<name>.dlq`` (bound under the routing key ``<name>.dlq``);
- every stage queue also gets one wait queue per retry delay,
  ``<name>.retry.<seconds>s``, holding messages for ``seconds`` (per-queue TTL)
  and then dead-lettering them back to the stage queue;
- config refresh is a broadcast: each subscriber declares its own non-durable,
  exclusive queue bound under ``config.refresh``.

Handler failures are retried by parking a copy of the original body in the wait
queue for ``RETRY_DELAYS[retry_count]`` and acking the delivery; once the
schedule is exhausted the delivery is rejected without requeue so the broker
moves it to the DLQ. Retries live in the broker, so they survive restarts of the
consuming process.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError
from pydantic import BaseModel, ValidationError

from config import settings
from models.messages import (
    DURABLE_QUEUES,
    QUEUE_MESSAGE_TYPES,
    CandidateMessage,
    ConfigRefreshMessage,
    DisputeMessage,
    DraftValidateMessage,
    MarketPublishMessage,
    MarketResolveMessage,
    NewsRawMessage,
    QueueName,
)
from services.errors import (
    BrokerNotConfiguredError,
    InvalidTransitionError,
    RequestValidationError,
    StateConflictError,
)
from utils.logger import queue_logger as logger
from utils.utcnow import utc_iso

RETRY_DELAYS: tuple[int, ...] = (1, 5, 30)
RETRY_HEADER = "x-retry-count"
DEFAULT_PREFETCH = 1

# Deterministic outcomes of a handler: retrying cannot change them.
NON_RETRYABLE_ERRORS = (InvalidTransitionError, StateConflictError, RequestValidationError)

MessageHandler = Callable[[BaseModel], Awaitable[None]]
QueueLike = Union[QueueName, str]


def dlq_name(queue: QueueLike) -> str:
    return f"{QueueName(queue).value}.dlq"


def retry_queue_name(queue: QueueLike, delay_seconds: int) -> str:
    return f"{QueueName(queue).value}.retry.{int(delay_seconds)}s"


def get_retry_count(headers: Optional[dict[str, Any]]) -> int:
    raw = (headers or {}).get(RETRY_HEADER, 0)
    try:
        return max(0, int(raw))
    except (TypeError, ValueError):
        return 0


def encode_message(message: Union[BaseModel, dict[str, Any]]) -> bytes:
    if isinstance(message, BaseModel):
        return message.model_dump_json().encode("utf-8")
    return json.dumps(message, default=str).encode("utf-8")


def decode_message(queue: QueueLike, body: bytes) -> BaseModel:
    """Parse a delivery body into the queue's message model.

    Raises ``ValueError`` (pydantic's ``ValidationError`` included) on any
    malformed body.
    """
    model = QUEUE_MESSAGE_TYPES[QueueName(queue)]
    return model.model_validate_json(body)


class QueueService:
    """Owns the broker connection, channel and exchange handles.

    Handles are created lazily on first use. The default robust connection
    reconnects on its own and restores its channels and consumers, so consumer
    tags stay valid across a transient drop; publishes made while it is
    reconnecting are refused. A plain connection that closes has its handles
    dropped, and the next call reconnects.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        exchange_name: Optional[str] = None,
        retry_delays: tuple[int, ...] = RETRY_DELAYS,
        connect: Optional[Callable[..., Awaitable[AbstractRobustConnection]]] = None,
    ):
        self._url = url
        self._exchange_name = exchange_name
        self.retry_delays = tuple(int(d) for d in retry_delays)
        self._connect = connect or aio_pika.connect_robust
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None
        self._consumers: dict[str, AbstractQueue] = {}
        self._closing = False
        self._reconnecting = False
        self._lock = asyncio.Lock()

    @property
    def url(self) -> Optional[str]:
        return self._url if self._url is not None else settings.RABBITMQ_URL

    @property
    def exchange_name(self) -> str:
        return self._exchange_name or settings.QUEUE_EXCHANGE

    def is_configured(self) -> bool:
        return bool(self.url)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _is_robust(self) -> bool:
        return self._connection is not None and hasattr(self._connection, "reconnect_callbacks")

    def _drop_handles(self) -> None:
        self._channel = None
        self._exchange = None
        self._connection = None
        self._consumers.clear()

    def _handles_lost(self) -> None:
        # A robust connection restores its channels and consumers itself.
        if self._is_robust():
            return
        if self._channel is not None or self._connection is not None:
            logger.warning("Broker handles reset; reconnecting on next use")
        self._drop_handles()

    def _on_connection_closed(self, *_args: Any) -> None:
        if self._closing:
            return
        if self._is_robust():
            self._reconnecting = True
            logger.warning(
                "Broker connection lost; waiting for reconnect",
                consumers=len(self._consumers),
            )
            return
        self._handles_lost()

    def _on_reconnected(self, *_args: Any) -> None:
        self._reconnecting = False
        logger.info("Broker reconnected", consumers=len(self._consumers))

    def _on_channel_closed(self, *_args: Any) -> None:
        if self._closing or self._is_robust():
            return
        self._channel = None
        self._exchange = None
        self._consumers.clear()

    async def _ensure_channel(self) -> tuple[AbstractChannel, AbstractExchange]:
        async with self._lock:
            if self._reconnecting:
                raise ConnectionError("Broker connection is reconnecting")
            if (
                self._channel is not None
                and not self._channel.is_closed
                and self._exchange is not None
            ):
                return self._channel, self._exchange

            if not self.url:
                raise BrokerNotConfiguredError("RABBITMQ_URL is not configured")

            if self._connection is None or self._connection.is_closed:
                self._closing = False
                self._connection = await self._connect(self.url)
                self._connection.close_callbacks.add(self._on_connection_closed)
                if self._is_robust():
                    self._connection.reconnect_callbacks.add(self._on_reconnected)

            channel = await self._connection.channel(publisher_confirms=True)
            channel.close_callbacks.add(self._on_channel_closed)
            exchange = await channel.declare_exchange(
                self.exchange_name, ExchangeType.TOPIC, durable=True
            )
            await self._declare_topology(channel, exchange)

            self._channel = channel
            self._exchange = exchange
            logger.info(
                "Broker channel ready",
                exchange=self.exchange_name,
                queues=[q.value for q in DURABLE_QUEUES],
            )
            return channel, exchange

    async def _declare_stage_queue(
        self, channel: AbstractChannel, queue: QueueName
    ) -> AbstractQueue:
        return await channel.declare_queue(
            queue.value,
            durable=True,
            arguments={
                "x-dead-letter-exchange": self.exchange_name,
                "x-dead-letter-routing-key": dlq_name(queue),
            },
        )

    async def _declare_topology(
        self, channel: AbstractChannel, exchange: AbstractExchange
    ) -> None:
        for queue in DURABLE_QUEUES:
            dead = await channel.declare_queue(dlq_name(queue), durable=True)
            await dead.bind(exchange, routing_key=dlq_name(queue))

            main = await self._declare_stage_queue(channel, queue)
            await main.bind(exchange, routing_key=queue.value)

            for delay in self.retry_delays:
                wait = await channel.declare_queue(
                    retry_queue_name(queue, delay),
                    durable=True,
                    arguments={
                        "x-message-ttl": int(delay * 1000),
                        "x-dead-letter-exchange": self.exchange_name,
                        "x-dead-letter-routing-key": queue.value,
                    },
                )
                await wait.bind(exchange, routing_key=retry_queue_name(queue, delay))

    async def setup_topology(self) -> None:
        """Connect and declare every exchange, queue and binding."""
        await self._ensure_channel()

    async def close(self) -> None:
        async with self._lock:
            channel, connection = self._channel, self._connection
            self._closing = True
            self._reconnecting = False
            self._drop_handles()
        if channel is not None and not channel.is_closed:
            await channel.close()
        if connection is not None and not connection.is_closed:
            await connection.close()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _build_message(
        self,
        body: bytes,
        *,
        persistent: bool,
        headers: Optional[dict[str, Any]] = None,
        message_id: Optional[str] = None,
    ) -> Message:
        return Message(
            body,
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT if persistent else DeliveryMode.NOT_PERSISTENT,
            timestamp=datetime.now(timezone.utc),
            headers=dict(headers or {}),
            message_id=message_id or str(uuid.uuid4()),
        )

    async def _publish_raw(self, routing_key: str, message: Message) -> bool:
        try:
            _, exchange = await self._ensure_channel()
            await exchange.publish(message, routing_key=routing_key)
        except BrokerNotConfiguredError:
            raise
        except (AMQPError, ConnectionError, asyncio.TimeoutError) as exc:
            self._handles_lost()
            logger.warning(
                "Broker did not accept message (backpressure)",
                routing_key=routing_key,
                error=str(exc),
            )
            return False
        return True

    async def publish(
        self,
        queue: QueueLike,
        message: Union[BaseModel, dict[str, Any]],
        *,
        headers: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Publish ``message`` to a stage queue.

        Returns False when the broker refused or could not take the message;
        the caller decides whether that is fatal. Raises
        ``BrokerNotConfiguredError`` when no broker URL is set.
        """
        queue = QueueName(queue)
        amqp_message = self._build_message(
            encode_message(message),
            persistent=queue in DURABLE_QUEUES,
            headers={RETRY_HEADER: 0, **(headers or {})},
        )
        accepted = await self._publish_raw(queue.value, amqp_message)
        if accepted:
            logger.debug("Published message", queue=queue.value)
        return accepted

    async def publish_news_raw(self, message: NewsRawMessage) -> bool:
        return await self.publish(QueueName.NEWS_RAW, message)

    async def publish_candidate(self, message: CandidateMessage) -> bool:
        return await self.publish(QueueName.CANDIDATES, message)

    async def publish_draft_validate(self, message: DraftValidateMessage) -> bool:
        return await self.publish(QueueName.DRAFTS_VALIDATE, message)

    async def publish_market_publish(self, message: MarketPublishMessage) -> bool:
        return await self.publish(QueueName.MARKETS_PUBLISH, message)

    async def publish_market_resolve(self, message: MarketResolveMessage) -> bool:
        return await self.publish(QueueName.MARKETS_RESOLVE, message)

    async def publish_dispute(self, message: DisputeMessage) -> bool:
        return await self.publish(QueueName.DISPUTES, message)

    async def publish_config_refresh(self, key: str = "all") -> bool:
        return await self.publish(
            QueueName.CONFIG_REFRESH, ConfigRefreshMessage(key=key, timestamp=utc_iso())
        )

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def _schedule_retry(
        self, queue: QueueName, delivery: AbstractIncomingMessage, retry_count: int
    ) -> bool:
        delay = self.retry_delays[retry_count - 1]
        headers = dict(delivery.headers or {})
        headers.pop("x-death", None)
        headers[RETRY_HEADER] = retry_count
        retry_message = self._build_message(
            delivery.body,
            persistent=True,
            headers=headers,
            message_id=delivery.message_id,
        )
        return await self._publish_raw(retry_queue_name(queue, delay), retry_message)

    async def handle_delivery(
        self,
        queue: QueueLike,
        delivery: AbstractIncomingMessage,
        handler: MessageHandler,
    ) -> None:
        """Run ``handler`` for one delivery and settle it (ack, retry or DLQ)."""
        queue = QueueName(queue)
        retry_count = get_retry_count(delivery.headers)

        try:
            payload = decode_message(queue, delivery.body)
        except (ValueError, ValidationError) as exc:
            logger.error(
                "Unparseable message sent to DLQ",
                queue=queue.value,
                message_id=delivery.message_id,
                error=str(exc),
            )
            await delivery.reject(requeue=False)
            return

        try:
            await handler(payload)
        except NON_RETRYABLE_ERRORS as exc:
            logger.warning(
                "Handler rejected message; not retrying",
                queue=queue.value,
                message_id=delivery.message_id,
                error=str(exc),
            )
            await delivery.ack()
            return
        except Exception as exc:
            await self._settle_failure(queue, delivery, retry_count, exc)
            return

        await delivery.ack()

    async def _settle_failure(
        self,
        queue: QueueName,
        delivery: AbstractIncomingMessage,
        retry_count: int,
        exc: Exception,
    ) -> None:
        if retry_count < len(self.retry_delays):
            next_count = retry_count + 1
            delay = self.retry_delays[retry_count]
            if await self._schedule_retry(queue, delivery, next_count):
                logger.warning(
                    "Handler failed, retry scheduled",
                    queue=queue.value,
                    message_id=delivery.message_id,
                    retry_count=next_count,
                    delay_seconds=delay,
                    error=str(exc),
                )
                await delivery.ack()
                return
            # Could not park the retry; hand the delivery back untouched.
            logger.error(
                "Handler failed and retry could not be scheduled; requeueing",
                queue=queue.value,
                message_id=delivery.message_id,
                error=str(exc),
            )
            await delivery.nack(requeue=True)
            return

        logger.error(
            "Retries exhausted, message moved to DLQ",
            queue=queue.value,
            dlq=dlq_name(queue),
            message_id=delivery.message_id,
            retry_count=retry_count,
            error=str(exc),
        )
        await delivery.reject(requeue=False)

    async def consume(
        self,
        queue: QueueLike,
        handler: MessageHandler,
        *,
        prefetch: int = DEFAULT_PREFETCH,
    ) -> str:
        """Start consuming a stage queue; returns the consumer tag."""
        queue = QueueName(queue)
        if queue not in DURABLE_QUEUES:
            raise ValueError(f"{queue.value} is not a stage queue; use subscribe_config_refresh")
        channel, _ = await self._ensure_channel()
        await channel.set_qos(prefetch_count=prefetch)
        amqp_queue = await self._declare_stage_queue(channel, queue)

        async def _on_message(delivery: AbstractIncomingMessage) -> None:
            await self.handle_delivery(queue, delivery, handler)

        consumer_tag = await amqp_queue.consume(_on_message, no_ack=False)
        self._consumers[consumer_tag] = amqp_queue
        logger.info("Consuming queue", queue=queue.value, consumer_tag=consumer_tag)
        return consumer_tag

    async def subscribe_config_refresh(self, handler: MessageHandler) -> str:
        """Receive every config-refresh broadcast on a private, non-durable queue."""
        channel, exchange = await self._ensure_channel()
        name = f"{QueueName.CONFIG_REFRESH.value}.{uuid.uuid4().hex[:12]}"
        amqp_queue = await channel.declare_queue(
            name, durable=False, exclusive=True, auto_delete=True
        )
        await amqp_queue.bind(exchange, routing_key=QueueName.CONFIG_REFRESH.value)

        async def _on_message(delivery: AbstractIncomingMessage) -> None:
            async with delivery.process(requeue=False, ignore_processed=True):
                try:
                    payload = decode_message(QueueName.CONFIG_REFRESH, delivery.body)
                except (ValueError, ValidationError) as exc:
                    logger.warning("Ignoring malformed config refresh", error=str(exc))
                    return
                await handler(payload)

        consumer_tag = await amqp_queue.consume(_on_message, no_ack=False)
        self._consumers[consumer_tag] = amqp_queue
        return consumer_tag

    def is_consuming(self, consumer_tag: Optional[str]) -> bool:
        return consumer_tag is not None and consumer_tag in self._consumers

    async def cancel(self, consumer_tag: str) -> None:
        """Stop new deliveries to a consumer; an in-flight handler still finishes."""
        amqp_queue = self._consumers.pop(consumer_tag, None)
        if amqp_queue is None:
            return
        try:
            await amqp_queue.cancel(consumer_tag)
        except (AMQPError, ConnectionError) as exc:
            logger.warning("Consumer cancel failed", consumer_tag=consumer_tag, error=str(exc))
        else:
            logger.info("Consumer cancelled", consumer_tag=consumer_tag)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def queue_stats(self, queue_name: str) -> dict[str, Any]:
        """Message and consumer counts of any declared queue (DLQs included)."""
        await self._ensure_channel()
        # A failed passive declare closes its channel; keep it off the consumer channel.
        async with self._connection.channel() as channel:
            declared = await channel.declare_queue(queue_name, passive=True)
        result = declared.declaration_result
        return {
            "queue": queue_name,
            "message_count": int(result.message_count or 0),
            "consumer_count": int(result.consumer_count or 0),
        }

    async def dlq_stats(self, queue: QueueLike) -> dict[str, Any]:
        return await self.queue_stats(dlq_name(queue))

    async def stage_stats(self, queue: QueueLike) -> dict[str, Any]:
        queue = QueueName(queue)
        return {
            "queue": await self.queue_stats(queue.value),
            "dlq": await self.dlq_stats(queue),
        }


queue_service = QueueService()

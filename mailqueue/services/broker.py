import asyncio
import logging
from datetime import timedelta
from typing import Optional, Sequence

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError, DeliveryError

from mailqueue.api.v1.metrics import QUEUE_DEPTH
from mailqueue.domain.errors import BrokerUnavailableError, EmailPipelineError
from mailqueue.domain.models import BulkPublishResult, EmailJob, QueueStats
from mailqueue.domain.retry import MIN_DELAY_MS, utcnow

logger = logging.getLogger(__name__)

QUEUE_NAME = "email_queue"
EXCHANGE_NAME = "email_exchange"
ROUTING_KEY = "email"

DLX_NAME = "email_dlx"
DLQ_NAME = "email_dlq"
DLQ_ROUTING_KEY = "failed"
DLQ_MESSAGE_TTL_MS = 7 * 24 * 60 * 60 * 1000

DELAY_EXCHANGE_NAME = "email_exchange_delay"
DELAY_QUEUE_NAME = "email_queue_delay_v1"

# Errors after which the cached connection can no longer be trusted
_BROKER_ERRORS = (AMQPError, ChannelInvalidStateError, ConnectionError)


class QueueTopology:
    """
    Owns this process's broker connection and the email exchanges/queues.

    Topology:
        email_dlx (direct) --failed--> email_dlq          (7 day message TTL)
        email_exchange (direct) --email--> email_queue    (no TTL/DLX arguments)
        email_exchange_delay (direct) --email--> email_queue_delay_v1
            dead-letters back to email_exchange/email on per-message expiry

    The connection is established on demand. When it errors or closes the
    cached handles are dropped and the next call builds a new one.
    """

    def __init__(self, url: str, prefetch_count: Optional[int] = None):
        self.url = url
        self.prefetch_count = prefetch_count
        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and not self._channel.is_closed

    def _reset(self) -> None:
        self._connection = None
        self._channel = None
        self._exchanges = {}
        self._queues = {}

    def _on_connection_closed(self, sender, exc=None) -> None:
        if exc is not None:
            logger.error("RabbitMQ connection error: %s", exc)
        else:
            logger.warning("RabbitMQ connection closed")
        self._reset()

    async def connect(self) -> AbstractChannel:
        if self.is_connected:
            return self._channel

        # One connection attempt at a time; late callers reuse its result
        async with self._lock:
            if self.is_connected:
                return self._channel

            logger.info("Connecting to RabbitMQ...")
            connection = None
            try:
                connection = await aio_pika.connect(self.url)
                connection.close_callbacks.add(self._on_connection_closed)

                channel = await connection.channel()
                if self.prefetch_count:
                    await channel.set_qos(prefetch_count=self.prefetch_count)

                await self._declare_topology(channel)
            except _BROKER_ERRORS as e:
                logger.error(f"Failed to connect to RabbitMQ: {e}")
                self._reset()
                if connection is not None and not connection.is_closed:
                    await connection.close()
                raise BrokerUnavailableError(f"RabbitMQ unavailable: {e}") from e

            self._connection = connection
            self._channel = channel
            logger.info("RabbitMQ connected, email topology declared")
            return channel

    async def _declare_topology(self, channel: AbstractChannel) -> None:
        dlx = await channel.declare_exchange(DLX_NAME, ExchangeType.DIRECT, durable=True)
        dlq = await channel.declare_queue(
            DLQ_NAME,
            durable=True,
            arguments={"x-message-ttl": DLQ_MESSAGE_TTL_MS},
        )
        await dlq.bind(dlx, routing_key=DLQ_ROUTING_KEY)

        main_exchange = await channel.declare_exchange(EXCHANGE_NAME, ExchangeType.DIRECT, durable=True)
        main_queue = await channel.declare_queue(QUEUE_NAME, durable=True)
        await main_queue.bind(main_exchange, routing_key=ROUTING_KEY)

        delay_exchange = await channel.declare_exchange(DELAY_EXCHANGE_NAME, ExchangeType.DIRECT, durable=True)
        delay_queue = await channel.declare_queue(
            DELAY_QUEUE_NAME,
            durable=True,
            arguments={
                "x-dead-letter-exchange": EXCHANGE_NAME,
                "x-dead-letter-routing-key": ROUTING_KEY,
            },
        )
        await delay_queue.bind(delay_exchange, routing_key=ROUTING_KEY)

        self._exchanges = {
            DLX_NAME: dlx,
            EXCHANGE_NAME: main_exchange,
            DELAY_EXCHANGE_NAME: delay_exchange,
        }
        self._queues = {
            DLQ_NAME: dlq,
            QUEUE_NAME: main_queue,
            DELAY_QUEUE_NAME: delay_queue,
        }

    async def _publish(
        self,
        exchange_name: str,
        routing_key: str,
        job: EmailJob,
        expiration: Optional[timedelta] = None,
        headers: Optional[dict] = None,
    ) -> bool:
        await self.connect()
        exchange = self._exchanges[exchange_name]

        message = Message(
            job.to_body(),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=job.id,
            timestamp=utcnow(),
            expiration=expiration,
            headers=headers or None,
        )

        try:
            await exchange.publish(message, routing_key=routing_key)
        except DeliveryError as e:
            logger.warning(f"Broker refused email job {job.id} on {exchange_name}: {e}")
            return False
        except _BROKER_ERRORS as e:
            logger.error(f"Error publishing email job {job.id}: {e}")
            self._reset()
            raise BrokerUnavailableError(f"Failed to publish email job {job.id}: {e}") from e
        return True

    async def publish_email_job(self, job: EmailJob, delay_ms: Optional[int] = None) -> bool:
        """
        Publishes a job to the main exchange.

        `delay_ms` is only recorded as an `x-delay` header; deferral is
        enforced by the worker from the job's scheduled_time.
        """
        headers = {"x-delay": int(delay_ms)} if delay_ms and delay_ms > 0 else None
        published = await self._publish(EXCHANGE_NAME, ROUTING_KEY, job, headers=headers)
        if published:
            logger.info(f"Email job published: {job.id}, type: {job.email_type}")
        return published

    async def publish_bulk_email_jobs(self, jobs: Sequence[EmailJob]) -> BulkPublishResult:
        result = BulkPublishResult()
        for job in jobs:
            try:
                published = await self.publish_email_job(job)
            except EmailPipelineError as e:
                logger.error(f"Error publishing job {job.id}: {e}")
                published = False

            if published:
                result.published += 1
            else:
                result.failed += 1
                result.failed_ids.append(job.id)
        return result

    async def publish_to_delay_queue(self, job: EmailJob, delay_ms: int) -> bool:
        """Parks a copy of the job until its per-message TTL expires."""
        delay_ms = max(int(delay_ms), MIN_DELAY_MS)
        return await self._publish(
            DELAY_EXCHANGE_NAME,
            ROUTING_KEY,
            job,
            expiration=timedelta(milliseconds=delay_ms),
        )

    async def publish_to_dead_letter(self, job: EmailJob, reason: str) -> bool:
        return await self._publish(
            DLX_NAME,
            DLQ_ROUTING_KEY,
            job,
            headers={"x-failure-reason": reason[:255]},
        )

    async def get_main_queue(self) -> AbstractQueue:
        await self.connect()
        return self._queues[QUEUE_NAME]

    async def get_queue_stats(self) -> QueueStats:
        channel = await self.connect()
        counts = {}
        try:
            for name in (QUEUE_NAME, DELAY_QUEUE_NAME, DLQ_NAME):
                queue = await channel.declare_queue(name, passive=True)
                counts[name] = queue.declaration_result.message_count or 0
        except _BROKER_ERRORS as e:
            logger.error(f"Error getting queue stats: {e}")
            self._reset()
            raise BrokerUnavailableError(f"Failed to read queue stats: {e}") from e

        QUEUE_DEPTH.labels(queue="main").set(counts[QUEUE_NAME])
        QUEUE_DEPTH.labels(queue="delay").set(counts[DELAY_QUEUE_NAME])
        QUEUE_DEPTH.labels(queue="dead_letter").set(counts[DLQ_NAME])

        return QueueStats(
            queue=counts[QUEUE_NAME],
            delay=counts[DELAY_QUEUE_NAME],
            dlq=counts[DLQ_NAME],
        )

    async def close(self) -> None:
        connection = self._connection
        self._reset()
        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
                logger.info("RabbitMQ connection closed")
            except _BROKER_ERRORS as e:
                logger.error(f"Error closing RabbitMQ connection: {e}")

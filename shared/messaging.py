"""
TaskRelay - RabbitMQ Messaging

Two broker roles:

- progress: the executor's observer publishes every TaskEvent to a topic
  exchange (routing key task.<event_type>) for dashboards and audit consumers
- notification relay: a webhook gateway that cannot reach the orchestrator
  directly publishes NotificationEnvelopes, which the orchestrator consumes
  from a durable inbox queue
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Dict, Optional, TYPE_CHECKING

from aio_pika import ExchangeType, Message, connect_robust
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)

from .schemas import NotificationEnvelope, TaskRelayBaseModel

if TYPE_CHECKING:
    from .config import OrchestratorSettings

logger = logging.getLogger(__name__)

PROGRESS_EXCHANGE = "taskrelay.progress"
NOTIFICATIONS_EXCHANGE = "taskrelay.notifications"
NOTIFICATIONS_QUEUE = "taskrelay.notifications.inbox"
NOTIFICATION_ROUTING_PATTERN = "notification.#"

MessageCallback = Callable[[AbstractIncomingMessage], Awaitable[None]]


class RabbitMQClient:
    """
    Async RabbitMQ client for TaskRelay.

    Holds one robust connection and one channel; exchanges and queues are
    declared once and cached by name.
    """

    def __init__(
        self,
        host: str = None,
        port: int = None,
        user: str = None,
        password: str = None,
        vhost: str = None,
        max_retries: int = 5,
        retry_delay: int = 5
    ):
        """
        Initialize RabbitMQ client. Unset arguments fall back to the
        RABBITMQ_* environment variables.

        Args:
            max_retries: Connection attempts before giving up
            retry_delay: Seconds between attempts
        """
        self.host = host or os.getenv("RABBITMQ_HOST", "localhost")
        self.port = port or int(os.getenv("RABBITMQ_PORT", "5672"))
        self.user = user or os.getenv("RABBITMQ_USER", "guest")
        self.password = password or os.getenv("RABBITMQ_PASSWORD", "guest")
        self.vhost = vhost or os.getenv("RABBITMQ_VHOST", "/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchanges: Dict[str, AbstractExchange] = {}
        self.queues: Dict[str, AbstractQueue] = {}

    @classmethod
    def from_settings(cls, settings: "OrchestratorSettings") -> "RabbitMQClient":
        return cls(
            host=settings.rabbitmq_host,
            port=settings.rabbitmq_port,
            user=settings.rabbitmq_user,
            password=settings.rabbitmq_password,
            vhost=settings.rabbitmq_vhost,
        )

    @property
    def connection_url(self) -> str:
        vhost = "" if self.vhost == "/" else self.vhost
        return f"amqp://{self.user}:{self.password}@{self.host}:{self.port}/{vhost}"

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    async def connect(self) -> None:
        """
        Open the connection and channel, retrying while the broker starts up.

        Raises:
            ConnectionError: If every attempt failed
        """
        last_error = None

        for attempt in range(1, self.max_retries + 1):
            try:
                logger.info(f"Connecting to RabbitMQ at {self.host}:{self.port} (attempt {attempt}/{self.max_retries})")
                self.connection = await connect_robust(self.connection_url, timeout=10)
                self.channel = await self.connection.channel()
                # One relayed notification at a time per consumer
                await self.channel.set_qos(prefetch_count=1)
                logger.info("Connected to RabbitMQ")
                return

            except Exception as e:
                last_error = e
                logger.warning(f"RabbitMQ connection attempt {attempt} failed: {e}")
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)

        raise ConnectionError(f"Failed to connect to RabbitMQ after {self.max_retries} attempts: {last_error}")

    async def disconnect(self) -> None:
        if self.is_connected:
            await self.connection.close()
            logger.info("Disconnected from RabbitMQ")
        self.exchanges.clear()
        self.queues.clear()

    def _require_channel(self) -> AbstractChannel:
        if not self.channel:
            raise RuntimeError("Not connected to RabbitMQ")
        return self.channel

    async def declare_exchange(
        self,
        name: str,
        exchange_type: ExchangeType = ExchangeType.TOPIC,
        durable: bool = True
    ) -> AbstractExchange:
        if name not in self.exchanges:
            channel = self._require_channel()
            self.exchanges[name] = await channel.declare_exchange(name, exchange_type, durable=durable)
            logger.info(f"Declared exchange: {name} ({exchange_type.value})")
        return self.exchanges[name]

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        exclusive: bool = False,
        auto_delete: bool = False
    ) -> AbstractQueue:
        if name not in self.queues:
            channel = self._require_channel()
            self.queues[name] = await channel.declare_queue(
                name,
                durable=durable,
                exclusive=exclusive,
                auto_delete=auto_delete
            )
            logger.info(f"Declared queue: {name} (durable: {durable})")
        return self.queues[name]

    async def bind_queue(self, queue_name: str, exchange_name: str, routing_key: str = "") -> None:
        """Bind a declared queue to a declared exchange"""
        if queue_name not in self.queues:
            raise ValueError(f"Queue {queue_name} not declared")
        if exchange_name not in self.exchanges:
            raise ValueError(f"Exchange {exchange_name} not declared")

        await self.queues[queue_name].bind(self.exchanges[exchange_name], routing_key=routing_key)
        logger.info(f"Bound '{queue_name}' to '{exchange_name}' ({routing_key or '-'})")

    async def publish(
        self,
        exchange_name: str,
        routing_key: str,
        message_body: str,
        correlation_id: Optional[str] = None,
        content_type: str = "application/json"
    ) -> None:
        """
        Publish a message to a declared exchange.

        Args:
            exchange_name: Target exchange
            routing_key: Routing key
            message_body: JSON string
            correlation_id: Operation id the message belongs to
            content_type: Content type (default: application/json)

        Raises:
            ValueError: If the exchange was not declared
        """
        exchange = self.exchanges.get(exchange_name)
        if exchange is None:
            raise ValueError(f"Exchange {exchange_name} not declared")

        message = Message(
            body=message_body.encode("utf-8"),
            content_type=content_type,
            correlation_id=correlation_id
        )
        await exchange.publish(message, routing_key=routing_key)

        logger.debug(f"Published to {exchange_name}/{routing_key} (correlation_id: {correlation_id})")

    async def publish_model(
        self,
        exchange_name: str,
        routing_key: str,
        model: TaskRelayBaseModel,
        correlation_id: Optional[str] = None
    ) -> None:
        await self.publish(exchange_name, routing_key, model.to_json(), correlation_id=correlation_id)

    async def relay_notification(self, envelope: NotificationEnvelope) -> None:
        """
        Hand an inbound notification to the orchestrator through the broker.

        Used by a webhook gateway; routing key is notification.<agent_id>.
        """
        routing_key = f"notification.{envelope.agent_id or 'unknown'}"
        await self.publish_model(
            NOTIFICATIONS_EXCHANGE,
            routing_key,
            envelope,
            correlation_id=envelope.operation_id
        )

    async def consume(
        self,
        queue_name: str,
        callback: MessageCallback,
        auto_ack: bool = False
    ) -> str:
        """
        Start consuming a declared queue.

        Args:
            queue_name: Queue to consume from
            callback: Async callback(message); it acknowledges via message.process()
            auto_ack: Acknowledge on delivery instead

        Returns:
            Consumer tag
        """
        if queue_name not in self.queues:
            raise ValueError(f"Queue {queue_name} not declared")

        consumer_tag = await self.queues[queue_name].consume(callback, no_ack=auto_ack)
        logger.info(f"Consuming '{queue_name}' (consumer_tag: {consumer_tag})")
        return consumer_tag

    async def setup_topology(self) -> None:
        """Declare the progress exchange and the notification exchange and inbox"""
        await self.declare_exchange(PROGRESS_EXCHANGE, ExchangeType.TOPIC)
        await self.declare_exchange(NOTIFICATIONS_EXCHANGE, ExchangeType.TOPIC)
        await self.declare_queue(NOTIFICATIONS_QUEUE, durable=True)
        await self.bind_queue(NOTIFICATIONS_QUEUE, NOTIFICATIONS_EXCHANGE, NOTIFICATION_ROUTING_PATTERN)
        logger.info("RabbitMQ topology ready")

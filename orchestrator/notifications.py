"""
Notification Handling - Resume suspended operations from agent callbacks

An agent that finishes work asynchronously calls back the URL built by
build_callback_url(). The notification is verified, correlated back to the
operation that started the work, and fed to TaskExecutor.resume().
"""

from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union, TYPE_CHECKING
from urllib.parse import quote
import asyncio
import logging

from pydantic import ValidationError

from shared.errors import (
    AgentNotFoundError,
    ConfigurationError,
    InvalidNotificationError,
    OrchestrationError,
    ProtocolError,
    UnknownOperationError,
)
from shared.messaging import NOTIFICATIONS_QUEUE, RabbitMQClient
from shared.schemas import AgentConfig, AgentOutcome, CorrelationEntry, NotificationEnvelope, NotificationPayload

from .correlation import CorrelationRegistry
from .verifier import NotificationVerifier

if TYPE_CHECKING:
    from .executor import TaskExecutor

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-TaskRelay-Signature"
TIMESTAMP_HEADER = "X-TaskRelay-Timestamp"


def build_callback_url(
    template: Optional[str],
    task_type: str,
    agent_id: str,
    operation_id: str
) -> str:
    """
    Fill the callback URL template for one operation.

    Placeholders {task_type}, {agent_id} and {operation_id} may appear in path
    segments or query parameters; values are URL-encoded.

    Example:
        https://me.example/webhooks/{task_type}/{agent_id}/{operation_id}
        https://me.example/webhooks?agent={agent_id}&op={operation_id}

    Raises:
        ConfigurationError: If no template is configured
    """
    if not template:
        raise ConfigurationError("callback URL template is not configured", config_field="callback_url_template")

    return (
        template
        .replace("{task_type}", quote(task_type, safe=""))
        .replace("{agent_id}", quote(agent_id, safe=""))
        .replace("{operation_id}", quote(operation_id, safe=""))
    )


class NotificationHandler:
    """
    Entry point for inbound notifications.

    Order of work: verify the signature, correlate by work id, then by
    conversation id, then by the explicit ids carried in the callback URL or
    payload, and finally resume the matching executor run.
    """

    def __init__(
        self,
        executor: "TaskExecutor",
        registry: CorrelationRegistry,
        verifier: NotificationVerifier,
        agents: Union[Mapping[str, AgentConfig], Iterable[AgentConfig]],
        rabbitmq: Optional[RabbitMQClient] = None,
        resolver: Any = None
    ):
        """
        Initialize notification handler.

        Args:
            executor: Executor that owns the suspended runs
            registry: Correlation registry shared with the executor
            verifier: Signature and freshness check
            agents: Configured agents, by id or as a list
            rabbitmq: Client used by start_consuming
            resolver: Default resolver for questions arriving in notifications
        """
        self.executor = executor
        self.registry = registry
        self.verifier = verifier
        if isinstance(agents, Mapping):
            self.agents: Dict[str, AgentConfig] = dict(agents)
        else:
            self.agents = {agent.id: agent for agent in agents}
        self.rabbitmq = rabbitmq
        self.resolver = resolver

        self.waiters: Dict[Tuple[str, str], asyncio.Future] = {}
        self._waiter_counts: Dict[Tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

        executor.add_finish_listener(self._resolve_waiter)

    async def handle(
        self,
        payload: Union[Dict[str, Any], NotificationPayload],
        signature_header: Optional[str],
        timestamp_header: Any,
        agent_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        raw_body: Optional[Union[str, bytes]] = None,
        resolver: Any = None
    ) -> AgentOutcome:
        """
        Verify, correlate and resume.

        Args:
            payload: Parsed notification body
            signature_header: Value of the signature header
            timestamp_header: Value of the timestamp header
            agent_id: Agent id taken from the callback URL, if present
            operation_id: Operation id taken from the callback URL, if present
            raw_body: Exact request body; signed instead of the re-serialized payload when given
            resolver: Resolver for a question carried by the notification

        Returns:
            AgentOutcome of the resumed operation

        Raises:
            InvalidNotificationError: Signature or timestamp check failed
            ProtocolError: Payload is not a valid notification
            UnknownOperationError: Nothing matches the notification
        """
        if isinstance(payload, NotificationPayload):
            payload = payload.model_dump(exclude_none=True)

        signed = raw_body if raw_body is not None else payload
        if not self.verifier.verify(signed, signature_header, timestamp_header):
            raise InvalidNotificationError(
                "Notification signature or timestamp is invalid",
                details={"agent_id": agent_id, "operation_id": operation_id}
            )

        try:
            notification = NotificationPayload.model_validate(payload)
        except ValidationError as e:
            raise ProtocolError(f"Invalid notification payload: {e}") from e

        entry = self.correlate(notification, agent_id=agent_id, operation_id=operation_id)

        agent = self.agents.get(entry.agent_id)
        if agent is None:
            raise AgentNotFoundError(entry.agent_id, self.agents.keys())

        logger.info(
            f"Notification '{notification.status}' resumes {entry.operation_id}/{entry.agent_id}"
        )
        outcome = await self.executor.resume(
            agent,
            entry.operation_id,
            payload,
            resolver=resolver or self.resolver
        )

        return outcome

    def correlate(
        self,
        notification: NotificationPayload,
        agent_id: Optional[str] = None,
        operation_id: Optional[str] = None
    ) -> CorrelationEntry:
        """
        Map a notification to the (operation_id, agent_id) it belongs to.

        Raises:
            UnknownOperationError: If no lookup matches
        """
        entry = None
        if notification.task_id:
            entry = self.registry.lookup_by_work(notification.task_id, agent_id)
        if entry is None and notification.context_id:
            entry = self.registry.lookup_by_conversation(notification.context_id, agent_id)

        explicit_operation = operation_id or notification.operation_id
        if entry is not None:
            if explicit_operation and explicit_operation != entry.operation_id:
                logger.warning(
                    f"Notification names operation {explicit_operation} but its ids "
                    f"correlate to {entry.operation_id}; using the correlated operation"
                )
            return entry

        if explicit_operation and agent_id:
            return CorrelationEntry(operation_id=explicit_operation, agent_id=agent_id)

        raise UnknownOperationError(
            "Notification does not match any known operation",
            details={
                "task_id": notification.task_id,
                "context_id": notification.context_id,
                "operation_id": explicit_operation,
                "agent_id": agent_id,
            }
        )

    async def wait_for_outcome(
        self,
        operation_id: str,
        agent_id: str,
        timeout: float = 120.0
    ) -> AgentOutcome:
        """
        Wait until a suspended operation reaches a terminal state.

        Returns immediately if it already did. Any terminal outcome wakes the
        waiters: a notification, a direct resume or a cancel.

        Raises:
            asyncio.TimeoutError: If the operation does not finish within timeout
        """
        key = (operation_id, agent_id)

        async with self._lock:
            record = self.executor.get_pending(operation_id, agent_id)
            if record is not None and record.is_finished:
                return record.final_outcome
            future = self.waiters.get(key)
            if future is None:
                future = self.waiters[key] = asyncio.get_running_loop().create_future()
            self._waiter_counts[key] = self._waiter_counts.get(key, 0) + 1

        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        finally:
            async with self._lock:
                if self.waiters.get(key) is future:
                    remaining = self._waiter_counts[key] - 1
                    if remaining:
                        self._waiter_counts[key] = remaining
                    else:
                        del self.waiters[key]
                        del self._waiter_counts[key]

    async def _resolve_waiter(self, outcome: AgentOutcome) -> None:
        key = (outcome.operation_id, outcome.agent_id)
        async with self._lock:
            future = self.waiters.pop(key, None)
            self._waiter_counts.pop(key, None)
        if future is not None and not future.done():
            future.set_result(outcome)

    async def handle_envelope(self, envelope: NotificationEnvelope) -> Optional[AgentOutcome]:
        """Process a notification relayed over the broker; rejected ones are logged and dropped"""
        try:
            return await self.handle(
                envelope.payload,
                envelope.signature,
                envelope.timestamp,
                agent_id=envelope.agent_id,
                operation_id=envelope.operation_id
            )
        except OrchestrationError as e:
            logger.warning(f"Dropped relayed notification [{e.code}]: {e.message}")
            return None

    async def start_consuming(self, queue_name: str = NOTIFICATIONS_QUEUE) -> None:
        """
        Consume NotificationEnvelope messages from a queue.

        Runs indefinitely until cancelled.
        """
        if self.rabbitmq is None:
            raise ConfigurationError("RabbitMQ client required to consume notifications", config_field="rabbitmq")

        async def message_handler(message):
            async with message.process():
                envelope = NotificationEnvelope.from_json(message.body.decode())
                await self.handle_envelope(envelope)

        await self.rabbitmq.consume(queue_name, message_handler)

        # Keep consuming
        while True:
            await asyncio.sleep(1)

"""
Task Observers

The executor reports every protocol turn and state transition as a TaskEvent.
Observers only watch: they never influence control flow, and the executor
swallows anything they raise.
"""

from abc import ABC, abstractmethod
import logging

from shared.messaging import PROGRESS_EXCHANGE, RabbitMQClient
from shared.schemas import TaskEvent

logger = logging.getLogger(__name__)


class TaskObserver(ABC):
    """Receives TaskEvents from the executor"""

    @abstractmethod
    async def on_event(self, event: TaskEvent) -> None:
        pass


class LoggingObserver(TaskObserver):
    """Writes each event to the log"""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    async def on_event(self, event: TaskEvent) -> None:
        state = event.state.value if event.state else "-"
        logger.log(
            self.level,
            f"[{event.event_type}] {event.operation_id}/{event.agent_id} "
            f"op={event.operation_name} state={state} "
            f"conversation={event.conversation_id} work={event.work_id}"
        )


class ProgressPublisher(TaskObserver):
    """
    Publishes progress events to RabbitMQ.

    Events go to the taskrelay.progress topic exchange with routing key
    task.<event_type>, so subscribers can bind to e.g. "task.status_update".
    """

    def __init__(self, rabbitmq: RabbitMQClient, exchange_name: str = PROGRESS_EXCHANGE):
        """
        Initialize progress publisher.

        Args:
            rabbitmq: Connected RabbitMQ client
            exchange_name: Topic exchange receiving the events
        """
        self.rabbitmq = rabbitmq
        self.exchange_name = exchange_name

    async def on_event(self, event: TaskEvent) -> None:
        await self.rabbitmq.publish(
            exchange_name=self.exchange_name,
            routing_key=f"task.{event.event_type}",
            message_body=event.to_json(),
            correlation_id=event.operation_id
        )

"""
Orchestrator Service

Wires the engine together from OrchestratorSettings:
1. Agent transport, correlation registry and pending store
2. Task executor with logging (and optionally RabbitMQ progress) observers
3. Multi-agent orchestrator and notification handler
4. Optional RabbitMQ connection for progress events and relayed notifications

Run standalone (`python -m orchestrator.main`) to consume relayed
notifications from RabbitMQ; the HTTP API embeds the same service.
"""

import asyncio
import logging
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from shared.config import OrchestratorSettings
from shared.file_logger import setup_file_logger
from shared.messaging import NOTIFICATIONS_QUEUE, RabbitMQClient
from shared.transport import AgentTransport

from .correlation import CorrelationRegistry
from .executor import TaskExecutor
from .fanout import MultiAgentOrchestrator
from .notifications import NotificationHandler
from .pending_store import FilePendingStore, InMemoryPendingStore, PendingOperationStore
from .progress_publisher import LoggingObserver, ProgressPublisher
from .verifier import NotificationVerifier

logger = logging.getLogger(__name__)


class OrchestratorService:
    """Owns every engine component for one process"""

    def __init__(
        self,
        settings: OrchestratorSettings,
        transport: Optional[AgentTransport] = None,
        pending_store: Optional[PendingOperationStore] = None,
        rabbitmq: Optional[RabbitMQClient] = None
    ):
        """
        Initialize service components.

        Args:
            settings: Runtime settings
            transport: Override the HTTP transport (tests pass a fake)
            pending_store: Override the store chosen from settings
            rabbitmq: Override the RabbitMQ client built from settings
        """
        self.settings = settings

        self.transport = transport or AgentTransport(timeout=settings.default_timeout)
        self.registry = CorrelationRegistry()
        if pending_store is None:
            if settings.pending_dir:
                pending_store = FilePendingStore(settings.pending_dir)
            else:
                pending_store = InMemoryPendingStore()
        self.pending_store = pending_store

        self.executor = TaskExecutor(
            transport=self.transport,
            registry=self.registry,
            pending_store=self.pending_store,
            observers=[LoggingObserver()],
            default_timeout=settings.default_timeout,
            max_clarifications=settings.max_clarifications,
            callback_url_template=settings.callback_url_template,
            cleanup_on_finish=settings.cleanup_on_finish,
        )
        self.orchestrator = MultiAgentOrchestrator(self.executor, settings.agents)
        self.verifier = NotificationVerifier(shared_secret=settings.webhook_secret)

        self.rabbitmq = rabbitmq
        self.notifications = NotificationHandler(
            executor=self.executor,
            registry=self.registry,
            verifier=self.verifier,
            agents=settings.agents,
            rabbitmq=rabbitmq,
        )

        self.tasks: List[asyncio.Task] = []
        self.shutdown_event = asyncio.Event()

        if not self.verifier.configured:
            logger.warning("TASKRELAY_WEBHOOK_SECRET not set; every inbound notification will be rejected")
        logger.info(f"Service initialized with {len(settings.agents)} agents")

    async def start(self) -> None:
        """Connect to RabbitMQ when progress publishing or notification relay is enabled"""
        if not self.settings.uses_rabbitmq:
            return

        try:
            if self.rabbitmq is None:
                self.rabbitmq = RabbitMQClient.from_settings(self.settings)
            await self.rabbitmq.connect()
            await self.rabbitmq.setup_topology()
        except Exception as e:
            logger.warning(f"RabbitMQ unavailable, continuing without it: {e}")
            self.rabbitmq = None
            return

        self.notifications.rabbitmq = self.rabbitmq

        if self.settings.publish_progress:
            self.executor.add_observer(ProgressPublisher(self.rabbitmq))
            logger.info("Publishing task progress to RabbitMQ")

        if self.settings.consume_notifications:
            self.tasks.append(asyncio.create_task(self.notifications.start_consuming(NOTIFICATIONS_QUEUE)))
            logger.info(f"Consuming relayed notifications from '{NOTIFICATIONS_QUEUE}'")

    async def shutdown(self) -> None:
        """Cancel background consumers, then close connections"""
        logger.info("Shutting down...")

        for task in self.tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.tasks.clear()

        if self.rabbitmq:
            await self.rabbitmq.disconnect()

        await self.transport.aclose()
        logger.info("Shutdown complete")

    def signal_handler(self, sig, frame):
        """Handle shutdown signals"""
        logger.info(f"Received signal {sig}")
        self.shutdown_event.set()


async def main():
    """Run the notification consumer until interrupted"""
    load_dotenv()
    settings = OrchestratorSettings.from_env()
    setup_file_logger("orchestrator", log_level=settings.log_level, output_dir=settings.log_dir,
                      extra_loggers=["shared"])

    settings.consume_notifications = True
    service = OrchestratorService(settings)

    signal.signal(signal.SIGINT, service.signal_handler)
    signal.signal(signal.SIGTERM, service.signal_handler)

    await service.start()
    try:
        await service.shutdown_event.wait()
    finally:
        await service.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n[ORCHESTRATOR] Interrupted")
    except Exception as e:
        print(f"[ORCHESTRATOR] Fatal error: {e}")
        sys.exit(1)

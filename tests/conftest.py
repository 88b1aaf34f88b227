"""
TaskRelay - Test Fixtures

Provides a scripted agent transport, engine fixtures, and RabbitMQ for the
broker integration tests.

HYBRID MODE for RabbitMQ: testcontainers (automatic) or an external broker.
- Linux/Mac: Uses testcontainers automatically
- Windows: Can use external RabbitMQ by setting RABBITMQ_HOST environment variable
"""

import os
import platform
from pathlib import Path
from typing import Any, Dict, List

import pytest
from dotenv import load_dotenv

from shared.messaging import RabbitMQClient
from shared.schemas import AgentConfig, TransportResponse
from shared.transport import parse_agent_response
from orchestrator.correlation import CorrelationRegistry
from orchestrator.executor import TaskExecutor
from orchestrator.fanout import MultiAgentOrchestrator
from orchestrator.notifications import NotificationHandler
from orchestrator.pending_store import InMemoryPendingStore
from orchestrator.verifier import NotificationVerifier

# Load .env file for tests
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")

WEBHOOK_SECRET = "test-secret"


class FakeTransport:
    """
    Scripted stand-in for AgentTransport.

    Each agent id maps to a list of steps consumed one per turn. A step is a
    result dict (parsed like a real agent reply), a TransportResponse, an
    exception to raise, or an async callable taking the call kwargs.
    """

    def __init__(self, scripts: Dict[str, List[Any]] = None):
        self.scripts = {agent_id: list(steps) for agent_id, steps in (scripts or {}).items()}
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def script(self, agent_id: str, *steps) -> None:
        self.scripts.setdefault(agent_id, []).extend(steps)

    def calls_for(self, agent_id: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["agent"].id == agent_id]

    async def call_agent(
        self,
        agent,
        operation_name,
        args,
        conversation_id=None,
        work_id=None,
        callback_url=None
    ) -> TransportResponse:
        call = {
            "agent": agent,
            "operation_name": operation_name,
            "args": dict(args),
            "conversation_id": conversation_id,
            "work_id": work_id,
            "callback_url": callback_url,
        }
        self.calls.append(call)

        steps = self.scripts.get(agent.id)
        if not steps:
            raise AssertionError(f"No scripted reply left for agent '{agent.id}'")
        step = steps.pop(0)

        if isinstance(step, BaseException):
            raise step
        if callable(step):
            step = await step(call)
        if isinstance(step, TransportResponse):
            return step
        return parse_agent_response(step)

    async def aclose(self) -> None:
        self.closed = True


def make_agent(agent_id: str, **overrides) -> AgentConfig:
    fields = {"id": agent_id, "agent_uri": f"https://{agent_id}.agents.test/rpc"}
    fields.update(overrides)
    return AgentConfig(**fields)


@pytest.fixture
def agents() -> List[AgentConfig]:
    return [make_agent("alpha"), make_agent("beta"), make_agent("gamma")]


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def registry() -> CorrelationRegistry:
    return CorrelationRegistry()


@pytest.fixture
def pending_store() -> InMemoryPendingStore:
    return InMemoryPendingStore()


@pytest.fixture
def executor(fake_transport, registry, pending_store) -> TaskExecutor:
    return TaskExecutor(
        transport=fake_transport,
        registry=registry,
        pending_store=pending_store,
        default_timeout=5.0,
        max_clarifications=3
    )


@pytest.fixture
def orchestrator(executor, agents) -> MultiAgentOrchestrator:
    return MultiAgentOrchestrator(executor, agents)


@pytest.fixture
def verifier() -> NotificationVerifier:
    return NotificationVerifier(shared_secret=WEBHOOK_SECRET)


@pytest.fixture
def notification_handler(executor, registry, verifier, agents) -> NotificationHandler:
    return NotificationHandler(executor=executor, registry=registry, verifier=verifier, agents=agents)


@pytest.fixture(scope="session")
def rabbitmq_connection_info():
    """
    Provides RabbitMQ connection information.

    HYBRID MODE:
    - If RABBITMQ_HOST is set: Uses external RabbitMQ (e.g., docker-compose)
    - Otherwise: Uses testcontainers (automatic isolation)
    """
    external_host = os.getenv("RABBITMQ_HOST")

    if external_host:
        print(f"\n[TEST FIXTURE] Using external RabbitMQ at {external_host}")
        yield {
            "host": external_host,
            "port": int(os.getenv("RABBITMQ_PORT", "5672")),
            "user": os.getenv("RABBITMQ_USER", "guest"),
            "password": os.getenv("RABBITMQ_PASSWORD", "guest"),
            "source": "external"
        }
        return

    print(f"\n[TEST FIXTURE] Using testcontainers for RabbitMQ (platform: {platform.system()})")
    try:
        from testcontainers.rabbitmq import RabbitMqContainer
    except ImportError:
        pytest.skip("testcontainers not available and RABBITMQ_HOST not set")

    try:
        container = RabbitMqContainer("rabbitmq:3.12-management")
        container.start()
    except Exception as e:
        pytest.skip(f"Docker not available for testcontainers: {e}")

    try:
        yield {
            "host": container.get_container_host_ip(),
            "port": int(container.get_exposed_port(5672)),
            "user": "guest",
            "password": "guest",
            "source": "testcontainers"
        }
    finally:
        container.stop()


@pytest.fixture
async def rabbitmq_client(rabbitmq_connection_info):
    """
    Create a RabbitMQ client connected to RabbitMQ.

    Works with both testcontainers and external RabbitMQ.
    """
    client = RabbitMQClient(
        host=rabbitmq_connection_info["host"],
        port=rabbitmq_connection_info["port"],
        user=rabbitmq_connection_info["user"],
        password=rabbitmq_connection_info["password"],
        max_retries=3,
        retry_delay=1
    )

    await client.connect()
    await client.setup_topology()

    yield client

    await client.disconnect()


@pytest.fixture(name="make_agent")
def make_agent_fixture():
    """Factory for AgentConfig objects"""
    return make_agent

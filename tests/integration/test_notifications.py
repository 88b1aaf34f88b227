"""
Tests for notification handling

Verify -> correlate -> resume, plus callback URL construction and the
in-process outcome waiters.
"""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from orchestrator.notifications import NotificationHandler, build_callback_url
from orchestrator.verifier import sign
from shared.errors import ConfigurationError, InvalidNotificationError, UnknownOperationError
from shared.schemas import NotificationEnvelope, TaskState

SECRET = "test-secret"


def signed(payload):
    signature, ts = sign(payload, secret=SECRET)
    return payload, signature, str(ts)


async def start_deferred(executor, fake_transport, agents, work_id="w1", context_id=None):
    reply = {"status": "working", "task_id": work_id}
    if context_id:
        reply["context_id"] = context_id
    fake_transport.script("alpha", reply)
    return await executor.run(agents[0], "create_media_buy", {"budget": 100})


class TestCallbackUrl:
    """Test build_callback_url()"""

    def test_path_placeholders(self):
        url = build_callback_url(
            "https://me.test/webhooks/{task_type}/{agent_id}/{operation_id}",
            "create_media_buy", "alpha", "op-1"
        )
        assert url == "https://me.test/webhooks/create_media_buy/alpha/op-1"

    def test_query_placeholders(self):
        url = build_callback_url(
            "https://me.test/webhooks?agent_id={agent_id}&operation_id={operation_id}&task_type={task_type}",
            "sync", "alpha", "op-1"
        )
        assert url == "https://me.test/webhooks?agent_id=alpha&operation_id=op-1&task_type=sync"

    def test_values_are_encoded(self):
        url = build_callback_url("https://me.test/hook/{agent_id}?op={operation_id}", "t", "a/b", "op 1&x")
        assert url == "https://me.test/hook/a%2Fb?op=op%201%26x"

    def test_missing_template(self):
        with pytest.raises(ConfigurationError):
            build_callback_url(None, "t", "a", "op")


class TestHandle:
    """Test NotificationHandler.handle()"""

    @pytest.mark.asyncio
    async def test_deferred_then_resumed(self, executor, fake_transport, agents, notification_handler):
        """working w1 -> pending; signed notification w1 -> completed"""
        pending = await start_deferred(executor, fake_transport, agents)
        assert pending.pending is True

        payload, signature, ts = signed({"status": "completed", "task_id": "w1", "result": {"buy_id": "b-1"}})
        outcome = await notification_handler.handle(payload, signature, ts)

        assert outcome.success is True
        assert outcome.state == TaskState.COMPLETED
        assert outcome.operation_id == pending.operation_id
        assert outcome.agent_id == "alpha"
        assert outcome.data == {"buy_id": "b-1"}

    @pytest.mark.asyncio
    async def test_correlates_by_conversation_id(self, executor, fake_transport, agents, notification_handler):
        pending = await start_deferred(executor, fake_transport, agents, work_id="w-x", context_id="ctx-9")

        payload, signature, ts = signed({"status": "completed", "context_id": "ctx-9", "result": {}})
        outcome = await notification_handler.handle(payload, signature, ts)

        assert outcome.operation_id == pending.operation_id
        assert outcome.state == TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_correlates_by_explicit_ids(self, executor, fake_transport, agents, registry, notification_handler):
        pending = await start_deferred(executor, fake_transport, agents)
        registry.remove(pending.operation_id, "alpha")

        payload, signature, ts = signed({"status": "completed", "result": {"ok": True}})
        outcome = await notification_handler.handle(
            payload, signature, ts, agent_id="alpha", operation_id=pending.operation_id
        )

        assert outcome.data == {"ok": True}

    @pytest.mark.asyncio
    async def test_invalid_signature(self, executor, fake_transport, agents, notification_handler):
        await start_deferred(executor, fake_transport, agents)
        payload, _, ts = signed({"status": "completed", "task_id": "w1"})

        with pytest.raises(InvalidNotificationError):
            await notification_handler.handle(payload, "sha256=" + "0" * 64, ts)

    @pytest.mark.asyncio
    async def test_unknown_work_id(self, notification_handler):
        payload, signature, ts = signed({"status": "completed", "task_id": "w-unknown"})

        with pytest.raises(UnknownOperationError):
            await notification_handler.handle(payload, signature, ts)

    @pytest.mark.asyncio
    async def test_duplicate_delivery(self, executor, fake_transport, agents, notification_handler):
        await start_deferred(executor, fake_transport, agents)
        payload, signature, ts = signed({"status": "completed", "task_id": "w1", "result": {"n": 1}})

        first = await notification_handler.handle(payload, signature, ts)
        second = await notification_handler.handle(payload, signature, ts)

        assert second == first

    @pytest.mark.asyncio
    async def test_working_notification_keeps_pending(self, executor, fake_transport, agents, notification_handler):
        pending = await start_deferred(executor, fake_transport, agents)

        payload, signature, ts = signed({"status": "working", "task_id": "w1"})
        outcome = await notification_handler.handle(payload, signature, ts)

        assert outcome.pending is True
        assert not executor.get_pending(pending.operation_id, "alpha").is_finished


class TestWaitForOutcome:
    """Test in-process waiting on a suspended operation"""

    @pytest.mark.asyncio
    async def test_waiter_resolved_by_notification(self, executor, fake_transport, agents, notification_handler):
        pending = await start_deferred(executor, fake_transport, agents)

        waiter = asyncio.create_task(notification_handler.wait_for_outcome(pending.operation_id, "alpha", timeout=2))
        await asyncio.sleep(0)

        payload, signature, ts = signed({"status": "completed", "task_id": "w1", "result": {"done": 1}})
        await notification_handler.handle(payload, signature, ts)

        outcome = await waiter
        assert outcome.data == {"done": 1}
        assert notification_handler.waiters == {}

    @pytest.mark.asyncio
    async def test_already_finished_returns_immediately(self, executor, fake_transport, agents, notification_handler):
        pending = await start_deferred(executor, fake_transport, agents)
        payload, signature, ts = signed({"status": "completed", "task_id": "w1"})
        await notification_handler.handle(payload, signature, ts)

        outcome = await notification_handler.wait_for_outcome(pending.operation_id, "alpha", timeout=0.1)

        assert outcome.state == TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_timeout(self, executor, fake_transport, agents, notification_handler):
        pending = await start_deferred(executor, fake_transport, agents)

        with pytest.raises(asyncio.TimeoutError):
            await notification_handler.wait_for_outcome(pending.operation_id, "alpha", timeout=0.05)

        assert notification_handler.waiters == {}

    @pytest.mark.asyncio
    async def test_waiter_resolved_by_cancel(self, executor, fake_transport, agents, notification_handler):
        pending = await start_deferred(executor, fake_transport, agents)

        waiter = asyncio.create_task(notification_handler.wait_for_outcome(pending.operation_id, "alpha", timeout=2))
        await asyncio.sleep(0)

        assert await executor.cancel(pending.operation_id, "alpha") is True

        outcome = await waiter
        assert outcome.state == TaskState.CANCELED
        assert outcome.error.code == "TASK_CANCELED"
        assert notification_handler.waiters == {}

    @pytest.mark.asyncio
    async def test_waiter_resolved_by_direct_resume(self, executor, fake_transport, agents, notification_handler):
        pending = await start_deferred(executor, fake_transport, agents)

        waiter = asyncio.create_task(notification_handler.wait_for_outcome(pending.operation_id, "alpha", timeout=2))
        await asyncio.sleep(0)

        await executor.resume(agents[0], pending.operation_id, {"status": "completed", "result": {"done": 2}})

        outcome = await waiter
        assert outcome.data == {"done": 2}

    @pytest.mark.asyncio
    async def test_waiters_share_one_entry(self, executor, fake_transport, agents, notification_handler):
        pending = await start_deferred(executor, fake_transport, agents)

        patient = asyncio.create_task(notification_handler.wait_for_outcome(pending.operation_id, "alpha", timeout=2))
        with pytest.raises(asyncio.TimeoutError):
            await notification_handler.wait_for_outcome(pending.operation_id, "alpha", timeout=0.05)

        # The remaining waiter keeps the entry
        assert list(notification_handler.waiters) == [(pending.operation_id, "alpha")]

        payload, signature, ts = signed({"status": "completed", "task_id": "w1"})
        await notification_handler.handle(payload, signature, ts)

        assert (await patient).state == TaskState.COMPLETED
        assert notification_handler.waiters == {}


class TestBrokerRelay:
    """Test notifications relayed through RabbitMQ"""

    @pytest.mark.asyncio
    async def test_envelope_is_handled(self, executor, fake_transport, agents, notification_handler):
        pending = await start_deferred(executor, fake_transport, agents)
        payload, signature, ts = signed({"status": "completed", "task_id": "w1", "result": {}})

        outcome = await notification_handler.handle_envelope(
            NotificationEnvelope(payload=payload, signature=signature, timestamp=ts, agent_id="alpha")
        )

        assert outcome.operation_id == pending.operation_id

    @pytest.mark.asyncio
    async def test_bad_envelope_is_dropped(self, notification_handler):
        envelope = NotificationEnvelope(payload={"status": "completed", "task_id": "w1"}, signature="sha256=00", timestamp="1")

        assert await notification_handler.handle_envelope(envelope) is None

    @pytest.mark.asyncio
    async def test_consume_registers_message_handler(self, executor, registry, verifier, agents):
        rabbitmq = AsyncMock()
        handler = NotificationHandler(executor, registry, verifier, agents, rabbitmq=rabbitmq)

        task = asyncio.create_task(handler.start_consuming("inbox"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        queue_name, callback = rabbitmq.consume.call_args.args
        assert queue_name == "inbox"

        # Feed one message through the registered callback
        handler.handle_envelope = AsyncMock(return_value=None)
        message = Mock()
        message.body = json.dumps({"payload": {"status": "completed"}, "signature": None}).encode()
        message.process.return_value.__aenter__ = AsyncMock(return_value=None)
        message.process.return_value.__aexit__ = AsyncMock(return_value=False)

        await callback(message)

        handler.handle_envelope.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_consume_without_broker(self, notification_handler):
        with pytest.raises(ConfigurationError):
            await notification_handler.start_consuming()

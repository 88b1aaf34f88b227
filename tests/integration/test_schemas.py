"""
Integration tests for Pydantic schemas.
"""

import pytest
from pydantic import ValidationError

from shared.errors import TaskAbortedError
from shared.schemas import (
    AgentConfig,
    AgentOutcome,
    CorrelationEntry,
    NotificationEnvelope,
    NotificationPayload,
    PendingOperation,
    TaskEvent,
    TaskState,
    TERMINAL_STATES,
    new_operation_id,
)


def test_agent_config_defaults():
    """Name falls back to the id"""
    agent = AgentConfig(id="alpha", agent_uri="https://alpha.agents.test/rpc")

    assert agent.name == "alpha"
    assert agent.protocol == "a2a"
    assert agent.headers == {}


def test_agent_config_requires_id():
    with pytest.raises(ValidationError):
        AgentConfig(id="", agent_uri="https://x.test")


def test_terminal_states():
    assert TERMINAL_STATES == {TaskState.COMPLETED, TaskState.FAILED, TaskState.REJECTED, TaskState.CANCELED}
    assert TaskState.CANCELED.is_terminal
    assert not TaskState.INPUT_REQUIRED.is_terminal


def test_operation_ids_are_unique():
    first, second = new_operation_id(), new_operation_id()

    assert first.startswith("op-")
    assert first != second


def test_outcome_data_xor_error():
    """An outcome never carries both data and an error"""
    error = TaskAbortedError("op-1").to_info()

    with pytest.raises(ValidationError):
        AgentOutcome(agent_id="a", success=False, state=TaskState.FAILED, data={"x": 1}, error=error)
    with pytest.raises(ValidationError):
        AgentOutcome(agent_id="a", success=False, state=TaskState.FAILED)
    with pytest.raises(ValidationError):
        AgentOutcome(agent_id="a", success=True, state=TaskState.COMPLETED, error=error)


def test_pending_outcome_is_success():
    outcome = AgentOutcome(agent_id="a", success=True, pending=True, state=TaskState.WORKING)

    assert outcome.data is None
    assert outcome.error is None


def test_correlation_entry_is_frozen():
    entry = CorrelationEntry(operation_id="op-1", agent_id="a", work_id="w1")

    with pytest.raises(ValidationError):
        entry.work_id = "w2"


def test_pending_operation_serialization():
    """Records are persisted as JSON"""
    record = PendingOperation(operation_id="op-1", agent_id="a", operation_name="sync", args={"n": 1}, work_id="w1",
                              max_clarifications=5, timeout=12.5)

    json_str = record.to_json()
    assert "op-1" in json_str

    restored = PendingOperation.from_json(json_str)
    assert restored.args == {"n": 1}
    assert restored.state == TaskState.WORKING
    assert restored.is_finished is False
    assert restored.max_clarifications == 5
    assert restored.timeout == 12.5


def test_notification_payload_keeps_extra_fields():
    payload = NotificationPayload.model_validate({"status": "completed", "task_id": "w1", "vendor_field": 7})

    assert payload.task_id == "w1"
    assert payload.model_dump()["vendor_field"] == 7


def test_notification_payload_requires_status():
    with pytest.raises(ValidationError):
        NotificationPayload.model_validate({"task_id": "w1"})


def test_notification_envelope_accepts_numeric_timestamp():
    """Relayed headers may carry the Unix timestamp as a number or a string"""
    numeric = NotificationEnvelope.from_json('{"payload": {"status": "completed"}, "timestamp": 1700000000}')
    text = NotificationEnvelope(payload={"status": "completed"}, timestamp="1700000000")

    assert numeric.timestamp == 1700000000
    assert text.timestamp == "1700000000"


def test_task_event_type_is_closed():
    with pytest.raises(ValidationError):
        TaskEvent(event_type="something_else", operation_id="op-1", agent_id="a")

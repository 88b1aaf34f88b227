"""
TaskRelay - Data Schemas

Pydantic models shared by the orchestration engine, the transport and the API.
"""

from pydantic import BaseModel, Field, ConfigDict, model_validator
from datetime import datetime, UTC
from enum import Enum
from typing import Optional, Dict, Any, List, Literal, Union
import uuid


def new_operation_id() -> str:
    """Generate a fresh caller-side operation id"""
    return f"op-{uuid.uuid4()}"


class TaskRelayBaseModel(BaseModel):
    """Base class for all serializable TaskRelay records"""
    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=False
    )

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, json_str: str):
        """Deserialize from JSON string"""
        return cls.model_validate_json(json_str)


# ============================================
# Task Lifecycle
# ============================================

class TaskState(str, Enum):
    """Lifecycle state of one operation against one agent"""
    SUBMITTED = "submitted"
    WORKING = "working"
    INPUT_REQUIRED = "input-required"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    TaskState.COMPLETED,
    TaskState.FAILED,
    TaskState.REJECTED,
    TaskState.CANCELED,
})

# Status values an agent may report on a turn. Superset of TaskState.
AUTH_REQUIRED_STATUS = "auth-required"
UNKNOWN_STATUS = "unknown"
AGENT_STATUSES = frozenset({s.value for s in TaskState} | {AUTH_REQUIRED_STATUS, UNKNOWN_STATUS})


class Recovery(str, Enum):
    """How a caller may recover from a failure"""
    TRANSIENT = "transient"
    CORRECTABLE = "correctable"
    TERMINAL = "terminal"


class ErrorInfo(TaskRelayBaseModel):
    """Classified error carried by a failed outcome"""
    code: str
    message: str
    recovery: Recovery
    details: Dict[str, Any] = {}


# ============================================
# Agent Configuration
# ============================================

class AgentConfig(TaskRelayBaseModel):
    """Caller-side configuration for one remote agent"""
    id: str = Field(..., min_length=1)
    name: str = ""
    agent_uri: str
    protocol: Literal["a2a", "mcp"] = "a2a"
    auth_token: Optional[str] = None
    headers: Dict[str, str] = {}
    timeout_seconds: Optional[float] = None

    @model_validator(mode="after")
    def _default_name(self):
        if not self.name:
            self.name = self.id
        return self


# ============================================
# Conversation
# ============================================

class InputRequest(TaskRelayBaseModel):
    """Question an agent asks while a task is input-required"""
    question: str = "Please provide input"
    field: Optional[str] = None
    expected_type: Optional[Literal["string", "number", "boolean", "object", "array"]] = None
    suggestions: Optional[List[Any]] = None
    required: bool = True
    validation: Optional[Dict[str, Any]] = None
    context: Optional[str] = None


class ConversationMessage(TaskRelayBaseModel):
    """One entry in the conversation history of a run"""
    id: str = Field(default_factory=lambda: f"msg-{uuid.uuid4()}")
    role: Literal["user", "agent", "system"]
    kind: Literal["request", "response", "clarification", "notification"]
    content: Any = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: Dict[str, Any] = {}


# ============================================
# Transport
# ============================================

class TransportResponse(TaskRelayBaseModel):
    """Interpreted reply to one protocol turn"""
    status: str
    conversation_id: Optional[str] = None
    work_id: Optional[str] = None
    data: Any = None
    input_request: Optional[InputRequest] = None
    error: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = {}


class PaginationRequest(TaskRelayBaseModel):
    """Cursor and requested page size forwarded to a paginated call"""
    cursor: Optional[str] = None
    max_results: Optional[int] = None


# ============================================
# Outcomes
# ============================================

class AgentOutcome(TaskRelayBaseModel):
    """
    Per-agent result of a task or fan-out call.

    Carries either data or an error, never both. A pending outcome is a
    successful hand-off: the agent accepted the work and will notify later.
    """
    agent_id: str
    agent_name: Optional[str] = None
    operation_id: Optional[str] = None
    operation_name: Optional[str] = None
    success: bool
    pending: bool = False
    state: TaskState
    data: Any = None
    error: Optional[ErrorInfo] = None
    conversation_id: Optional[str] = None
    work_id: Optional[str] = None
    clarification_rounds: int = 0
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    response_time_ms: float = 0.0
    conversation: List[ConversationMessage] = []

    @model_validator(mode="after")
    def _data_xor_error(self):
        if self.data is not None and self.error is not None:
            raise ValueError("An outcome carries either data or an error, not both")
        if not self.success and self.error is None:
            raise ValueError("A failed outcome must carry an error")
        if self.success and self.error is not None:
            raise ValueError("A successful outcome cannot carry an error")
        return self


# ============================================
# Correlation & Suspension
# ============================================

class CorrelationEntry(TaskRelayBaseModel):
    """Remote-issued ids mapped back to the caller's (operation, agent) pair"""
    model_config = ConfigDict(frozen=True)

    operation_id: str
    agent_id: str
    conversation_id: Optional[str] = None
    work_id: Optional[str] = None


class PendingOperation(TaskRelayBaseModel):
    """Persisted record of an operation suspended awaiting a notification"""
    operation_id: str
    agent_id: str
    operation_name: str
    args: Dict[str, Any] = {}
    conversation_id: Optional[str] = None
    work_id: Optional[str] = None
    state: TaskState = TaskState.WORKING
    clarification_rounds: int = 0
    # Limits given to the run that suspended
    max_clarifications: Optional[int] = None
    timeout: Optional[float] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    final_outcome: Optional[AgentOutcome] = None

    @property
    def is_finished(self) -> bool:
        return self.final_outcome is not None


# ============================================
# Notifications
# ============================================

class NotificationPayload(TaskRelayBaseModel):
    """Body of an asynchronous status notification sent by an agent"""
    model_config = ConfigDict(extra="allow")

    operation_id: Optional[str] = None
    context_id: Optional[str] = None
    task_id: Optional[str] = None
    task_type: Optional[str] = None
    status: str
    result: Any = None
    error: Optional[Any] = None
    message: Optional[str] = None
    timestamp: Optional[str] = None


class NotificationEnvelope(TaskRelayBaseModel):
    """Notification relayed over the message broker with its headers"""
    payload: Dict[str, Any]
    signature: Optional[str] = None
    timestamp: Optional[Union[int, str]] = None
    agent_id: Optional[str] = None
    operation_id: Optional[str] = None


# ============================================
# Progress Events (observer hook)
# ============================================

class TaskEvent(TaskRelayBaseModel):
    """Protocol turn or state change reported to observers"""
    event_type: Literal[
        "protocol_request",
        "protocol_response",
        "status_update",
        "notification_received"
    ]
    operation_id: str
    agent_id: str
    operation_name: Optional[str] = None
    conversation_id: Optional[str] = None
    work_id: Optional[str] = None
    state: Optional[TaskState] = None
    payload: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

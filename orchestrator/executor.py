"""
Single-Agent Task Executor

Drives one operation against one agent through its lifecycle:

    submitted -> working -> {input-required <-> working}
              -> {completed | failed | rejected | canceled}

Clarification rounds are answered by an InputResolver. When the agent
finishes asynchronously, the run is suspended as a PendingOperation record and
resumed later by resume() when the matching notification arrives; nothing is
kept blocked in between.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import asyncio
import inspect
import logging
import time

from shared.errors import (
    AgentTaskError,
    AuthenticationRequiredError,
    DeferredTaskError,
    InvalidTransitionError,
    MaxClarificationError,
    MissingInputResolverError,
    ProtocolError,
    TaskAbortedError,
    TaskCanceledError,
    TaskTimeoutError,
    UnknownOperationError,
    classify_exception,
)
from shared.schemas import (
    AUTH_REQUIRED_STATUS,
    AgentConfig,
    AgentOutcome,
    ConversationMessage,
    InputRequest,
    NotificationPayload,
    PendingOperation,
    TaskEvent,
    TaskState,
    TransportResponse,
    new_operation_id,
)
from shared.transport import AgentTransport, parse_agent_response

from .correlation import CorrelationRegistry
from .input_resolvers import Answer, ClarificationContext, Defer, InputResolver, Reject, as_resolver
from .notifications import build_callback_url
from .pending_store import InMemoryPendingStore, PendingOperationStore
from .progress_publisher import TaskObserver

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    TaskState.SUBMITTED: {TaskState.WORKING, TaskState.FAILED, TaskState.CANCELED},
    TaskState.WORKING: {
        TaskState.INPUT_REQUIRED,
        TaskState.COMPLETED,
        TaskState.FAILED,
        TaskState.REJECTED,
        TaskState.CANCELED,
    },
    TaskState.INPUT_REQUIRED: {TaskState.WORKING, TaskState.FAILED, TaskState.CANCELED},
}

Observer = Union[TaskObserver, Callable[[TaskEvent], Any]]
FinishListener = Callable[[AgentOutcome], Any]


@dataclass
class TaskRun:
    """In-flight state of one operation against one agent"""
    operation_id: str
    agent: AgentConfig
    operation_name: str
    args: Dict[str, Any]
    resolver: Optional[InputResolver]
    max_clarifications: int
    timeout: float
    state: TaskState = TaskState.SUBMITTED
    conversation_id: Optional[str] = None
    work_id: Optional[str] = None
    clarification_rounds: int = 0
    history: List[ConversationMessage] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_clock: float = field(default_factory=time.perf_counter)
    cancel_requested: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.operation_id, self.agent.id)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_clock) * 1000


class TaskExecutor:
    """
    Runs tasks against single agents.

    One executor serves many concurrent runs. Turns for the same
    (operation_id, agent_id) pair are serialized by a per-pair lock, so a run
    and a resume for the same pair never interleave.
    """

    def __init__(
        self,
        transport: AgentTransport,
        registry: CorrelationRegistry,
        pending_store: Optional[PendingOperationStore] = None,
        observers: Optional[List[Observer]] = None,
        default_timeout: float = 30.0,
        max_clarifications: int = 3,
        callback_url_template: Optional[str] = None,
        cleanup_on_finish: bool = False
    ):
        """
        Initialize executor.

        Args:
            transport: Sends one protocol turn to an agent
            registry: Correlation registry shared with the notification path
            pending_store: Where suspended operations are persisted (in-memory by default)
            observers: Receive a TaskEvent for every turn and state change
            default_timeout: Per-turn timeout when neither the call nor the agent sets one
            max_clarifications: Default clarification round limit
            callback_url_template: Template for the notification URL sent to agents
            cleanup_on_finish: Drop registry entries and records once an operation is terminal
        """
        self.transport = transport
        self.registry = registry
        self.pending_store = pending_store or InMemoryPendingStore()
        self.observers: List[Observer] = list(observers or [])
        self.default_timeout = default_timeout
        self.max_clarifications = max_clarifications
        self.callback_url_template = callback_url_template
        self.cleanup_on_finish = cleanup_on_finish

        self._active: Dict[Tuple[str, str], TaskRun] = {}
        self._locks: Dict[Tuple[str, str], list] = {}
        self._finish_listeners: List[FinishListener] = []

    def add_observer(self, observer: Observer) -> None:
        self.observers.append(observer)

    def add_finish_listener(self, listener: FinishListener) -> None:
        """Call listener with every terminal AgentOutcome, however the operation ended"""
        self._finish_listeners.append(listener)

    # ============================================
    # Entry points
    # ============================================

    async def run(
        self,
        agent: AgentConfig,
        operation_name: str,
        args: Optional[Dict[str, Any]] = None,
        resolver: Any = None,
        *,
        operation_id: Optional[str] = None,
        max_clarifications: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> AgentOutcome:
        """
        Run an operation against one agent.

        Never raises for agent, transport or clarification failures: those
        come back as a failed AgentOutcome with a classified error.

        Args:
            agent: Target agent
            operation_name: Operation to invoke
            args: Operation arguments
            resolver: Answers clarification questions (InputResolver, field map or callable)
            operation_id: Reuse an operation id (generated when omitted)
            max_clarifications: Override the clarification round limit
            timeout: Override the per-turn timeout in seconds

        Returns:
            AgentOutcome; pending=True when the agent will finish asynchronously
        """
        run = TaskRun(
            operation_id=operation_id or new_operation_id(),
            agent=agent,
            operation_name=operation_name,
            args=dict(args or {}),
            resolver=as_resolver(resolver),
            max_clarifications=self.max_clarifications if max_clarifications is None else max_clarifications,
            timeout=timeout or agent.timeout_seconds or self.default_timeout,
        )

        logger.info(f"Running {operation_name} on agent '{agent.id}' (operation {run.operation_id})")

        async with self._turn_lock(run.key):
            outcome = await self._execute(run)
            if not outcome.pending and self.cleanup_on_finish:
                self.registry.remove(*run.key)

        if not outcome.pending:
            await self._notify_finished(outcome)
        return outcome

    async def resume(
        self,
        agent: AgentConfig,
        operation_id: str,
        notification: Union[NotificationPayload, Dict[str, Any]],
        resolver: Any = None
    ) -> AgentOutcome:
        """
        Resume a suspended operation from a notification.

        Idempotent: a duplicate notification for an operation that already
        reached a terminal state returns the stored final outcome.

        Args:
            agent: Agent that sent the notification
            operation_id: Operation to resume
            notification: Notification payload (status, ids, result or question)
            resolver: Answers a question the notification may carry

        Returns:
            AgentOutcome for the operation

        Raises:
            UnknownOperationError: If no pending record exists for the pair
        """
        if isinstance(notification, NotificationPayload):
            payload = notification.model_dump(exclude_none=True)
        else:
            payload = dict(notification)

        key = (operation_id, agent.id)

        async with self._turn_lock(key):
            record = self.pending_store.get(*key)
            if record is None:
                raise UnknownOperationError(
                    f"No pending operation {operation_id} for agent '{agent.id}'",
                    details={"operation_id": operation_id, "agent_id": agent.id}
                )

            if record.is_finished:
                logger.info(f"Duplicate notification for finished operation {operation_id}/{agent.id}")
                return record.final_outcome

            run = TaskRun(
                operation_id=operation_id,
                agent=agent,
                operation_name=record.operation_name,
                args=dict(record.args),
                resolver=as_resolver(resolver),
                max_clarifications=(
                    self.max_clarifications if record.max_clarifications is None else record.max_clarifications
                ),
                timeout=record.timeout or agent.timeout_seconds or self.default_timeout,
                state=record.state,
                conversation_id=record.conversation_id,
                work_id=record.work_id,
                clarification_rounds=record.clarification_rounds,
                started_at=record.created_at,
            )
            run.history.append(ConversationMessage(role="agent", kind="notification", content=payload))
            await self._emit(run, "notification_received", {"status": payload.get("status")})

            outcome = await self._execute(run, parse_agent_response(payload))

            self._record_resumed(record, run, outcome)

        if not outcome.pending:
            await self._notify_finished(outcome)
        return outcome

    async def cancel(self, operation_id: str, agent_id: str) -> bool:
        """
        Cancel a working or input-required operation.

        Cooperative: an in-flight turn is not recalled, but no further turn is
        sent and the run ends as canceled. A suspended operation is marked
        canceled in the pending store.

        Returns:
            True if something was canceled
        """
        key = (operation_id, agent_id)

        run = self._active.get(key)
        if run is not None:
            run.cancel_requested = True
            logger.info(f"Cancellation requested for running operation {operation_id}/{agent_id}")
            return True

        async with self._turn_lock(key):
            record = self.pending_store.get(*key)
            if record is None or record.is_finished:
                return False

            error = TaskCanceledError(operation_id, agent_id)
            record.state = TaskState.CANCELED
            record.updated_at = datetime.now(UTC)
            record.final_outcome = AgentOutcome(
                agent_id=agent_id,
                operation_id=operation_id,
                operation_name=record.operation_name,
                success=False,
                state=TaskState.CANCELED,
                error=error.to_info(),
                conversation_id=record.conversation_id,
                work_id=record.work_id,
                clarification_rounds=record.clarification_rounds,
                started_at=record.created_at,
            )
            self.pending_store.save(record)

        logger.info(f"Canceled suspended operation {operation_id}/{agent_id}")
        await self._notify_finished(record.final_outcome)
        return True

    def active_runs(self) -> List[TaskRun]:
        """Runs currently driving turns (suspended operations are not included)"""
        return list(self._active.values())

    def get_pending(self, operation_id: str, agent_id: str) -> Optional[PendingOperation]:
        return self.pending_store.get(operation_id, agent_id)

    def close_operation(self, operation_id: str, agent_id: str) -> bool:
        """
        Forget an operation: drop its correlation entries and pending record.

        Returns:
            True if anything was removed
        """
        removed = self.registry.remove(operation_id, agent_id)
        deleted = self.pending_store.delete(operation_id, agent_id)
        if removed or deleted:
            logger.info(f"Closed operation {operation_id}/{agent_id}")
        return removed or deleted

    # ============================================
    # Lifecycle
    # ============================================

    async def _execute(self, run: TaskRun, response: Optional[TransportResponse] = None) -> AgentOutcome:
        self._active[run.key] = run
        try:
            if response is None:
                response = await self._send(run)
            return await self._drive(run, response)
        except Exception as e:
            return await self._fail(run, e)
        finally:
            self._active.pop(run.key, None)

    async def _drive(self, run: TaskRun, response: TransportResponse) -> AgentOutcome:
        while True:
            await self._absorb(run, response)
            status = response.status

            if status == TaskState.COMPLETED.value:
                await self._set_state(run, TaskState.COMPLETED)
                return await self._finish(run, response.data)

            if status in (TaskState.FAILED.value, TaskState.REJECTED.value, TaskState.CANCELED.value):
                await self._set_state(run, TaskState(status))
                raise AgentTaskError.from_agent_error(response.error, status)

            if status == AUTH_REQUIRED_STATUS:
                message = (response.error or {}).get("message")
                raise AuthenticationRequiredError(run.agent.agent_uri, message)

            if run.cancel_requested:
                raise TaskCanceledError(run.operation_id, run.agent.id)

            if status == TaskState.INPUT_REQUIRED.value:
                await self._set_state(run, TaskState.INPUT_REQUIRED)
                await self._clarify(run, response.input_request or InputRequest())
                await self._set_state(run, TaskState.WORKING)
                response = await self._send(run)
                continue

            if status in (TaskState.WORKING.value, TaskState.SUBMITTED.value):
                if not (run.work_id or run.conversation_id):
                    raise ProtocolError(
                        f"Agent '{run.agent.id}' deferred {run.operation_name} without a work or conversation id",
                        details={"status": status}
                    )
                return await self._suspend(run)

            raise ProtocolError(
                f"Agent '{run.agent.id}' reported an unknown status",
                details={"status": status, "raw": response.raw}
            )

    async def _send(self, run: TaskRun) -> TransportResponse:
        if run.cancel_requested:
            raise TaskCanceledError(run.operation_id, run.agent.id)

        callback_url = None
        if self.callback_url_template:
            callback_url = build_callback_url(
                self.callback_url_template, run.operation_name, run.agent.id, run.operation_id
            )

        run.history.append(ConversationMessage(role="user", kind="request", content=dict(run.args)))
        await self._emit(run, "protocol_request", {"args": dict(run.args)})

        try:
            response = await asyncio.wait_for(
                self.transport.call_agent(
                    run.agent,
                    run.operation_name,
                    run.args,
                    conversation_id=run.conversation_id,
                    work_id=run.work_id,
                    callback_url=callback_url
                ),
                timeout=run.timeout
            )
        except asyncio.TimeoutError as e:
            raise TaskTimeoutError(run.operation_id, run.timeout) from e

        await self._emit(run, "protocol_response", {"status": response.status})
        return response

    async def _absorb(self, run: TaskRun, response: TransportResponse) -> None:
        """Take ids and history from a reply; any reply acknowledges the submission"""
        if run.state == TaskState.SUBMITTED:
            await self._set_state(run, TaskState.WORKING)

        changed = False
        if response.conversation_id and response.conversation_id != run.conversation_id:
            run.conversation_id = response.conversation_id
            changed = True
        if response.work_id and response.work_id != run.work_id:
            run.work_id = response.work_id
            changed = True
        if changed:
            self.registry.register(run.operation_id, run.agent.id, run.conversation_id, run.work_id)

        if response.status == TaskState.INPUT_REQUIRED.value and response.input_request:
            run.history.append(ConversationMessage(
                role="agent",
                kind="clarification",
                content=response.input_request.question,
                metadata={"field": response.input_request.field}
            ))
        elif response.raw:
            run.history.append(ConversationMessage(role="agent", kind="response", content=response.raw))

    async def _clarify(self, run: TaskRun, request: InputRequest) -> None:
        run.clarification_rounds += 1
        if run.clarification_rounds > run.max_clarifications:
            raise MaxClarificationError(run.operation_id, run.max_clarifications)

        if run.resolver is None:
            raise MissingInputResolverError(run.operation_id, request.question)

        context = ClarificationContext(
            input_request=request,
            operation_id=run.operation_id,
            operation_name=run.operation_name,
            agent=run.agent,
            attempt=run.clarification_rounds,
            max_attempts=run.max_clarifications,
            history=list(run.history),
        )
        resolution = await run.resolver.resolve(context)

        if isinstance(resolution, Defer):
            raise DeferredTaskError(resolution.token, request.question)
        if isinstance(resolution, Reject):
            raise TaskAbortedError(run.operation_id, resolution.reason)
        if not isinstance(resolution, Answer):
            raise TypeError(f"Resolver returned {type(resolution).__name__}, expected Answer, Defer or Reject")

        run.history.append(ConversationMessage(
            role="user",
            kind="clarification",
            content=resolution.value,
            metadata={"field": request.field, "question": request.question}
        ))
        run.args[request.field or "input"] = resolution.value
        logger.info(f"Answered clarification {run.clarification_rounds} for {run.operation_id}/{run.agent.id}")

    async def _suspend(self, run: TaskRun) -> AgentOutcome:
        existing = self.pending_store.get(*run.key)
        record = PendingOperation(
            operation_id=run.operation_id,
            agent_id=run.agent.id,
            operation_name=run.operation_name,
            args=run.args,
            conversation_id=run.conversation_id,
            work_id=run.work_id,
            state=run.state,
            clarification_rounds=run.clarification_rounds,
            max_clarifications=run.max_clarifications,
            timeout=run.timeout,
            created_at=existing.created_at if existing else run.started_at,
        )
        self.pending_store.save(record)

        logger.info(
            f"Operation {run.operation_id}/{run.agent.id} suspended "
            f"(work={run.work_id}, conversation={run.conversation_id})"
        )
        return self._outcome(run, success=True, pending=True)

    async def _finish(self, run: TaskRun, data: Any) -> AgentOutcome:
        logger.info(f"Operation {run.operation_id}/{run.agent.id} completed in {run.elapsed_ms():.0f}ms")
        return self._outcome(run, success=True, data=data)

    async def _fail(self, run: TaskRun, exc: Exception) -> AgentOutcome:
        info = classify_exception(exc)

        if isinstance(exc, TaskCanceledError):
            final_state = TaskState.CANCELED
        elif run.state.is_terminal:
            final_state = run.state
        else:
            final_state = TaskState.FAILED
        if run.state != final_state:
            await self._set_state(run, final_state)

        logger.warning(
            f"Operation {run.operation_id}/{run.agent.id} ended {final_state.value}: "
            f"[{info.code}/{info.recovery.value}] {info.message}"
        )
        return self._outcome(run, success=False, error=info)

    def _outcome(self, run: TaskRun, success: bool, data: Any = None, error=None, pending: bool = False) -> AgentOutcome:
        return AgentOutcome(
            agent_id=run.agent.id,
            agent_name=run.agent.name,
            operation_id=run.operation_id,
            operation_name=run.operation_name,
            success=success,
            pending=pending,
            state=run.state,
            data=data,
            error=error,
            conversation_id=run.conversation_id,
            work_id=run.work_id,
            clarification_rounds=run.clarification_rounds,
            started_at=run.started_at,
            response_time_ms=run.elapsed_ms(),
            conversation=list(run.history),
        )

    def _record_resumed(self, record: PendingOperation, run: TaskRun, outcome: AgentOutcome) -> None:
        if outcome.pending:
            # Still working; _suspend already refreshed the record
            return

        record.state = outcome.state
        record.conversation_id = run.conversation_id
        record.work_id = run.work_id
        record.clarification_rounds = run.clarification_rounds
        record.updated_at = datetime.now(UTC)
        record.final_outcome = outcome

        if self.cleanup_on_finish:
            self.close_operation(run.operation_id, run.agent.id)
        else:
            self.pending_store.save(record)

    async def _set_state(self, run: TaskRun, new_state: TaskState) -> None:
        if new_state == run.state:
            return
        if new_state not in ALLOWED_TRANSITIONS.get(run.state, set()):
            raise InvalidTransitionError(
                f"Cannot move {run.operation_id}/{run.agent.id} from {run.state.value} to {new_state.value}",
                details={"from": run.state.value, "to": new_state.value}
            )

        previous = run.state
        run.state = new_state
        await self._emit(run, "status_update", {"from": previous.value, "to": new_state.value})

    # ============================================
    # Plumbing
    # ============================================

    async def _emit(self, run: TaskRun, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.observers:
            return

        event = TaskEvent(
            event_type=event_type,
            operation_id=run.operation_id,
            agent_id=run.agent.id,
            operation_name=run.operation_name,
            conversation_id=run.conversation_id,
            work_id=run.work_id,
            state=run.state,
            payload=payload,
        )
        for observer in self.observers:
            try:
                handler = observer.on_event if isinstance(observer, TaskObserver) else observer
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.debug(f"Observer {observer!r} failed on {event_type}: {e}")

    async def _notify_finished(self, outcome: AgentOutcome) -> None:
        for listener in self._finish_listeners:
            try:
                result = listener(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.debug(f"Finish listener {listener!r} failed for {outcome.operation_id}: {e}")

    @asynccontextmanager
    async def _turn_lock(self, key: Tuple[str, str]):
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(key, None)

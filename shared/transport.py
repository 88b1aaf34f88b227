"""
TaskRelay - Agent Transport

JSON-RPC over HTTP client used to send one protocol turn to an agent.
Includes retry logic for requests that never reached the agent.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from .errors import (
    AgentTaskError,
    AuthenticationRequiredError,
    OrchestrationError,
    ProtocolError,
    TransportError,
)
from .schemas import (
    AGENT_STATUSES,
    AgentConfig,
    InputRequest,
    Recovery,
    TaskState,
    TransportResponse,
    UNKNOWN_STATUS,
)

logger = logging.getLogger(__name__)

SEND_METHOD = "tasks/send"
EXPECTED_TYPES = {"string", "number", "boolean", "object", "array"}


def is_input_request(result: Dict[str, Any]) -> bool:
    """Check whether a turn result asks the caller for input"""
    if result.get("status") == TaskState.INPUT_REQUIRED.value:
        return True

    # Older agents signal questions without the status field
    return (
        result.get("type") == "input_request"
        or result.get("input_required") is True
        or result.get("needs_clarification") is True
        or ("question" in result and "status" not in result)
    )


def parse_input_request(result: Dict[str, Any]) -> InputRequest:
    """Build an InputRequest from the loosely-shaped question fields"""
    question = result.get("message") or result.get("question") or result.get("prompt") or "Please provide input"
    expected_type = result.get("expected_type")
    if expected_type not in EXPECTED_TYPES:
        expected_type = None

    return InputRequest(
        question=question,
        field=result.get("field") or result.get("parameter"),
        expected_type=expected_type,
        suggestions=result.get("options") or result.get("choices") or result.get("suggestions"),
        required=result.get("required") is not False,
        validation=result.get("validation"),
        context=result.get("context") or result.get("description")
    )


def parse_agent_response(result: Any) -> TransportResponse:
    """
    Interpret the result object of one turn.

    Args:
        result: JSON-RPC result object returned by the agent

    Returns:
        TransportResponse with status, correlation ids and payload

    Raises:
        ProtocolError: If the result is not an object
    """
    if not isinstance(result, dict):
        raise ProtocolError(
            f"Expected an object as turn result, got {type(result).__name__}",
            details={"result": result}
        )

    if is_input_request(result):
        status = TaskState.INPUT_REQUIRED.value
    else:
        status = result.get("status") or TaskState.COMPLETED.value
        if status not in AGENT_STATUSES:
            status = UNKNOWN_STATUS

    data = result.get("data", result.get("result"))
    error = result.get("error")
    if error is not None and not isinstance(error, dict):
        error = {"message": str(error)}

    return TransportResponse(
        status=status,
        conversation_id=result.get("context_id") or result.get("contextId"),
        work_id=result.get("task_id") or result.get("taskId"),
        data=data if status != TaskState.INPUT_REQUIRED.value else None,
        input_request=parse_input_request(result) if status == TaskState.INPUT_REQUIRED.value else None,
        error=error,
        raw=result
    )


class AgentTransport:
    """
    Async HTTP transport for agent turns.

    Each call is one JSON-RPC request; the orchestrator treats it as
    synchronous per turn.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_delay: float = 0.5
    ):
        """
        Initialize transport.

        Args:
            client: Optional preconfigured httpx.AsyncClient (tests pass a MockTransport here)
            timeout: Default HTTP timeout in seconds
            max_retries: Retries for requests that failed to connect
            retry_delay: Base delay for exponential backoff
        """
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def build_headers(self, agent: AgentConfig) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if agent.auth_token:
            headers["Authorization"] = f"Bearer {agent.auth_token}"
        headers.update(agent.headers)
        return headers

    def build_request(
        self,
        operation_name: str,
        args: Dict[str, Any],
        conversation_id: Optional[str] = None,
        work_id: Optional[str] = None,
        callback_url: Optional[str] = None
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"operation": operation_name, "arguments": args}
        if conversation_id:
            params["context_id"] = conversation_id
        if work_id:
            params["task_id"] = work_id
        if callback_url:
            params["webhook_url"] = callback_url

        return {
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": SEND_METHOD,
            "params": params,
        }

    async def call_agent(
        self,
        agent: AgentConfig,
        operation_name: str,
        args: Dict[str, Any],
        conversation_id: Optional[str] = None,
        work_id: Optional[str] = None,
        callback_url: Optional[str] = None
    ) -> TransportResponse:
        """
        Send one turn to an agent.

        Args:
            agent: Target agent configuration
            operation_name: Operation to invoke
            args: Operation arguments
            conversation_id: Conversation to continue, if any
            work_id: Deferred work the turn refers to, if any
            callback_url: URL the agent should notify on async completion

        Returns:
            TransportResponse for the turn

        Raises:
            OrchestrationError: Classified transport or protocol failure
        """
        request = self.build_request(operation_name, args, conversation_id, work_id, callback_url)
        headers = self.build_headers(agent)
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                logger.debug(f"Calling {agent.id}.{operation_name} (attempt {attempt + 1}/{self.max_retries + 1})")
                response = await self.client.post(agent.agent_uri, json=request, headers=headers)
                break

            except httpx.ConnectError as e:
                # Connection never established, so the turn was not delivered and can be retried
                last_error = e
                logger.warning(f"Connect to {agent.agent_uri} failed on attempt {attempt + 1}: {e}")
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))

            except httpx.TimeoutException as e:
                raise TransportError(
                    f"Timed out talking to agent '{agent.id}': {e}",
                    details={"agent_id": agent.id, "agent_uri": agent.agent_uri}
                ) from e

            except httpx.HTTPError as e:
                raise TransportError(
                    f"HTTP error talking to agent '{agent.id}': {e}",
                    details={"agent_id": agent.id, "agent_uri": agent.agent_uri}
                ) from e
        else:
            raise TransportError(
                f"Could not reach agent '{agent.id}' after {self.max_retries + 1} attempts: {last_error}",
                details={"agent_id": agent.id, "agent_uri": agent.agent_uri}
            )

        return self._interpret_http_response(agent, response)

    def _interpret_http_response(self, agent: AgentConfig, response: httpx.Response) -> TransportResponse:
        status_code = response.status_code
        details = {"agent_id": agent.id, "status_code": status_code}

        if status_code in (401, 403):
            raise AuthenticationRequiredError(agent.agent_uri)
        if status_code == 429:
            raise TransportError(f"Agent '{agent.id}' rate limited the request", details=details, code="RATE_LIMITED")
        if status_code >= 500:
            raise TransportError(
                f"Agent '{agent.id}' unavailable (HTTP {status_code})",
                details=details,
                code="SERVICE_UNAVAILABLE"
            )
        if status_code >= 400:
            raise OrchestrationError(
                f"Agent '{agent.id}' refused the request (HTTP {status_code})",
                details=details,
                code="INVALID_REQUEST",
                recovery=Recovery.CORRECTABLE
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ProtocolError(f"Agent '{agent.id}' returned invalid JSON", details=details) from e

        if not isinstance(body, dict):
            raise ProtocolError(f"Agent '{agent.id}' returned a non-object body", details=details)

        if body.get("error") is not None and "result" not in body:
            rpc_error = body["error"] if isinstance(body["error"], dict) else {"message": str(body["error"])}
            agent_error = rpc_error.get("data") if isinstance(rpc_error.get("data"), dict) else {}
            merged = {
                "code": agent_error.get("code") or rpc_error.get("code"),
                "message": agent_error.get("message") or rpc_error.get("message"),
                "recovery": agent_error.get("recovery"),
            }
            raise AgentTaskError.from_agent_error(merged, TaskState.FAILED.value)

        return parse_agent_response(body.get("result", body))

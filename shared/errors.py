"""
TaskRelay - Error Taxonomy

Every failure surfaced to a caller carries a stable code and a recovery
classification (transient, correctable, terminal).
"""

import asyncio
from typing import Any, Dict, Optional

import httpx

from .schemas import ErrorInfo, Recovery


# Standard agent error codes and their recommended recovery.
# Authentication and account problems need outside intervention, so they are terminal.
STANDARD_ERROR_CODES: Dict[str, Dict[str, Any]] = {
    "INVALID_REQUEST": {
        "description": "The request is malformed or contains invalid parameters",
        "recovery": Recovery.CORRECTABLE,
    },
    "AUTH_REQUIRED": {
        "description": "Authentication is required or the provided credentials are invalid",
        "recovery": Recovery.TERMINAL,
    },
    "RATE_LIMITED": {
        "description": "Too many requests; retry after the specified delay",
        "recovery": Recovery.TRANSIENT,
    },
    "SERVICE_UNAVAILABLE": {
        "description": "The service is temporarily unavailable",
        "recovery": Recovery.TRANSIENT,
    },
    "POLICY_VIOLATION": {
        "description": "The request violates a platform or advertiser policy",
        "recovery": Recovery.CORRECTABLE,
    },
    "PRODUCT_NOT_FOUND": {
        "description": "The requested product does not exist",
        "recovery": Recovery.CORRECTABLE,
    },
    "PRODUCT_UNAVAILABLE": {
        "description": "The product exists but is not currently available",
        "recovery": Recovery.TRANSIENT,
    },
    "PROPOSAL_EXPIRED": {
        "description": "The proposal has expired and is no longer valid",
        "recovery": Recovery.CORRECTABLE,
    },
    "BUDGET_TOO_LOW": {
        "description": "The specified budget is below the minimum threshold",
        "recovery": Recovery.CORRECTABLE,
    },
    "CREATIVE_REJECTED": {
        "description": "One or more creatives failed review or validation",
        "recovery": Recovery.CORRECTABLE,
    },
    "UNSUPPORTED_FEATURE": {
        "description": "The requested feature is not supported by this agent",
        "recovery": Recovery.TERMINAL,
    },
    "AUDIENCE_TOO_SMALL": {
        "description": "The target audience is too small to deliver against",
        "recovery": Recovery.CORRECTABLE,
    },
    "ACCOUNT_NOT_FOUND": {
        "description": "The specified account does not exist",
        "recovery": Recovery.TERMINAL,
    },
    "ACCOUNT_SETUP_REQUIRED": {
        "description": "The account requires additional setup before use",
        "recovery": Recovery.TERMINAL,
    },
    "ACCOUNT_AMBIGUOUS": {
        "description": "Multiple accounts match; provide a more specific identifier",
        "recovery": Recovery.CORRECTABLE,
    },
    "ACCOUNT_PAYMENT_REQUIRED": {
        "description": "The account has an outstanding payment issue",
        "recovery": Recovery.TERMINAL,
    },
    "ACCOUNT_SUSPENDED": {
        "description": "The account has been suspended",
        "recovery": Recovery.TERMINAL,
    },
    "COMPLIANCE_UNSATISFIED": {
        "description": "Compliance requirements have not been met",
        "recovery": Recovery.CORRECTABLE,
    },
    "BUDGET_EXHAUSTED": {
        "description": "The budget has been fully spent",
        "recovery": Recovery.TERMINAL,
    },
    "CONFLICT": {
        "description": "The request conflicts with the current state of the resource",
        "recovery": Recovery.CORRECTABLE,
    },
}


def is_standard_error_code(code: str) -> bool:
    return code in STANDARD_ERROR_CODES


def get_error_recovery(code: str) -> Optional[Recovery]:
    """Recommended recovery for a standard code, None for custom codes"""
    info = STANDARD_ERROR_CODES.get(code)
    return info["recovery"] if info else None


class OrchestrationError(Exception):
    """Base class for all classified TaskRelay errors"""

    code = "UNEXPECTED_ERROR"
    recovery = Recovery.TERMINAL

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
        recovery: Optional[Recovery] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code
        if recovery:
            self.recovery = recovery

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(
            code=self.code,
            message=self.message,
            recovery=self.recovery,
            details=self.details
        )


# ============================================
# Transient
# ============================================

class TaskTimeoutError(OrchestrationError):
    code = "TASK_TIMEOUT"
    recovery = Recovery.TRANSIENT

    def __init__(self, operation_id: str, timeout: float):
        super().__init__(
            f"Task {operation_id} timed out after {timeout}s",
            details={"operation_id": operation_id, "timeout": timeout}
        )
        self.operation_id = operation_id
        self.timeout = timeout


class TransportError(OrchestrationError):
    """Network or server fault while talking to an agent"""
    code = "TRANSPORT_ERROR"
    recovery = Recovery.TRANSIENT


# ============================================
# Correctable
# ============================================

class MaxClarificationError(OrchestrationError):
    code = "MAX_CLARIFICATIONS"
    recovery = Recovery.CORRECTABLE

    def __init__(self, operation_id: str, max_attempts: int):
        super().__init__(
            f"Task {operation_id} exceeded maximum clarification attempts: {max_attempts}",
            details={"operation_id": operation_id, "max_attempts": max_attempts}
        )
        self.max_attempts = max_attempts


class MissingInputResolverError(OrchestrationError):
    code = "MISSING_INPUT_HANDLER"
    recovery = Recovery.CORRECTABLE

    def __init__(self, operation_id: str, question: str):
        super().__init__(
            f"Agent requested input but no resolver was provided. Task: {operation_id}, Question: {question}",
            details={"operation_id": operation_id, "question": question}
        )


class DeferredTaskError(OrchestrationError):
    """The caller chose to answer a clarification out of band"""
    code = "TASK_DEFERRED"
    recovery = Recovery.CORRECTABLE

    def __init__(self, token: str, question: Optional[str] = None):
        super().__init__(
            f"Task deferred with token: {token}",
            details={"token": token, "question": question}
        )
        self.token = token


class TaskAbortedError(OrchestrationError):
    code = "TASK_ABORTED"
    recovery = Recovery.CORRECTABLE

    def __init__(self, operation_id: str, reason: Optional[str] = None):
        super().__init__(
            f"Task {operation_id} aborted: {reason or 'No reason provided'}",
            details={"operation_id": operation_id, "reason": reason}
        )


class TaskCanceledError(OrchestrationError):
    code = "TASK_CANCELED"
    recovery = Recovery.CORRECTABLE

    def __init__(self, operation_id: str, agent_id: str):
        super().__init__(
            f"Task {operation_id} on agent '{agent_id}' was canceled",
            details={"operation_id": operation_id, "agent_id": agent_id}
        )


class AgentNotFoundError(OrchestrationError):
    code = "AGENT_NOT_FOUND"
    recovery = Recovery.CORRECTABLE

    def __init__(self, agent_id: str, available_agents):
        available = list(available_agents)
        super().__init__(
            f"Agent '{agent_id}' not found. Available agents: {', '.join(available)}",
            details={"agent_id": agent_id, "available_agents": available}
        )


class ConfigurationError(OrchestrationError):
    code = "CONFIGURATION_ERROR"
    recovery = Recovery.CORRECTABLE

    def __init__(self, message: str, config_field: Optional[str] = None):
        super().__init__(
            f"Configuration error: {message}",
            details={"config_field": config_field}
        )


class UnknownOperationError(OrchestrationError):
    """A notification could not be correlated to any known operation"""
    code = "UNKNOWN_OPERATION"
    recovery = Recovery.CORRECTABLE


class AmbiguousCorrelationError(OrchestrationError):
    code = "AMBIGUOUS_CORRELATION"
    recovery = Recovery.CORRECTABLE


# ============================================
# Terminal
# ============================================

class AuthenticationRequiredError(OrchestrationError):
    code = "AUTH_REQUIRED"
    recovery = Recovery.TERMINAL

    def __init__(self, agent_uri: str, message: Optional[str] = None):
        super().__init__(
            message or f"Authentication required for {agent_uri}. Provide auth_token in agent config.",
            details={"agent_uri": agent_uri}
        )


class ProtocolError(OrchestrationError):
    """The agent answered with something that cannot be interpreted"""
    code = "INVALID_RESPONSE"
    recovery = Recovery.TERMINAL


class InvalidNotificationError(OrchestrationError):
    code = "INVALID_SIGNATURE"
    recovery = Recovery.TERMINAL


class InvalidTransitionError(OrchestrationError):
    code = "INVALID_STATE_TRANSITION"
    recovery = Recovery.TERMINAL


class AgentTaskError(OrchestrationError):
    """Failure reported by the agent itself (failed / rejected / canceled)"""

    @classmethod
    def from_agent_error(cls, error: Optional[Dict[str, Any]], status: str) -> "AgentTaskError":
        error = error or {}
        code = str(error.get("code") or f"TASK_{status.upper().replace('-', '_')}")
        message = error.get("message") or f"Agent reported status '{status}'"

        recovery = None
        raw_recovery = error.get("recovery")
        if raw_recovery in {r.value for r in Recovery}:
            recovery = Recovery(raw_recovery)
        if recovery is None:
            recovery = get_error_recovery(code) or Recovery.TERMINAL

        details = {k: v for k, v in error.items() if k not in ("code", "message", "recovery")}
        details["status"] = status
        return cls(message, details=details, code=code, recovery=recovery)


def classify_exception(exc: BaseException) -> ErrorInfo:
    """
    Convert any exception into a classified ErrorInfo.

    Keeps the original message so a caller sees what actually went wrong.
    """
    if isinstance(exc, OrchestrationError):
        return exc.to_info()

    message = str(exc) or exc.__class__.__name__
    details = {"exception_type": exc.__class__.__name__}

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorInfo(code="TASK_TIMEOUT", message=message, recovery=Recovery.TRANSIENT, details=details)

    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        details["status_code"] = status_code
        if status_code in (401, 403):
            return ErrorInfo(code="AUTH_REQUIRED", message=message, recovery=Recovery.TERMINAL, details=details)
        if status_code == 429:
            return ErrorInfo(code="RATE_LIMITED", message=message, recovery=Recovery.TRANSIENT, details=details)
        if status_code >= 500:
            return ErrorInfo(code="SERVICE_UNAVAILABLE", message=message, recovery=Recovery.TRANSIENT, details=details)
        return ErrorInfo(code="INVALID_REQUEST", message=message, recovery=Recovery.CORRECTABLE, details=details)

    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return ErrorInfo(code="TRANSPORT_ERROR", message=message, recovery=Recovery.TRANSIENT, details=details)

    if isinstance(exc, ValueError):
        return ErrorInfo(code="INVALID_REQUEST", message=message, recovery=Recovery.CORRECTABLE, details=details)

    return ErrorInfo(code="UNEXPECTED_ERROR", message=message, recovery=Recovery.TERMINAL, details=details)

"""
Orchestrator - Task orchestration engine for TaskRelay

Runs named operations against remote agents: clarification rounds,
asynchronous completion resumed from signed notifications, and concurrent
fan-out across agents with per-agent failure isolation.
"""

from .correlation import CorrelationRegistry
from .verifier import NotificationVerifier, compute_signature, sign
from .executor import TaskExecutor
from .fanout import MultiAgentOrchestrator, Fulfilled, Rejected
from .notifications import NotificationHandler, build_callback_url
from .pending_store import InMemoryPendingStore, FilePendingStore

__all__ = [
    "CorrelationRegistry",
    "NotificationVerifier",
    "compute_signature",
    "sign",
    "TaskExecutor",
    "MultiAgentOrchestrator",
    "Fulfilled",
    "Rejected",
    "NotificationHandler",
    "build_callback_url",
    "InMemoryPendingStore",
    "FilePendingStore",
]

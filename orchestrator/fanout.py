"""
Multi-Agent Orchestrator

Runs a task, or any per-agent coroutine, against a set of agents
concurrently. One outcome per agent, in input order, whatever fails.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union
import asyncio
import logging
import time

from shared.errors import AgentNotFoundError, ConfigurationError, classify_exception
from shared.schemas import AgentConfig, AgentOutcome, TaskState, new_operation_id

from .executor import TaskExecutor

logger = logging.getLogger(__name__)

AgentOperation = Callable[[AgentConfig], Awaitable[Any]]


@dataclass
class Fulfilled:
    agent: AgentConfig
    value: Any
    elapsed_ms: float = 0.0
    status: str = "fulfilled"


@dataclass
class Rejected:
    agent: AgentConfig
    reason: BaseException
    elapsed_ms: float = 0.0
    status: str = "rejected"


Settled = Union[Fulfilled, Rejected]


class MultiAgentOrchestrator:
    """
    Fan-out over configured agents.

    Every agent is invoked in parallel; a call returns only once each agent has
    produced a result or failed. An exception from one agent never reaches its
    siblings or the caller: it becomes that agent's failed outcome.
    """

    def __init__(self, executor: TaskExecutor, agents: Iterable[AgentConfig]):
        """
        Initialize orchestrator.

        Args:
            executor: Executor used by run_task
            agents: Configured agents, in default dispatch order
        """
        self.executor = executor
        self._agents: Dict[str, AgentConfig] = {}
        for agent in agents:
            if agent.id in self._agents:
                raise ConfigurationError(f"duplicate agent id '{agent.id}'", config_field="agents")
            self._agents[agent.id] = agent

    @property
    def agent_ids(self) -> List[str]:
        return list(self._agents)

    @property
    def agents(self) -> List[AgentConfig]:
        return list(self._agents.values())

    def get_agent(self, agent_id: str) -> AgentConfig:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id, self._agents.keys())
        return agent

    def select(self, agent_ids: Optional[List[str]] = None) -> List[AgentConfig]:
        """Agents for the given ids in the given order, or every agent"""
        if agent_ids is None:
            return self.agents
        return [self.get_agent(agent_id) for agent_id in agent_ids]

    async def execute_raw(self, agents: List[AgentConfig], operation: AgentOperation) -> List[Settled]:
        """
        Run operation against every agent and return the raw settle results.

        Returns:
            Fulfilled or Rejected per agent, in input order
        """
        if not agents:
            raise ConfigurationError("no agents to dispatch to", config_field="agents")

        async def settle(agent: AgentConfig) -> Settled:
            started = time.perf_counter()
            try:
                value = await operation(agent)
            except asyncio.CancelledError as e:
                # Only a cancel aimed at this fan-out propagates
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                return Rejected(agent=agent, reason=e, elapsed_ms=(time.perf_counter() - started) * 1000)
            except Exception as e:
                return Rejected(agent=agent, reason=e, elapsed_ms=(time.perf_counter() - started) * 1000)
            return Fulfilled(agent=agent, value=value, elapsed_ms=(time.perf_counter() - started) * 1000)

        return list(await asyncio.gather(*(settle(agent) for agent in agents)))

    async def dispatch(self, agents: List[AgentConfig], operation: AgentOperation) -> List[AgentOutcome]:
        """
        Run operation against every agent and shape the results as outcomes.

        An AgentOutcome returned by operation is passed through unchanged; any
        other value becomes a successful outcome carrying it as data, and an
        exception becomes a failed outcome carrying the original message.

        Raises:
            ConfigurationError: If agents is empty (before anything is dispatched)
        """
        settled = await self.execute_raw(agents, operation)
        outcomes = [self._to_outcome(result) for result in settled]

        failed = sum(1 for o in outcomes if not o.success)
        logger.info(f"Dispatched to {len(outcomes)} agents: {len(outcomes) - failed} succeeded, {failed} failed")
        return outcomes

    async def run_task(
        self,
        operation_name: str,
        args: Optional[Dict[str, Any]] = None,
        resolver: Any = None,
        agent_ids: Optional[List[str]] = None,
        operation_id: Optional[str] = None,
        max_clarifications: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> List[AgentOutcome]:
        """
        Run one task against several agents under a single operation id.

        Args:
            operation_name: Operation to invoke
            args: Arguments sent to every agent (each run works on its own copy)
            resolver: Clarification resolver shared by all runs
            agent_ids: Agents to target, default all configured agents
            operation_id: Operation id shared by all agents (generated when omitted)
            max_clarifications: Override the clarification round limit
            timeout: Override the per-turn timeout

        Returns:
            One AgentOutcome per agent, in agent order
        """
        agents = self.select(agent_ids)
        operation_id = operation_id or new_operation_id()

        async def operation(agent: AgentConfig) -> AgentOutcome:
            return await self.executor.run(
                agent,
                operation_name,
                dict(args or {}),
                resolver,
                operation_id=operation_id,
                max_clarifications=max_clarifications,
                timeout=timeout
            )

        return await self.dispatch(agents, operation)

    def _to_outcome(self, result: Settled) -> AgentOutcome:
        if isinstance(result, Fulfilled):
            if isinstance(result.value, AgentOutcome):
                return result.value
            return AgentOutcome(
                agent_id=result.agent.id,
                agent_name=result.agent.name,
                success=True,
                state=TaskState.COMPLETED,
                data=result.value,
                response_time_ms=result.elapsed_ms,
            )

        logger.warning(f"Agent '{result.agent.id}' failed: {result.reason}")
        return AgentOutcome(
            agent_id=result.agent.id,
            agent_name=result.agent.name,
            success=False,
            state=TaskState.FAILED,
            error=classify_exception(result.reason),
            response_time_ms=result.elapsed_ms,
        )

"""
Input Resolvers

Answer the questions an agent asks while a task is input-required. A resolver
is chosen when the task is configured; it returns one of three resolutions:
Answer, Defer (the caller will answer out of band) or Reject (abort the task).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
import inspect
import logging
import uuid

from shared.schemas import AgentConfig, ConversationMessage, InputRequest

logger = logging.getLogger(__name__)


# ============================================
# Resolutions
# ============================================

@dataclass(frozen=True)
class Answer:
    value: Any


@dataclass(frozen=True)
class Defer:
    token: str = field(default_factory=lambda: f"defer-{uuid.uuid4()}")


@dataclass(frozen=True)
class Reject:
    reason: Optional[str] = None


Resolution = Union[Answer, Defer, Reject]


@dataclass
class ClarificationContext:
    """Everything a resolver may look at when answering a question"""
    input_request: InputRequest
    operation_id: str
    operation_name: str
    agent: AgentConfig
    attempt: int
    max_attempts: int
    history: List[ConversationMessage] = field(default_factory=list)

    @property
    def question(self) -> str:
        return self.input_request.question

    @property
    def requested_field(self) -> Optional[str]:
        return self.input_request.field

    def was_field_discussed(self, field_name: str) -> bool:
        """True if an earlier clarification in this run already answered field_name"""
        return self.previous_answer(field_name) is not None

    def previous_answer(self, field_name: str) -> Any:
        """Latest answer given for field_name in this run, or None"""
        for message in reversed(self.history):
            if message.kind == "clarification" and message.role == "user":
                if message.metadata.get("field") == field_name:
                    return message.content
        return None


# ============================================
# Resolver Interface
# ============================================

class InputResolver(ABC):
    """Base class for every resolver variant"""

    @abstractmethod
    async def resolve(self, context: ClarificationContext) -> Resolution:
        """Return an Answer, Defer or Reject for the question in context"""
        pass


async def resolve_value(value: Any, context: ClarificationContext) -> Resolution:
    """
    Turn a configured value into a resolution.

    Values may be plain answers, resolutions, resolvers, or callables
    (sync or async) taking the context.
    """
    if isinstance(value, (Answer, Defer, Reject)):
        return value
    if isinstance(value, InputResolver):
        return await value.resolve(context)
    if callable(value):
        result = value(context)
        if inspect.isawaitable(result):
            result = await result
        return await resolve_value(result, context)
    return Answer(value)


class StaticResolver(InputResolver):
    """Always gives the same answer"""

    def __init__(self, value: Any):
        self.value = value

    async def resolve(self, context: ClarificationContext) -> Resolution:
        return Answer(self.value)


class DeferResolver(InputResolver):
    """Hands every question back to the caller"""

    def __init__(self, token: Optional[str] = None):
        self.token = token

    async def resolve(self, context: ClarificationContext) -> Resolution:
        return Defer(self.token) if self.token else Defer()


class RejectResolver(InputResolver):
    def __init__(self, reason: Optional[str] = None):
        self.reason = reason

    async def resolve(self, context: ClarificationContext) -> Resolution:
        return Reject(self.reason or f"Question rejected: {context.question}")


class FieldMapResolver(InputResolver):
    """
    Answer from a field map.

    Looks up the question's field; unmapped fields (and questions without a
    field) go to the default resolver, which defers unless configured otherwise.
    """

    def __init__(self, answers: Dict[str, Any], default: Optional[InputResolver] = None):
        self.answers = dict(answers)
        self.default = default or DeferResolver()

    async def resolve(self, context: ClarificationContext) -> Resolution:
        if context.requested_field and context.requested_field in self.answers:
            return await resolve_value(self.answers[context.requested_field], context)
        return await self.default.resolve(context)


class ConditionalResolver(InputResolver):
    """
    Dispatch to the first sub-resolver whose predicate matches.

    Args:
        conditions: (predicate, resolver) pairs; predicates take the context
        default: Used when nothing matches
    """

    def __init__(
        self,
        conditions: Sequence[tuple],
        default: Optional[InputResolver] = None
    ):
        self.conditions = list(conditions)
        self.default = default or DeferResolver()

    async def resolve(self, context: ClarificationContext) -> Resolution:
        for predicate, resolver in self.conditions:
            if predicate(context):
                return await resolve_value(resolver, context)
        return await self.default.resolve(context)


class SequenceResolver(InputResolver):
    """Answer by attempt number: attempt 1 uses values[0], and so on"""

    def __init__(self, values: Sequence[Any], default: Optional[InputResolver] = None):
        self.values = list(values)
        self.default = default or DeferResolver()

    async def resolve(self, context: ClarificationContext) -> Resolution:
        index = context.attempt - 1
        if 0 <= index < len(self.values):
            return await resolve_value(self.values[index], context)
        return await self.default.resolve(context)


class SuggestionResolver(InputResolver):
    """Pick one of the options the agent suggested"""

    def __init__(self, index: int = 0, default: Optional[InputResolver] = None):
        self.index = index
        self.default = default or DeferResolver()

    async def resolve(self, context: ClarificationContext) -> Resolution:
        suggestions = context.input_request.suggestions or []
        if -len(suggestions) <= self.index < len(suggestions):
            return Answer(suggestions[self.index])
        return await self.default.resolve(context)


class FirstAnswerResolver(InputResolver):
    """
    Try resolvers in order; the first Answer wins.

    Defer, Reject and exceptions move on to the next resolver. When none
    answers, the last non-answer resolution is returned (Defer if there were
    no resolutions at all).
    """

    def __init__(self, resolvers: Sequence[Any]):
        self.resolvers = list(resolvers)

    async def resolve(self, context: ClarificationContext) -> Resolution:
        fallback: Resolution = Defer()
        for resolver in self.resolvers:
            try:
                resolution = await resolve_value(resolver, context)
            except Exception as e:
                logger.debug(f"Resolver {resolver!r} failed, trying next: {e}")
                continue
            if isinstance(resolution, Answer):
                return resolution
            fallback = resolution
        return fallback


def as_resolver(value: Any) -> Optional[InputResolver]:
    """
    Accept the shapes callers commonly pass as a resolver.

    None stays None, a dict becomes a FieldMapResolver, a callable is wrapped.
    """
    if value is None or isinstance(value, InputResolver):
        return value
    if isinstance(value, dict):
        return FieldMapResolver(value)
    if callable(value):
        return CallableResolver(value)
    raise TypeError(f"Cannot use {type(value).__name__} as an input resolver")


class CallableResolver(InputResolver):
    """Adapter for a plain function (sync or async) taking the context"""

    def __init__(self, func: Callable[[ClarificationContext], Any]):
        self.func = func

    async def resolve(self, context: ClarificationContext) -> Resolution:
        return await resolve_value(self.func, context)

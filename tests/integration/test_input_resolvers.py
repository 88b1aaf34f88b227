"""
Tests for Input Resolvers
"""

import pytest

from orchestrator.input_resolvers import (
    Answer,
    ClarificationContext,
    ConditionalResolver,
    Defer,
    DeferResolver,
    FieldMapResolver,
    FirstAnswerResolver,
    Reject,
    RejectResolver,
    SequenceResolver,
    StaticResolver,
    SuggestionResolver,
    as_resolver,
)
from shared.schemas import AgentConfig, ConversationMessage, InputRequest


def make_context(question="budget?", field="budget", suggestions=None, attempt=1, history=None):
    return ClarificationContext(
        input_request=InputRequest(question=question, field=field, suggestions=suggestions),
        operation_id="op-1",
        operation_name="create_media_buy",
        agent=AgentConfig(id="alpha", agent_uri="https://alpha.agents.test/rpc"),
        attempt=attempt,
        max_attempts=3,
        history=history or [],
    )


class TestBasicResolvers:

    @pytest.mark.asyncio
    async def test_static(self):
        assert await StaticResolver(50000).resolve(make_context()) == Answer(50000)

    @pytest.mark.asyncio
    async def test_defer_generates_token(self):
        resolution = await DeferResolver().resolve(make_context())
        assert isinstance(resolution, Defer)
        assert resolution.token.startswith("defer-")

        assert await DeferResolver("tok-1").resolve(make_context()) == Defer("tok-1")

    @pytest.mark.asyncio
    async def test_reject(self):
        resolution = await RejectResolver().resolve(make_context())
        assert isinstance(resolution, Reject)
        assert "budget?" in resolution.reason


class TestFieldMapResolver:

    @pytest.mark.asyncio
    async def test_answers_mapped_field(self):
        resolver = FieldMapResolver({"budget": 50000})
        assert await resolver.resolve(make_context()) == Answer(50000)

    @pytest.mark.asyncio
    async def test_unmapped_field_defers(self):
        resolver = FieldMapResolver({"start_date": "2025-01-01"})
        assert isinstance(await resolver.resolve(make_context()), Defer)

    @pytest.mark.asyncio
    async def test_question_without_field_uses_default(self):
        resolver = FieldMapResolver({"budget": 1}, default=StaticResolver("fallback"))
        assert await resolver.resolve(make_context(field=None)) == Answer("fallback")

    @pytest.mark.asyncio
    async def test_values_may_be_resolvers_or_callables(self):
        resolver = FieldMapResolver({
            "budget": StaticResolver(10),
            "approve": lambda ctx: ctx.question.upper(),
        })

        assert await resolver.resolve(make_context()) == Answer(10)
        assert await resolver.resolve(make_context(question="ok?", field="approve")) == Answer("OK?")


class TestConditionalResolver:

    @pytest.mark.asyncio
    async def test_first_matching_condition_wins(self):
        resolver = ConditionalResolver(
            [
                (lambda ctx: "budget" in ctx.question, StaticResolver(100)),
                (lambda ctx: True, StaticResolver(0)),
            ]
        )
        assert await resolver.resolve(make_context()) == Answer(100)
        assert await resolver.resolve(make_context(question="dates?")) == Answer(0)

    @pytest.mark.asyncio
    async def test_default_when_nothing_matches(self):
        resolver = ConditionalResolver([(lambda ctx: False, StaticResolver(1))], default=RejectResolver("no"))
        assert await resolver.resolve(make_context()) == Reject("no")


class TestOtherVariants:

    @pytest.mark.asyncio
    async def test_sequence_by_attempt(self):
        resolver = SequenceResolver(["first", "second"])
        assert await resolver.resolve(make_context(attempt=1)) == Answer("first")
        assert await resolver.resolve(make_context(attempt=2)) == Answer("second")
        assert isinstance(await resolver.resolve(make_context(attempt=3)), Defer)

    @pytest.mark.asyncio
    async def test_suggestion(self):
        context = make_context(suggestions=["low", "medium", "high"])
        assert await SuggestionResolver().resolve(context) == Answer("low")
        assert await SuggestionResolver(-1).resolve(context) == Answer("high")
        assert isinstance(await SuggestionResolver().resolve(make_context()), Defer)

    @pytest.mark.asyncio
    async def test_first_answer_skips_failures(self):
        def broken(ctx):
            raise RuntimeError("boom")

        resolver = FirstAnswerResolver([DeferResolver(), broken, RejectResolver("x"), StaticResolver(7)])
        assert await resolver.resolve(make_context()) == Answer(7)

    @pytest.mark.asyncio
    async def test_first_answer_returns_last_non_answer(self):
        resolver = FirstAnswerResolver([DeferResolver("t"), RejectResolver("nope")])
        assert await resolver.resolve(make_context()) == Reject("nope")

    @pytest.mark.asyncio
    async def test_async_callable(self):
        async def answer(ctx):
            return Answer(ctx.attempt * 10)

        resolver = as_resolver(answer)
        assert await resolver.resolve(make_context(attempt=2)) == Answer(20)

    def test_as_resolver_shapes(self):
        assert as_resolver(None) is None
        assert isinstance(as_resolver({"budget": 1}), FieldMapResolver)
        static = StaticResolver(1)
        assert as_resolver(static) is static
        with pytest.raises(TypeError):
            as_resolver(42)


class TestClarificationContext:

    def test_previous_answer_from_history(self):
        history = [
            ConversationMessage(role="agent", kind="clarification", content="budget?", metadata={"field": "budget"}),
            ConversationMessage(role="user", kind="clarification", content=100, metadata={"field": "budget"}),
            ConversationMessage(role="user", kind="clarification", content=200, metadata={"field": "budget"}),
        ]
        context = make_context(history=history)

        assert context.previous_answer("budget") == 200
        assert context.was_field_discussed("budget") is True
        assert context.was_field_discussed("dates") is False
        assert context.requested_field == "budget"

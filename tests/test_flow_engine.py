"""Tests for FlowEngine — start, priority-ordered transitions, completion."""
import pytest

from conftest import FakeGenerator
from context.flow_engine import FlowEngine
from core.errors import FlowAlreadyActiveError, NoValidTransitionError, NotFoundError
from models.schemas import (
    Context, ContextVariable, Flow, FlowSignal, FlowStatus, FlowStep, Transition,
)


@pytest.fixture
def engine(catalog, generator):
    return FlowEngine(catalog, generator)


class TestStart:
    def test_start_enters_initial_step(self, engine):
        ctx = Context()
        position = engine.start(ctx, "refund")
        assert ctx.flow is position
        assert position.current_step == "a"
        assert position.status == FlowStatus.ACTIVE
        assert [v.step_id for v in position.step_history] == ["a"]

    def test_start_unknown_flow(self, engine):
        with pytest.raises(NotFoundError):
            engine.start(Context(), "nope")

    def test_start_while_active(self, engine):
        ctx = Context()
        engine.start(ctx, "refund")
        with pytest.raises(FlowAlreadyActiveError):
            engine.start(ctx, "refund")

    def test_restart_after_completion(self, engine):
        ctx = Context()
        engine.start(ctx, "refund")
        engine.abandon(ctx)
        position = engine.start(ctx, "refund")
        assert position.is_active

    def test_terminal_initial_step_completes(self, catalog, generator):
        catalog.add_flow(Flow(id="one_shot", initial_step="only", steps=[FlowStep(id="only", terminal=True)]))
        ctx = Context()
        position = FlowEngine(catalog, generator).start(ctx, "one_shot")
        assert position.status == FlowStatus.COMPLETED
        assert position.completed_at is not None


class TestAdvance:
    @pytest.mark.asyncio
    async def test_higher_priority_transition_wins(self, catalog):
        gen = FakeGenerator(scores={"ready": True, "cancel": True})
        engine = FlowEngine(catalog, gen)
        ctx = Context()
        engine.start(ctx, "refund")
        result = await engine.advance("ready, but actually cancel", ctx)
        assert result.to_step == "c"
        assert result.signal == FlowSignal.COMPLETED
        assert ctx.flow.status == FlowStatus.COMPLETED
        # the priority 20 transition was checked first and passed, so "ready" was never scored
        assert [c for _, c in gen.score_calls] == ["cancel"]

    @pytest.mark.asyncio
    async def test_lower_priority_used_when_higher_fails(self, catalog):
        gen = FakeGenerator(scores={"ready": True, "cancel": False})
        engine = FlowEngine(catalog, gen)
        ctx = Context()
        engine.start(ctx, "refund")
        result = await engine.advance("ready", ctx)
        assert result
        assert result.signal == FlowSignal.TRANSITIONED
        assert (result.from_step, result.to_step) == ("a", "b")
        history = ctx.flow.step_history
        assert [v.step_id for v in history] == ["a", "b"]
        assert history[0].exited_at is not None
        assert history[1].exited_at is None

    @pytest.mark.asyncio
    async def test_no_valid_transition_keeps_position(self, engine):
        ctx = Context()
        engine.start(ctx, "refund")
        result = await engine.advance("nothing relevant", ctx)
        assert not result
        assert result.signal == FlowSignal.NO_VALID_TRANSITION
        assert ctx.flow.current_step == "a"
        assert ctx.flow.is_active

    @pytest.mark.asyncio
    async def test_strict_mode_raises(self, engine):
        ctx = Context()
        engine.start(ctx, "refund")
        with pytest.raises(NoValidTransitionError):
            await engine.advance("nothing relevant", ctx, strict=True)

    @pytest.mark.asyncio
    async def test_numeric_score_against_threshold(self, catalog):
        gen = FakeGenerator(scores={"ready": 0.6, "cancel": 0.4})
        engine = FlowEngine(catalog, gen, condition_threshold=0.5)
        ctx = Context()
        engine.start(ctx, "refund")
        result = await engine.advance("ok", ctx)
        assert result.to_step == "b"

    @pytest.mark.asyncio
    async def test_no_active_flow(self, engine):
        result = await engine.advance("hi", Context())
        assert result.signal == FlowSignal.NONE

    @pytest.mark.asyncio
    async def test_flow_removed_marks_failed(self, catalog, engine):
        ctx = Context()
        engine.start(ctx, "refund")
        catalog.remove_flow("refund")
        result = await engine.advance("ready", ctx)
        assert result.signal == FlowSignal.FAILED
        assert ctx.flow.status == FlowStatus.FAILED


class TestTransitionEligibility:
    @pytest.fixture
    def gated(self, catalog):
        catalog.add_flow(Flow(id="gated", initial_step="start", steps=[
            FlowStep(id="start", transitions=[
                Transition(target="needs_order", condition="", priority=10),
                Transition(target="fallback", condition="", priority=10),
            ]),
            FlowStep(id="needs_order", required_variables=["order_id"], terminal=True),
            FlowStep(id="fallback"),
        ]))
        return catalog

    @pytest.mark.asyncio
    async def test_target_missing_variables_is_skipped(self, gated, generator):
        engine = FlowEngine(gated, generator)
        ctx = Context()
        engine.start(ctx, "gated")
        result = await engine.advance("go", ctx)
        assert result.to_step == "fallback"
        assert generator.score_calls == []

    @pytest.mark.asyncio
    async def test_equal_priority_keeps_declaration_order(self, gated, generator):
        engine = FlowEngine(gated, generator)
        ctx = Context(variables={"order_id": ContextVariable(name="order_id", value="A-1")})
        engine.start(ctx, "gated")
        result = await engine.advance("go", ctx)
        assert result.to_step == "needs_order"
        assert result.signal == FlowSignal.COMPLETED


class TestIntrospection:
    def test_abandon(self, engine):
        ctx = Context()
        engine.start(ctx, "refund")
        assert engine.abandon(ctx)
        assert ctx.flow.status == FlowStatus.ABANDONED
        assert ctx.flow.step_history[-1].exited_at is not None
        assert not engine.abandon(ctx)

    def test_describe(self, engine):
        ctx = Context()
        assert engine.describe(ctx) == {"status": "not_started"}
        engine.start(ctx, "refund")
        info = engine.describe(ctx)
        assert info["current_step"] == "a"
        assert [t["target"] for t in info["available_transitions"]] == ["c", "b"]
        assert info["all_steps"] == ["a", "b", "c", "done"]

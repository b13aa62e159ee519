"""Tests for core data models."""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from core.errors import LifecycleError
from models.schemas import (
    Context, ContextVariable, FlowPosition, FlowStatus, MessageRole, RetryPolicy,
    Rule, Session, SessionConfig, SessionStatus, StepVisit, ToolSchema,
)


class TestRule:
    def test_defaults(self):
        r = Rule(id="r", condition="hi", action="Greet.")
        assert r.priority == 0
        assert r.enabled
        assert r.match_mode.value == "literal"
        assert not r.is_flow_bound

    def test_negative_priority_allowed(self):
        assert Rule(id="r", priority=-5, condition="x", action="y").priority == -5

    def test_semantic_threshold_bounds(self):
        with pytest.raises(PydanticValidationError):
            Rule(id="r", condition="x", action="y", semantic_threshold=1.5)


class TestToolSchema:
    def test_retry_policy_delays(self):
        policy = RetryPolicy(max_attempts=3, delay_ms=100, backoff_multiplier=2.0)
        assert policy.delay_before_retry(1) == pytest.approx(0.1)
        assert policy.delay_before_retry(2) == pytest.approx(0.2)

    def test_retry_policy_bounds(self):
        with pytest.raises(PydanticValidationError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(PydanticValidationError):
            RetryPolicy(backoff_multiplier=0.5)

    def test_timeout_seconds(self):
        assert ToolSchema(name="t", timeout_ms=2500).timeout_s == 2.5


class TestSessionLifecycle:
    def test_legal_transitions(self):
        s = Session(agent_id="a")
        s.transition_to(SessionStatus.AWAITING_TOOL)
        s.transition_to(SessionStatus.ACTIVE)
        s.transition_to(SessionStatus.IDLE)
        s.transition_to(SessionStatus.ACTIVE)
        s.transition_to(SessionStatus.COMPLETED)
        assert s.is_closed

    def test_expired_is_absorbing(self):
        s = Session(agent_id="a", status=SessionStatus.EXPIRED)
        for target in (SessionStatus.ACTIVE, SessionStatus.IDLE, SessionStatus.COMPLETED):
            assert not s.can_transition(target)
            with pytest.raises(LifecycleError):
                s.transition_to(target)

    def test_idle_cannot_await_tool(self):
        s = Session(agent_id="a", status=SessionStatus.IDLE)
        with pytest.raises(LifecycleError):
            s.transition_to(SessionStatus.AWAITING_TOOL)

    def test_same_state_is_noop(self):
        s = Session(agent_id="a")
        stamp = s.updated_at
        s.transition_to(SessionStatus.ACTIVE)
        assert s.updated_at == stamp

    def test_touch(self):
        s = Session(agent_id="a")
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        s.touch(now)
        assert s.last_activity_at == now == s.updated_at


class TestContext:
    def test_append_and_variables(self):
        ctx = Context()
        msg = ctx.append_message(MessageRole.USER, "hi")
        assert ctx.messages[-1] is msg
        ctx.variables["x"] = ContextVariable(name="x", value=1)
        assert ctx.variable_values() == {"x": 1}
        assert ctx.has_variables(["x"])
        assert not ctx.has_variables(["x", "y"])

    def test_active_flow(self):
        ctx = Context(flow=FlowPosition(flow_id="f", current_step="a", status=FlowStatus.COMPLETED))
        assert ctx.active_flow is None
        ctx.flow.status = FlowStatus.ACTIVE
        assert ctx.active_flow is ctx.flow

    def test_open_visit(self):
        pos = FlowPosition(flow_id="f", current_step="a", step_history=[StepVisit(step_id="a")])
        assert pos.open_visit.step_id == "a"
        pos.step_history[0].exited_at = datetime.now(timezone.utc)
        assert pos.open_visit is None


class TestSerialization:
    def test_session_json_round_trip(self):
        s = Session(agent_id="support", config=SessionConfig(idle_timeout_secs=60))
        s.context.append_message(MessageRole.USER, "where is order A-1", {"channel": "web"})
        s.context.variables["order_id"] = ContextVariable(name="order_id", value="A-1", confidence=0.8)
        s.context.flow = FlowPosition(flow_id="refund", current_step="b",
                                      step_history=[StepVisit(step_id="a"), StepVisit(step_id="b")])
        s.transition_to(SessionStatus.AWAITING_INPUT)

        restored = Session.model_validate_json(s.model_dump_json())
        assert restored == s
        assert restored.context.flow.current_step == "b"
        assert restored.status == SessionStatus.AWAITING_INPUT

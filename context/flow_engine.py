"""
Flow Engine — Drives a session through a multi-step interaction flow.

A flow is a directed graph of steps loaded from the catalog. A session holds
at most one active FlowPosition in its context. Each inbound message may move
the position along one transition out of the current step.

States:
  NotStarted → Active(step) → Completed      (terminal step reached)
                            → Abandoned      (idle sweep, see database/adapter.py)
                            → Failed         (flow or step vanished from the catalog)

Transition selection:
  - transitions of the current step are ordered by priority, highest first;
    equal priorities keep their declaration order
  - each condition is a binary test through the scoring capability;
    an empty condition always passes
  - a transition whose target step requires variables the context does not
    have is skipped
  - the first transition that passes wins

Usage:
    engine = FlowEngine(catalog, generator)
    engine.start(session.context, "refund")
    result = await engine.advance("I want to cancel", session.context)
    if result:
        print(result.from_step, "→", result.to_step)
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from core.errors import FlowAlreadyActiveError, GeneratorError, NoValidTransitionError, NotFoundError
from core.generator import Generator, guarded_call
from models.schemas import (
    Context, FlowPosition, FlowSignal, FlowStatus, FlowStep, StepVisit, Transition,
)
from rules.catalog import CatalogSnapshot, RuleCatalog
from utils.conditions import condition_passes

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def abandon_position(position: FlowPosition, now: datetime) -> bool:
    """Active → Abandoned. Used by FlowEngine and by the session idle sweep."""
    if not position.is_active:
        return False
    visit = position.open_visit
    if visit:
        visit.exited_at = now
    position.status = FlowStatus.ABANDONED
    logger.info("flow_abandoned", flow_id=position.flow_id, step=position.current_step)
    return True


# ──────────────────────────────────────────────────────────────
#  Advance Result
# ──────────────────────────────────────────────────────────────

class FlowAdvance:
    """Outcome of offering one message to the active flow."""

    def __init__(
        self,
        signal: FlowSignal,
        position: Optional[FlowPosition] = None,
        from_step: str = "",
        to_step: str = "",
        transition: Optional[Transition] = None,
    ):
        self.signal = signal
        self.position = position
        self.from_step = from_step
        self.to_step = to_step
        self.transition = transition

    @property
    def moved(self) -> bool:
        return self.signal in (FlowSignal.TRANSITIONED, FlowSignal.COMPLETED)

    def __bool__(self):
        return self.moved

    def __repr__(self):
        if self.moved:
            return f"<FlowAdvance {self.from_step} → {self.to_step} [{self.signal.value}]>"
        return f"<FlowAdvance {self.signal.value}>"


# ──────────────────────────────────────────────────────────────
#  Flow Engine
# ──────────────────────────────────────────────────────────────

class FlowEngine:

    def __init__(
        self,
        catalog: RuleCatalog,
        generator: Generator,
        condition_threshold: float = 0.5,
        generator_timeout_s: Optional[float] = None,
    ):
        self._catalog = catalog
        self._generator = generator
        self._threshold = condition_threshold
        self._timeout_s = generator_timeout_s

    # ── Start / Abandon ───────────────────────────────────────

    def start(self, context: Context, flow_id: str, now: datetime = None) -> FlowPosition:
        flow = self._catalog.snapshot().get_flow(flow_id)
        if flow is None:
            logger.error("unknown_flow", flow_id=flow_id)
            raise NotFoundError("flow", flow_id)
        if context.active_flow is not None:
            raise FlowAlreadyActiveError(context.active_flow.flow_id)

        now = now or _utcnow()
        position = FlowPosition(
            flow_id=flow_id,
            current_step=flow.initial_step,
            status=FlowStatus.ACTIVE,
            step_history=[StepVisit(step_id=flow.initial_step, entered_at=now)],
            started_at=now,
        )
        initial = flow.get_step(flow.initial_step)
        if initial is not None and initial.terminal:
            self._complete(position, now)
        context.flow = position

        logger.info("flow_started",
                    flow_id=flow_id,
                    initial_step=flow.initial_step,
                    status=position.status.value)
        return position

    def abandon(self, context: Context, now: datetime = None) -> bool:
        """Active → Abandoned. Returns False if there was no active flow."""
        position = context.active_flow
        if position is None:
            return False
        return abandon_position(position, now or _utcnow())

    # ── Advance ───────────────────────────────────────────────

    async def advance(
        self,
        message: str,
        context: Context,
        snapshot: Optional[CatalogSnapshot] = None,
        strict: bool = False,
        now: datetime = None,
    ) -> FlowAdvance:
        """
        Offer a message to the active flow.

        Args:
            message:  inbound user text the conditions are scored against
            context:  session context; its flow position is updated in place
            snapshot: catalog snapshot to read the flow from (defaults to current)
            strict:   raise NoValidTransitionError instead of returning the signal

        Returns:
            FlowAdvance that is truthy when the position moved.
        """
        position = context.active_flow
        if position is None:
            return FlowAdvance(FlowSignal.NONE, context.flow)

        snap = snapshot or self._catalog.snapshot()
        now = now or _utcnow()
        flow = snap.get_flow(position.flow_id)
        step = flow.get_step(position.current_step) if flow else None
        if flow is None or step is None:
            self._fail(position, now,
                       "flow removed" if flow is None else f"step '{position.current_step}' removed")
            return FlowAdvance(FlowSignal.FAILED, position, from_step=position.current_step)

        for transition in self.ordered_transitions(step):
            target = flow.get_step(transition.target)
            if target is None:
                continue
            missing = [v for v in target.required_variables if v not in context.variables]
            if missing:
                logger.debug("transition_ineligible",
                             flow_id=flow.id, target=target.id, missing=missing)
                continue
            if not await self._condition_met(message, transition.condition):
                continue

            from_step = step.id
            self._move(position, target, now)
            signal = FlowSignal.COMPLETED if target.terminal else FlowSignal.TRANSITIONED
            logger.info("flow_transition",
                        flow_id=flow.id,
                        transition=f"{from_step} → {target.id}",
                        priority=transition.priority,
                        completed=target.terminal)
            return FlowAdvance(signal, position, from_step, target.id, transition)

        logger.debug("no_valid_transition", flow_id=flow.id, step=step.id)
        if strict:
            raise NoValidTransitionError(flow.id, step.id)
        return FlowAdvance(FlowSignal.NO_VALID_TRANSITION, position, from_step=step.id)

    @staticmethod
    def ordered_transitions(step: FlowStep) -> list[Transition]:
        """Priority descending. sorted() is stable, so ties keep declaration order."""
        return sorted(step.transitions, key=lambda t: -t.priority)

    async def _condition_met(self, message: str, condition: str) -> bool:
        if not condition.strip():
            return True
        raw = await guarded_call("score", self._generator.score(message, condition), self._timeout_s)
        try:
            return condition_passes(raw, self._threshold)
        except TypeError as e:
            raise GeneratorError("score", str(e)) from e

    # ── Position bookkeeping ──────────────────────────────────

    def _move(self, position: FlowPosition, target: FlowStep, now: datetime) -> None:
        visit = position.open_visit
        if visit:
            visit.exited_at = now
        position.current_step = target.id
        position.step_history.append(StepVisit(step_id=target.id, entered_at=now))
        if target.terminal:
            self._complete(position, now)

    @staticmethod
    def _complete(position: FlowPosition, now: datetime) -> None:
        visit = position.open_visit
        if visit:
            visit.exited_at = now
        position.status = FlowStatus.COMPLETED
        position.completed_at = now

    @staticmethod
    def _fail(position: FlowPosition, now: datetime, reason: str) -> None:
        visit = position.open_visit
        if visit:
            visit.exited_at = now
        position.status = FlowStatus.FAILED
        logger.warning("flow_failed", flow_id=position.flow_id, step=position.current_step, reason=reason)

    # ── Introspection ─────────────────────────────────────────

    def available_transitions(self, context: Context) -> list[Transition]:
        position = context.active_flow
        if position is None:
            return []
        flow = self._catalog.snapshot().get_flow(position.flow_id)
        step = flow.get_step(position.current_step) if flow else None
        return self.ordered_transitions(step) if step else []

    def describe(self, context: Context) -> dict[str, Any]:
        """Current flow state, available transitions and history."""
        position = context.flow
        if position is None:
            return {"status": FlowStatus.NOT_STARTED.value}
        flow = self._catalog.snapshot().get_flow(position.flow_id)
        step = flow.get_step(position.current_step) if flow else None
        return {
            "flow_id": position.flow_id,
            "status": position.status.value,
            "current_step": position.current_step,
            "is_terminal": bool(step and step.terminal),
            "available_transitions": [
                {"target": t.target, "condition": t.condition, "priority": t.priority}
                for t in self.available_transitions(context)
            ],
            "history_length": len(position.step_history),
            "all_steps": flow.step_ids if flow else [],
        }

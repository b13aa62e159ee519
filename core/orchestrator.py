"""
Orchestrator — The per-turn pipeline.

Architecture (one inbound message):
  resolve session (create if absent)        ── under the session lock ──
    → extract variables, then append message + merge variables together
    → FlowEngine.advance        (if a flow is active)
    → RuleMatcher.match         (top-K rules, tool plan, combined action)
    → ActionExecutor.execute_plan   (concurrent, session is AWAITING_TOOL)
    → Generator.generate        (trimmed history, composed system prompt)
    → append reply, persist, return TurnResult

Every agent has its own catalog, matcher, flow engine and executor. All
agents share one Generator and one SessionStoreAdapter.

A generator or non-tolerated tool failure still persists the inbound message
before the error propagates, so no user input is lost.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import structlog

from config.settings import Settings, get_settings
from context.flow_engine import FlowAdvance, FlowEngine
from context.tracker import ContextTracker
from core.agent import Agent, build_agents
from core.errors import GeneratorError, NotFoundError, SessionClosedError, ToolExecutionError
from core.generator import Generator, guarded_call
from database.adapter import SessionStoreAdapter, SweepReport
from database.store_factory import create_store
from models.schemas import (
    FlowPosition, FlowSignal, Message, MessageRole, Session, SessionStatus,
    ToolOutcome, TurnResult,
)
from rules.matcher import RuleMatcher
from tools.executor import ActionExecutor, Handler
from utils.logging import setup_logging

logger = structlog.get_logger()


class _AgentRuntime:
    """Per-agent components wired to the shared generator."""

    def __init__(self, agent: Agent, generator: Generator, settings: Settings):
        timeout_s = settings.generator.timeout_s
        self.agent = agent
        self.matcher = RuleMatcher(
            agent.catalog, generator,
            relevance_threshold=settings.matching.relevance_threshold,
            top_k=settings.matching.top_k,
            generator_timeout_s=timeout_s,
        )
        self.flows = FlowEngine(
            agent.catalog, generator,
            condition_threshold=settings.generator.condition_threshold,
            generator_timeout_s=timeout_s,
        )
        self.executor = ActionExecutor(
            agent.catalog, agent.handlers,
            max_concurrency=settings.tools.max_concurrency,
        )
        self.tracker = ContextTracker(generator, generator_timeout_s=timeout_s)


def _ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)


class Orchestrator:
    """
    Coordinates one turn at a time per session.

    Concurrent turns on the same session follow `orchestrator.concurrent_turns`:
      "queue"  — wait for the in-flight turn (bounded by lock_timeout_s)
      "reject" — raise ConcurrencyError immediately
    """

    def __init__(
        self,
        generator: Generator,
        sessions: SessionStoreAdapter,
        settings: Settings = None,
    ):
        self.generator = generator
        self.sessions = sessions
        self._settings = settings or get_settings()
        self._agents: dict[str, _AgentRuntime] = {}

    @classmethod
    def from_settings(
        cls,
        generator: Generator,
        settings: Settings = None,
        handlers: Optional[dict[str, dict[str, Handler]]] = None,
    ) -> "Orchestrator":
        """Build logging, store, adapter and every configured agent from settings."""
        settings = settings or get_settings()
        setup_logging(settings.logging.level, settings.logging.format, settings.app_name)
        adapter = SessionStoreAdapter(
            create_store(settings.store),
            cache_size=settings.store.cache_size,
            expired_policy=settings.store.expired_policy,
        )
        orchestrator = cls(generator, adapter, settings)
        for agent in build_agents(settings, handlers):
            orchestrator.register_agent(agent)
        return orchestrator

    # ── Agents ────────────────────────────────────────────────

    def register_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = _AgentRuntime(agent, self.generator, self._settings)
        logger.info("agent_registered", agent_id=agent.id)

    def get_agent(self, agent_id: str) -> Agent:
        return self._runtime(agent_id).agent

    def executor_for(self, agent_id: str) -> ActionExecutor:
        return self._runtime(agent_id).executor

    def _runtime(self, agent_id: str) -> _AgentRuntime:
        runtime = self._agents.get(agent_id)
        if runtime is None:
            raise NotFoundError("agent", agent_id)
        return runtime

    # ── Sessions ──────────────────────────────────────────────

    @asynccontextmanager
    async def _turn_lock(self, session_id: str) -> AsyncIterator[None]:
        policy = self._settings.orchestrator
        async with self.sessions.lock(
            session_id,
            wait=policy.concurrent_turns != "reject",
            timeout=policy.lock_timeout_s,
        ):
            yield

    async def _load_open(self, agent_id: str, session_id: str) -> Session:
        session = await self.sessions.get(session_id)
        if session is None or session.agent_id != agent_id:
            raise NotFoundError("session", session_id)
        if session.is_closed:
            raise SessionClosedError(session_id, session.status.value)
        return session

    async def start_session(
        self,
        agent_id: str,
        session_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        metadata: dict[str, Any] = None,
    ) -> Session:
        """Explicit start, optionally entering a flow right away."""
        runtime = self._runtime(agent_id)
        if flow_id and runtime.agent.catalog.snapshot().get_flow(flow_id) is None:
            raise NotFoundError("flow", flow_id)
        session = await self.sessions.create(agent_id, runtime.agent.config.session, session_id, metadata)
        if flow_id:
            async with self._turn_lock(session.id):
                runtime.flows.start(session.context, flow_id, now=self.sessions.now())
                await self.sessions.save(session)
        return session

    async def start_flow(self, agent_id: str, session_id: str, flow_id: str) -> FlowPosition:
        runtime = self._runtime(agent_id)
        async with self._turn_lock(session_id):
            session = await self._load_open(agent_id, session_id)
            position = runtime.flows.start(session.context, flow_id, now=self.sessions.now())
            session.touch(self.sessions.now())
            await self.sessions.save(session)
        return position

    async def end_session(self, agent_id: str, session_id: str) -> Session:
        """Mark a session Completed. Any active flow is abandoned."""
        runtime = self._runtime(agent_id)
        async with self._turn_lock(session_id):
            session = await self._load_open(agent_id, session_id)
            now = self.sessions.now()
            runtime.flows.abandon(session.context, now)
            if session.status == SessionStatus.AWAITING_TOOL:
                session.transition_to(SessionStatus.ACTIVE, now)
            session.transition_to(SessionStatus.COMPLETED, now)
            await self.sessions.save(session)
        logger.info("session_completed", session_id=session_id, agent_id=agent_id)
        return session

    async def sweep(self) -> SweepReport:
        return await self.sessions.sweep()

    # ── Turn ──────────────────────────────────────────────────

    async def process_turn(
        self,
        agent_id: str,
        session_id: Optional[str],
        user_message: str,
        injected_variables: dict[str, Any] = None,
    ) -> TurnResult:
        """
        Run the full pipeline for one inbound message.

        Raises:
            NotFoundError       unknown agent, or session owned by another agent
            SessionClosedError  session is completed or expired
            ConcurrencyError    reject policy with a turn in flight, or queue timeout
            ToolExecutionError  a tool without allow_failure failed terminally
            GeneratorError      generation/scoring/extraction failed
        """
        runtime = self._runtime(agent_id)
        sid = session_id or uuid.uuid4().hex[:16]
        started = time.perf_counter()

        with structlog.contextvars.bound_contextvars(agent_id=agent_id, session_id=sid):
            async with self._turn_lock(sid):
                t0 = time.perf_counter()
                session = await self.sessions.get_or_create(sid, agent_id, runtime.agent.config.session)
                timings = {"resolve": _ms(t0)}
                result = await self._run_turn(runtime, session, user_message, injected_variables or {}, timings)
            result.timings["total"] = _ms(started)
        logger.info("turn_completed",
                    agent_id=agent_id,
                    session_id=sid,
                    matched=[m.rule_id for m in result.matched_rules],
                    tools=len(result.tool_outcomes),
                    flow_signal=result.flow_signal.value,
                    total_ms=result.timings["total"])
        return result

    async def _run_turn(
        self,
        runtime: _AgentRuntime,
        session: Session,
        text: str,
        injected: dict[str, Any],
        timings: dict[str, float],
    ) -> TurnResult:
        agent = runtime.agent
        context = session.context
        snap = agent.catalog.snapshot()
        now = self.sessions.now()
        deadline = self._deadline()

        # ── 1-3: message + variables land together ──
        message = Message(role=MessageRole.USER, content=text, created_at=now)
        t0 = time.perf_counter()
        candidates = runtime.tracker.injected_variables(injected, snap, message.id, now) if injected else []
        try:
            extracted = await runtime.tracker.extract_variables(text, session.config, snap, message.id, now)
        except GeneratorError:
            self._accept_message(session, message, now)
            await self._persist_failed(session, "extract")
            raise
        self._accept_message(session, message, now)
        runtime.tracker.merge_variables(context, extracted + candidates)
        timings["extract"] = _ms(t0)

        outcomes: list[ToolOutcome] = []
        try:
            # ── 4: flow ──
            t0 = time.perf_counter()
            advance = FlowAdvance(FlowSignal.NONE, context.flow)
            if context.active_flow is not None:
                advance = await runtime.flows.advance(text, context, snap, now=now)
            timings["flow"] = _ms(t0)

            # ── 5: rules ──
            t0 = time.perf_counter()
            match = await runtime.matcher.match(text, context, context.active_flow, snap)
            timings["match"] = _ms(t0)

            # ── 6: tools ──
            t0 = time.perf_counter()
            if match.tool_plan:
                session.transition_to(SessionStatus.AWAITING_TOOL, now)
                outcomes = await runtime.executor.execute_plan(match.tool_plan, deadline, snap)
                session.transition_to(SessionStatus.ACTIVE, self.sessions.now())
            timings["tools"] = _ms(t0)

            # ── 7: generate ──
            t0 = time.perf_counter()
            history = runtime.tracker.trim_history(context.messages, session.config.max_history_length)
            system_prompt = runtime.tracker.compose_system_prompt(
                agent.config.system_prompt,
                combined_action=match.combined_action or agent.config.fallback_action,
                variables=context.variable_values(),
                step_prompt=self._step_prompt(snap, context.active_flow),
            )
            generation = await guarded_call(
                "generate",
                self.generator.generate(history, system_prompt, outcomes),
                self._settings.generator.timeout_s,
            )
            timings["generate"] = _ms(t0)
        except (GeneratorError, ToolExecutionError) as e:
            await self._persist_failed(session, type(e).__name__)
            raise

        # ── 8: reply + persist ──
        now = self.sessions.now()
        context.append_message(
            MessageRole.ASSISTANT, generation.text,
            metadata={"matched_rules": [m.rule_id for m in match.top_k]},
            created_at=now,
        )
        session.transition_to(self._settled_status(snap, session), now)
        session.touch(now)
        await self.sessions.save(session)

        return TurnResult(
            session_id=session.id,
            reply=generation.text,
            tool_outcomes=outcomes,
            variables=context.variable_values(),
            flow=context.flow,
            flow_signal=advance.signal,
            matched_rules=match.top_k,
            token_usage=generation.token_usage,
            timings=timings,
            explanation=match.rejections if agent.config.enable_explainability else {},
        )

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _accept_message(session: Session, message: Message, now) -> None:
        if session.status != SessionStatus.ACTIVE:
            session.transition_to(SessionStatus.ACTIVE, now)
        session.context.messages.append(message)
        session.touch(now)

    async def _persist_failed(self, session: Session, stage: str) -> None:
        if session.status == SessionStatus.AWAITING_TOOL:
            session.transition_to(SessionStatus.ACTIVE, self.sessions.now())
        await self.sessions.save(session)
        logger.warning("turn_failed_message_kept", session_id=session.id, stage=stage)

    def _deadline(self) -> Optional[float]:
        budget = self._settings.orchestrator.turn_budget_ms
        if not budget:
            return None
        return asyncio.get_running_loop().time() + budget / 1000.0

    @staticmethod
    def _step_prompt(snap, position: Optional[FlowPosition]) -> str:
        if position is None:
            return ""
        flow = snap.get_flow(position.flow_id)
        step = flow.get_step(position.current_step) if flow else None
        return step.prompt if step else ""

    @staticmethod
    def _settled_status(snap, session: Session) -> SessionStatus:
        """AwaitingInput while the current flow step still lacks required variables."""
        position = session.context.active_flow
        if position is not None:
            flow = snap.get_flow(position.flow_id)
            step = flow.get_step(position.current_step) if flow else None
            if step and not session.context.has_variables(step.required_variables):
                return SessionStatus.AWAITING_INPUT
        return SessionStatus.ACTIVE

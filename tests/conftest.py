"""Shared test fixtures for the decision core."""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import pytest

from config.settings import Settings
from core.agent import Agent, AgentConfig
from database.adapter import SessionStoreAdapter
from database.store_memory import InMemorySessionStore
from models.schemas import (
    ExtractionResult, Flow, FlowStep, GenerationResult, Message, Rule,
    RetryPolicy, SessionConfig, ToolOutcome, ToolSchema, Transition,
    VariableDecl, VariableValidator, ValidatorType, MatchMode,
)
from rules.catalog import RuleCatalog


class FakeGenerator:
    """
    Scripted Generator.

    scores:      condition text → bool/float returned by score()
                 (a condition not listed scores 0.0)
    extractions: variable/tool schema key → (value, confidence), keyed by the
                 schema's "title" so tests can address a specific schema
    """

    def __init__(
        self,
        scores: dict[str, Union[bool, float]] = None,
        extractions: dict[str, tuple[Any, float]] = None,
        reply: str = "ok",
    ):
        self.scores = scores or {}
        self.extractions = extractions or {}
        self.reply = reply
        self.generate_calls: list[dict[str, Any]] = []
        self.score_calls: list[tuple[str, str]] = []
        self.extract_calls: list[tuple[str, dict]] = []
        self.fail_generate: Optional[Exception] = None
        self.generate_delay = 0.0

    async def generate(self, history: list[Message], system_prompt: str,
                       tool_outcomes: Optional[list[ToolOutcome]] = None) -> GenerationResult:
        self.generate_calls.append({
            "history": list(history),
            "system_prompt": system_prompt,
            "tool_outcomes": list(tool_outcomes or []),
        })
        if self.generate_delay:
            await asyncio.sleep(self.generate_delay)
        if self.fail_generate:
            raise self.fail_generate
        last_user = next((m.content for m in reversed(history) if m.role.value == "user"), "")
        return GenerationResult(text=f"{self.reply}: {last_user}", token_usage={"input": 10, "output": 5})

    async def score(self, text: str, condition: str) -> Union[bool, float]:
        self.score_calls.append((text, condition))
        return self.scores.get(condition, 0.0)

    async def extract(self, text: str, schema: dict[str, Any]) -> ExtractionResult:
        self.extract_calls.append((text, schema))
        key = schema.get("title", "")
        if key in self.extractions:
            value, confidence = self.extractions[key]
            return ExtractionResult(value=value, confidence=confidence)
        return ExtractionResult(value=None, confidence=0.0)


class FakeClock:
    def __init__(self, start: datetime = None):
        self.current = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lookup_tool() -> ToolSchema:
    return ToolSchema(
        name="lookup_order",
        description="Fetch order status",
        input_schema={
            "title": "lookup_order",
            "type": "object",
            "properties": {"order_id": {"type": "string"}},
            "required": ["order_id"],
        },
        timeout_ms=1000,
    )


@pytest.fixture
def refund_flow() -> Flow:
    return Flow(
        id="refund",
        name="Refund request",
        initial_step="a",
        steps=[
            FlowStep(id="a", prompt="Ask what they want", transitions=[
                Transition(target="b", condition="ready", priority=10),
                Transition(target="c", condition="cancel", priority=20),
            ]),
            FlowStep(id="b", prompt="Confirm the refund", transitions=[
                Transition(target="done", condition="confirmed", priority=0),
            ]),
            FlowStep(id="c", terminal=True),
            FlowStep(id="done", terminal=True),
        ],
    )


@pytest.fixture
def catalog(lookup_tool, refund_flow) -> RuleCatalog:
    """A small support catalog: one tool, two variables, one flow, four rules."""
    cat = RuleCatalog("support")
    cat.add_variable(VariableDecl(
        name="order_id",
        extraction_schema={"title": "order_id", "type": "string"},
        validator=VariableValidator(type=ValidatorType.STRING, pattern=r"^[A-Z]-\d+$"),
    ))
    cat.add_variable(VariableDecl(name="email", extraction_schema={"title": "email", "type": "string"}))
    cat.add_tool(lookup_tool)
    cat.add_flow(refund_flow)
    cat.add_rule(Rule(id="greeting", priority=1, condition="hello", action="Greet the customer."))
    cat.add_rule(Rule(id="order_status", priority=10, condition="where is my order",
                      action="Report the order status.", tools=["lookup_order"],
                      required_variables=["order_id"]))
    cat.add_rule(Rule(id="order_regex", priority=5, match_mode=MatchMode.REGEX,
                      condition=r"order ([A-Z]-\d+)", parameter_names=["order_id"],
                      action="Acknowledge the order number.", tools=["lookup_order"]))
    cat.add_rule(Rule(id="refund_intent", priority=8, match_mode=MatchMode.SEMANTIC,
                      semantic_threshold=0.6, condition="customer wants a refund",
                      action="Explain the refund process."))
    return cat


@pytest.fixture
def memory_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def adapter(memory_store, clock) -> SessionStoreAdapter:
    return SessionStoreAdapter(memory_store, clock=clock)


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.generator.timeout_s = 5.0
    return s


@pytest.fixture
def support_agent(catalog) -> Agent:
    config = AgentConfig(
        id="support",
        system_prompt="You help customers with orders.",
        session=SessionConfig(idle_timeout_secs=300, ttl_secs=3600, max_history_length=20),
    )
    return Agent(config, catalog=catalog)


def retry_tool(name: str = "flaky", **kwargs) -> ToolSchema:
    """A tool with a configurable retry policy and an open parameter schema."""
    retry = RetryPolicy(
        max_attempts=kwargs.pop("max_attempts", 1),
        delay_ms=kwargs.pop("delay_ms", 0),
        backoff_multiplier=kwargs.pop("backoff_multiplier", 2.0),
    )
    return ToolSchema(name=name, retry=retry, **kwargs)

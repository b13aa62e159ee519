"""
Core data models for the decision core.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from core.errors import LifecycleError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MatchMode(str, Enum):
    LITERAL = "literal"
    REGEX = "regex"
    SEMANTIC = "semantic"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    AWAITING_INPUT = "awaiting_input"
    AWAITING_TOOL = "awaiting_tool"
    COMPLETED = "completed"
    EXPIRED = "expired"


class FlowStatus(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    FAILED = "failed"


class FlowSignal(str, Enum):
    NONE = "none"
    TRANSITIONED = "transitioned"
    COMPLETED = "completed"
    NO_VALID_TRANSITION = "no_valid_transition"
    FAILED = "failed"


class VariableSource(str, Enum):
    EXTRACTED = "extracted"
    INJECTED = "injected"


class ValidatorType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    EMAIL = "email"
    URL = "url"
    DATE = "date"
    DATETIME = "datetime"
    ENUM = "enum"


# Allowed session lifecycle edges. Expired is absorbing.
SESSION_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.ACTIVE: {
        SessionStatus.IDLE, SessionStatus.AWAITING_INPUT, SessionStatus.AWAITING_TOOL,
        SessionStatus.COMPLETED, SessionStatus.EXPIRED,
    },
    SessionStatus.IDLE: {
        SessionStatus.ACTIVE, SessionStatus.COMPLETED, SessionStatus.EXPIRED,
    },
    SessionStatus.AWAITING_INPUT: {
        SessionStatus.ACTIVE, SessionStatus.IDLE, SessionStatus.COMPLETED, SessionStatus.EXPIRED,
    },
    SessionStatus.AWAITING_TOOL: {
        SessionStatus.ACTIVE, SessionStatus.IDLE, SessionStatus.EXPIRED,
    },
    SessionStatus.COMPLETED: {SessionStatus.EXPIRED},
    SessionStatus.EXPIRED: set(),
}


# ──────────────────────────────────────────────────────────────
#  Rule: condition/action pair with a priority
# ──────────────────────────────────────────────────────────────

class Rule(BaseModel):
    """A behavioural rule. Treated as read-only once registered."""
    id: str
    priority: int = 0                          # any signed int, higher wins
    condition: str
    action: str
    match_mode: MatchMode = MatchMode.LITERAL
    semantic_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    tools: list[str] = []
    required_variables: list[str] = []
    parameter_names: list[str] = []            # regex capture group → parameter name
    flow_id: Optional[str] = None
    step_id: Optional[str] = None
    enabled: bool = True
    description: str = ""
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_flow_bound(self) -> bool:
        return self.flow_id is not None


# ──────────────────────────────────────────────────────────────
#  Tool: external operation with timeout and retry
# ──────────────────────────────────────────────────────────────

class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=1, ge=1)
    delay_ms: int = Field(default=0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    def delay_before_retry(self, retry_number: int) -> float:
        """Seconds to wait before the given retry (1-based)."""
        return (self.delay_ms / 1000.0) * (self.backoff_multiplier ** (retry_number - 1))


class ToolSchema(BaseModel):
    """Registered tool: JSON Schema parameters plus execution policy."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    timeout_ms: int = Field(default=30_000, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    allow_failure: bool = False
    enabled: bool = True

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


# ──────────────────────────────────────────────────────────────
#  Context variables: declarations and validators
# ──────────────────────────────────────────────────────────────

class VariableValidator(BaseModel):
    type: ValidatorType
    pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min: Optional[float] = None
    max: Optional[float] = None
    allowed_values: list[Any] = []


class VariableDecl(BaseModel):
    """A context variable the agent knows how to extract."""
    name: str
    description: str = ""
    extraction_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "string"})
    validator: Optional[VariableValidator] = None


# ──────────────────────────────────────────────────────────────
#  Flow: multi-step interaction graph
# ──────────────────────────────────────────────────────────────

class Transition(BaseModel):
    target: str
    condition: str = ""                        # empty = always
    priority: int = 0


class FlowStep(BaseModel):
    id: str
    name: str = ""
    prompt: str = ""
    rule_ids: list[str] = []
    required_variables: list[str] = []
    transitions: list[Transition] = []
    terminal: bool = False


class Flow(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    steps: list[FlowStep] = []
    initial_step: str

    def get_step(self, step_id: str) -> Optional[FlowStep]:
        return next((s for s in self.steps if s.id == step_id), None)

    @property
    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]


# ──────────────────────────────────────────────────────────────
#  Session state: messages, variables, flow position
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    id: str = Field(default_factory=_new_id)
    role: MessageRole
    content: str
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)


class ContextVariable(BaseModel):
    name: str
    value: Any = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    source_message_id: Optional[str] = None
    source: VariableSource = VariableSource.EXTRACTED
    extracted_at: datetime = Field(default_factory=_utcnow)


class StepVisit(BaseModel):
    step_id: str
    entered_at: datetime = Field(default_factory=_utcnow)
    exited_at: Optional[datetime] = None


class FlowPosition(BaseModel):
    flow_id: str
    current_step: str
    status: FlowStatus = FlowStatus.ACTIVE
    step_history: list[StepVisit] = []
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == FlowStatus.ACTIVE

    @property
    def open_visit(self) -> Optional[StepVisit]:
        if self.step_history and self.step_history[-1].exited_at is None:
            return self.step_history[-1]
        return None


class Context(BaseModel):
    """Mutable payload of a session. Messages are append-only."""
    messages: list[Message] = []
    variables: dict[str, ContextVariable] = {}
    flow: Optional[FlowPosition] = None

    def append_message(
        self,
        role: MessageRole,
        content: str,
        metadata: dict[str, Any] = None,
        created_at: Optional[datetime] = None,
    ) -> Message:
        msg = Message(role=role, content=content, metadata=metadata or {}, created_at=created_at or _utcnow())
        self.messages.append(msg)
        return msg

    def variable_values(self) -> dict[str, Any]:
        return {name: var.value for name, var in self.variables.items()}

    def has_variables(self, names: list[str]) -> bool:
        return all(n in self.variables for n in names)

    @property
    def active_flow(self) -> Optional[FlowPosition]:
        return self.flow if self.flow and self.flow.is_active else None


class SessionConfig(BaseModel):
    idle_timeout_secs: int = Field(default=1800, ge=0)
    ttl_secs: int = Field(default=86_400, ge=0)
    max_history_length: int = Field(default=100, ge=1)
    auto_extract_variables: bool = True
    extraction_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)


class Session(BaseModel):
    id: str = Field(default_factory=_new_id)
    agent_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    context: Context = Field(default_factory=Context)
    config: SessionConfig = Field(default_factory=SessionConfig)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_activity_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
    metadata: dict[str, Any] = {}

    @property
    def is_closed(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.EXPIRED)

    def can_transition(self, target: SessionStatus) -> bool:
        return target == self.status or target in SESSION_TRANSITIONS[self.status]

    def transition_to(self, target: SessionStatus, now: datetime = None) -> None:
        """Move along a lifecycle edge. Same-state moves are no-ops."""
        if target == self.status:
            return
        if target not in SESSION_TRANSITIONS[self.status]:
            raise LifecycleError(self.status.value, target.value)
        self.status = target
        self.updated_at = now or _utcnow()

    def touch(self, now: datetime = None) -> None:
        now = now or _utcnow()
        self.last_activity_at = now
        self.updated_at = now


# ──────────────────────────────────────────────────────────────
#  Per-turn results
# ──────────────────────────────────────────────────────────────

class RuleMatch(BaseModel):
    """A scored candidate rule. Never persisted beyond the turn."""
    rule_id: str
    priority: int
    relevance: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    parameters: dict[str, dict[str, Any]] = {}     # tool name → parameters
    matched_context: dict[str, Any] = {}
    reasoning: str = ""
    matched_at: datetime = Field(default_factory=_utcnow)


class ToolCall(BaseModel):
    tool_name: str
    parameters: dict[str, Any] = {}
    source_rule_id: str = ""
    source_priority: int = 0


class ToolOutcome(BaseModel):
    tool_name: str
    success: bool
    data: Any = None
    message: str = ""
    elapsed_ms: float = 0.0
    attempts: int = 0
    timed_out: bool = False
    skipped: bool = False


class MatchResult(BaseModel):
    survivors: list[RuleMatch] = []
    top_k: list[RuleMatch] = []
    combined_action: str = ""
    tool_plan: list[ToolCall] = []
    context_snapshot: dict[str, Any] = {}
    rejections: dict[str, str] = {}                # rule id → reason

    @property
    def matched(self) -> bool:
        return bool(self.top_k)


class GenerationResult(BaseModel):
    text: str
    token_usage: dict[str, int] = {}


class ExtractionResult(BaseModel):
    value: Any = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class TurnResult(BaseModel):
    session_id: str
    reply: str
    tool_outcomes: list[ToolOutcome] = []
    variables: dict[str, Any] = {}
    flow: Optional[FlowPosition] = None
    flow_signal: FlowSignal = FlowSignal.NONE
    matched_rules: list[RuleMatch] = []
    token_usage: dict[str, int] = {}
    timings: dict[str, float] = {}                 # stage → ms
    explanation: dict[str, str] = {}               # rule id → why it was not selected

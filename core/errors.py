"""
Error taxonomy for the decision core.

Everything raised across a component boundary derives from CoreError so
callers can catch the whole family in one place.
"""
from __future__ import annotations

from typing import Any


class CoreError(Exception):
    """Base class for all decision-core errors."""


class ValidationError(CoreError):
    """Malformed registration or input, rejected before any mutation."""

    def __init__(self, message: str, errors: list[str] = None):
        super().__init__(message)
        self.errors = errors or []


class LifecycleError(ValidationError):
    """A session status change that is not a defined lifecycle edge."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Illegal session transition {from_status} → {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class NotFoundError(CoreError):
    """Unknown agent, session, rule, tool, flow, step or variable."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} '{key}' not found")
        self.kind = kind
        self.key = key


class SessionClosedError(NotFoundError):
    """The session exists but is completed or expired."""

    def __init__(self, session_id: str, status: str):
        super().__init__("session", session_id)
        self.args = (f"session '{session_id}' is {status}",)
        self.session_id = session_id
        self.status = status


class ToolExecutionError(CoreError):
    """Terminal failure of a tool whose policy does not tolerate failure."""

    def __init__(self, tool_name: str, reason: str, outcome: Any = None):
        super().__init__(f"Tool '{tool_name}' failed: {reason}")
        self.tool_name = tool_name
        self.reason = reason
        self.outcome = outcome


class NoValidTransitionError(CoreError):
    """No transition out of the current flow step matched. Non-fatal."""

    def __init__(self, flow_id: str, step_id: str):
        super().__init__(f"No valid transition from step '{step_id}' in flow '{flow_id}'")
        self.flow_id = flow_id
        self.step_id = step_id


class FlowAlreadyActiveError(CoreError):
    def __init__(self, flow_id: str):
        super().__init__(f"Flow '{flow_id}' is already active on this session")
        self.flow_id = flow_id


class GeneratorError(CoreError):
    """Generation, scoring or extraction failed or overran its deadline."""

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Generator {operation} failed: {reason}")
        self.operation = operation
        self.reason = reason


class ConcurrencyError(CoreError):
    """A turn is already in flight for this session."""

    def __init__(self, session_id: str, reason: str = "turn already in flight"):
        super().__init__(f"Session '{session_id}': {reason}")
        self.session_id = session_id

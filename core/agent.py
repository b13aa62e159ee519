"""
Agent definitions.

An agent bundles a system prompt, default session configuration and its own
RuleCatalog plus the tool handlers that back the catalog's tools. Agents are
usually built from the `agents:` section of settings.yaml:

    agents:
      - id: support
        system_prompt: "You are a helpful support agent."
        fallback_action: "Answer briefly and offer to connect a human."
        session: {idle_timeout_secs: 600}
        variables: [{name: order_id, extraction_schema: {type: string}}]
        tools: [{name: lookup_order, input_schema: {...}, timeout_ms: 5000}]
        flows: [...]
        rules: [...]
"""
from __future__ import annotations

from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from config.settings import SessionDefaults, Settings, ToolConfig
from models.schemas import SessionConfig
from rules.catalog import RuleCatalog
from tools.executor import Handler

logger = structlog.get_logger()


class AgentConfig(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    system_prompt: str = ""
    fallback_action: str = ""                  # used when no rule matches
    session: SessionConfig = Field(default_factory=SessionConfig)
    enable_explainability: bool = False        # report rule rejections in TurnResult


class Agent:
    """An agent definition plus its catalog and tool handlers."""

    def __init__(
        self,
        config: AgentConfig,
        catalog: RuleCatalog = None,
        handlers: dict[str, Handler] = None,
    ):
        self.config = config
        self.catalog = catalog or RuleCatalog(config.id)
        self.handlers: dict[str, Handler] = dict(handlers or {})

    @property
    def id(self) -> str:
        return self.config.id

    def __repr__(self):
        return f"<Agent {self.id} {self.catalog.snapshot()!r}>"

    @classmethod
    def from_config(
        cls,
        raw: dict[str, Any],
        handlers: dict[str, Handler] = None,
        session_defaults: SessionDefaults = None,
        tool_defaults: ToolConfig = None,
    ) -> "Agent":
        """Build an agent from its YAML definition, applying global defaults."""
        session = dict(vars(session_defaults)) if session_defaults else {}
        session.update(raw.get("session") or {})
        config = AgentConfig(
            id=raw["id"],
            name=raw.get("name", ""),
            description=raw.get("description", ""),
            system_prompt=raw.get("system_prompt", ""),
            fallback_action=raw.get("fallback_action", ""),
            session=SessionConfig(**session),
            enable_explainability=raw.get("enable_explainability", False),
        )

        tools = []
        for t in raw.get("tools", []):
            t = dict(t)
            if tool_defaults and "timeout_ms" not in t:
                t["timeout_ms"] = tool_defaults.default_timeout_ms
            tools.append(t)

        agent = cls(config, handlers=handlers)
        agent.catalog.load_config({
            "variables": raw.get("variables", []),
            "tools": tools,
            "flows": raw.get("flows", []),
            "rules": raw.get("rules", []),
        })
        logger.info("agent_loaded", agent_id=config.id, catalog=repr(agent.catalog.snapshot()))
        return agent


def build_agents(
    settings: Settings,
    handlers: Optional[dict[str, dict[str, Handler]]] = None,
) -> list[Agent]:
    """
    Build every agent declared in settings.

    Args:
        handlers: agent id → {tool name → handler}
    """
    handlers = handlers or {}
    return [
        Agent.from_config(
            raw,
            handlers=handlers.get(raw["id"]),
            session_defaults=settings.sessions,
            tool_defaults=settings.tools,
        )
        for raw in settings.agents
    ]

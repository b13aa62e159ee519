"""
Configuration loader for the decision core.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "console"             # "console" | "json"


@dataclass
class GeneratorConfig:
    timeout_s: float = 30.0             # deadline for each generate/score/extract call
    condition_threshold: float = 0.5    # numeric score at which a transition condition passes


@dataclass
class MatchingConfig:
    relevance_threshold: float = 0.3
    top_k: int = 3


@dataclass
class ToolConfig:
    default_timeout_ms: int = 30_000    # applied to tools that do not set timeout_ms
    max_concurrency: int = 8            # shared worker pool per agent


@dataclass
class SessionDefaults:
    idle_timeout_secs: int = 1800
    ttl_secs: int = 86_400
    max_history_length: int = 100
    auto_extract_variables: bool = True
    extraction_confidence_threshold: float = 0.5


@dataclass
class StoreConfig:
    backend: str = "memory"                       # "memory" | "file" | "sql"
    file_dir: str = "./data"                      # directory for file backend
    url: str = "sqlite:///./sessions.db"          # postgresql:// | mysql:// | sqlite://
    echo: bool = False
    cache_size: int = 1024
    expired_policy: str = "evict"                 # "evict" | "archive"


@dataclass
class OrchestratorConfig:
    concurrent_turns: str = "queue"               # "queue" | "reject"
    lock_timeout_s: Optional[float] = None        # queue policy: give up after this long
    turn_budget_ms: Optional[int] = None          # skip unstarted tools once exceeded


@dataclass
class Settings:
    app_name: str = "turnwise"
    debug: bool = False
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)
    sessions: SessionDefaults = field(default_factory=SessionDefaults)
    store: StoreConfig = field(default_factory=StoreConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    agents: list[dict[str, Any]] = field(default_factory=list)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any], key: str):
    """Build a dataclass section, ignoring keys it does not declare."""
    data = raw.get(key) or {}
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def parse_settings(raw: dict[str, Any]) -> Settings:
    raw = _process_values(raw or {})
    settings = Settings()
    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = raw.get("debug", settings.debug)
    settings.logging = _section(LoggingConfig, raw, "logging")
    settings.generator = _section(GeneratorConfig, raw, "generator")
    settings.matching = _section(MatchingConfig, raw, "matching")
    settings.tools = _section(ToolConfig, raw, "tools")
    settings.sessions = _section(SessionDefaults, raw, "sessions")
    settings.store = _section(StoreConfig, raw, "store")
    settings.orchestrator = _section(OrchestratorConfig, raw, "orchestrator")
    settings.agents = raw.get("agents", [])

    if settings.store.expired_policy not in ("evict", "archive"):
        raise ValueError(f"Invalid store.expired_policy '{settings.store.expired_policy}'")
    if settings.orchestrator.concurrent_turns not in ("queue", "reject"):
        raise ValueError(f"Invalid orchestrator.concurrent_turns '{settings.orchestrator.concurrent_turns}'")
    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "TURNWISE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _settings = parse_settings(raw)
    return _settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None

"""
Context Tracker — Variable extraction, merging and prompt assembly.

The tracker never touches a session on its own. It produces candidate
variables from a message (so the caller can append the message and merge
the variables in one step) and offers the pure helpers the turn pipeline
needs: history trimming and system prompt composition.

Merge rule for a variable that already exists: the new value replaces the
old one only if its confidence is not lower ("highest confidence wins").
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog

from core.errors import ValidationError
from core.generator import Generator, guarded_call
from models.schemas import (
    Context, ContextVariable, ExtractionResult, Message, SessionConfig, VariableSource,
)
from rules.catalog import CatalogSnapshot
from utils.aio import gather_or_cancel
from utils.validators import validate_value

logger = structlog.get_logger()


class ContextTracker:

    def __init__(self, generator: Generator, generator_timeout_s: Optional[float] = None):
        self._generator = generator
        self._timeout_s = generator_timeout_s

    # ── Extraction ────────────────────────────────────────────

    async def extract_variables(
        self,
        text: str,
        config: SessionConfig,
        snapshot: CatalogSnapshot,
        message_id: str,
        now: datetime,
    ) -> list[ContextVariable]:
        """Run extraction for every declared variable. Returns accepted candidates."""
        decls = list(snapshot.variables.values())
        if not config.auto_extract_variables or not decls:
            return []

        results: list[ExtractionResult] = await gather_or_cancel(*(
            guarded_call("extract", self._generator.extract(text, d.extraction_schema), self._timeout_s)
            for d in decls
        ))

        accepted = []
        for decl, result in zip(decls, results):
            if result is None or result.value is None:
                continue
            if result.confidence < config.extraction_confidence_threshold:
                logger.debug("variable_rejected_low_confidence",
                             name=decl.name, confidence=result.confidence)
                continue
            if decl.validator:
                errors = validate_value(decl.validator, result.value)
                if errors:
                    logger.info("variable_rejected_invalid", name=decl.name, errors=errors)
                    continue
            accepted.append(ContextVariable(
                name=decl.name,
                value=result.value,
                confidence=result.confidence,
                source_message_id=message_id,
                source=VariableSource.EXTRACTED,
                extracted_at=now,
            ))
        return accepted

    @staticmethod
    def injected_variables(
        values: dict[str, Any],
        snapshot: CatalogSnapshot,
        message_id: str,
        now: datetime,
    ) -> list[ContextVariable]:
        """Caller-supplied variables, full confidence. Declared validators still apply."""
        errors = []
        result = []
        for name, value in values.items():
            decl = snapshot.get_variable(name)
            if decl and decl.validator:
                problems = validate_value(decl.validator, value)
                errors.extend(f"{name}: {p}" for p in problems)
            result.append(ContextVariable(
                name=name,
                value=value,
                confidence=1.0,
                source_message_id=message_id,
                source=VariableSource.INJECTED,
                extracted_at=now,
            ))
        if errors:
            raise ValidationError(f"Invalid injected variables: {'; '.join(errors)}", errors)
        return result

    @staticmethod
    def merge_variables(context: Context, candidates: list[ContextVariable]) -> list[str]:
        """Apply candidates in order. Returns names that changed."""
        applied = []
        for var in candidates:
            existing = context.variables.get(var.name)
            if existing is not None and var.confidence < existing.confidence:
                logger.debug("variable_kept_existing",
                             name=var.name,
                             existing=existing.confidence,
                             offered=var.confidence)
                continue
            context.variables[var.name] = var
            applied.append(var.name)
        return applied

    # ── Prompt assembly ───────────────────────────────────────

    @staticmethod
    def trim_history(messages: list[Message], max_length: int) -> list[Message]:
        """Keep the newest `max_length` messages, oldest dropped first."""
        if max_length <= 0:
            return []
        return list(messages[-max_length:])

    @staticmethod
    def compose_system_prompt(
        base_prompt: str,
        combined_action: str = "",
        variables: dict[str, Any] = None,
        step_prompt: str = "",
    ) -> str:
        sections = []
        if base_prompt:
            sections.append(base_prompt)
        if step_prompt:
            sections.append(f"Current step:\n{step_prompt}")
        if combined_action:
            sections.append(f"Instructions:\n{combined_action}")
        if variables:
            lines = [f"- {k}: {v}" for k, v in sorted(variables.items())]
            sections.append("Known information:\n" + "\n".join(lines))
        return "\n\n".join(sections)

"""
Capabilities supplied to the core at construction time.

The core never ships a language model. It talks to a Generator for reply
generation, condition scoring and structured extraction, and to one
ToolHandler per registered tool. Both are plain protocols: any object with
the right async methods will do.

Generator calls go through `guarded_call`, which applies the caller's
deadline and folds every failure into GeneratorError.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, Protocol, Union, runtime_checkable

import structlog

from core.errors import GeneratorError
from models.schemas import ExtractionResult, GenerationResult, Message, ToolOutcome

logger = structlog.get_logger()


@runtime_checkable
class Generator(Protocol):
    async def generate(
        self,
        history: list[Message],
        system_prompt: str,
        tool_outcomes: Optional[list[ToolOutcome]] = None,
    ) -> GenerationResult:
        ...

    async def score(self, text: str, condition: str) -> Union[bool, float]:
        ...

    async def extract(self, text: str, schema: dict[str, Any]) -> ExtractionResult:
        ...


@runtime_checkable
class ToolHandler(Protocol):
    async def invoke(self, parameters: dict[str, Any]) -> Any:
        ...


async def guarded_call(operation: str, call: Awaitable, timeout_s: Optional[float] = None) -> Any:
    """Await a generator call under an optional deadline."""
    try:
        if timeout_s:
            return await asyncio.wait_for(call, timeout=timeout_s)
        return await call
    except GeneratorError:
        raise
    except asyncio.TimeoutError as e:
        logger.warning("generator_timeout", operation=operation, timeout_s=timeout_s)
        raise GeneratorError(operation, f"timed out after {timeout_s}s") from e
    except Exception as e:
        logger.warning("generator_failed", operation=operation, error=str(e))
        raise GeneratorError(operation, str(e)) from e

"""
Action Executor — Dispatches registered tools with timeout and retry.

Each call goes through:
  1. catalog lookup (tool schema) and handler lookup
  2. schema defaults, then JSON Schema validation (invalid → no dispatch)
  3. attempt loop (tenacity): attempt 1 runs immediately, the k-th retry
     waits delay_ms * backoff_multiplier^(k-1)
  4. each attempt runs under the tool's timeout; a timed-out handler keeps
     running in the background but its result is ignored
  5. terminal failure → failed outcome if allow_failure, else ToolExecutionError

Plans (one per turn) run concurrently on a shared bounded pool. Outcomes come
back in plan order. The first non-tolerated failure cancels whatever is still
pending and propagates.

Handlers are either objects with `async invoke(parameters)` or plain async
callables taking the parameters dict:

    executor = ActionExecutor(catalog)
    executor.register_handler("lookup_order", lookup_order)
    outcome = await executor.execute("lookup_order", {"order_id": "A-1"})
"""
from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from core.errors import NotFoundError, ToolExecutionError
from core.generator import ToolHandler
from models.schemas import ToolCall, ToolOutcome, ToolSchema
from rules.catalog import CatalogSnapshot, RuleCatalog
from tools.params import apply_defaults, validate_parameters
from utils.aio import acquire_within

logger = structlog.get_logger()

Handler = Union[ToolHandler, Callable[[dict[str, Any]], Awaitable[Any]]]
Sleep = Callable[[float], Awaitable[None]]


class HandlerTimeout(Exception):
    """One attempt exceeded the tool's timeout."""

    def __init__(self, tool_name: str, timeout_ms: int):
        super().__init__(f"timed out after {timeout_ms}ms")
        self.tool_name = tool_name
        self.timeout_ms = timeout_ms


class ActionExecutor:

    def __init__(
        self,
        catalog: RuleCatalog,
        handlers: dict[str, Handler] = None,
        max_concurrency: int = 8,
        sleep: Sleep = asyncio.sleep,
    ):
        self._catalog = catalog
        self._handlers: dict[str, Handler] = dict(handlers or {})
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._sleep = sleep
        self._background: set[asyncio.Task] = set()    # timed-out handlers still running

    # ── Handlers ──────────────────────────────────────────────

    def register_handler(self, tool_name: str, handler: Handler) -> None:
        self._handlers[tool_name] = handler
        logger.info("tool_handler_registered", tool=tool_name)

    def unregister_handler(self, tool_name: str) -> None:
        self._handlers.pop(tool_name, None)

    def has_handler(self, tool_name: str) -> bool:
        return tool_name in self._handlers

    @property
    def background_count(self) -> int:
        return len(self._background)

    # ── Single call ───────────────────────────────────────────

    async def execute(
        self,
        tool_name: str,
        parameters: dict[str, Any],
        snapshot: Optional[CatalogSnapshot] = None,
    ) -> ToolOutcome:
        snap = snapshot or self._catalog.snapshot()
        tool = snap.get_tool(tool_name)
        if tool is None:
            raise NotFoundError("tool", tool_name)
        handler = self._handlers.get(tool_name)
        if handler is None:
            raise NotFoundError("tool handler", tool_name)

        started = time.perf_counter()
        params = apply_defaults(tool.input_schema, parameters)
        errors = validate_parameters(tool.input_schema, params)
        if errors:
            logger.warning("tool_parameters_invalid", tool=tool_name, errors=errors)
            outcome = ToolOutcome(
                tool_name=tool_name,
                success=False,
                message=f"Invalid parameters: {'; '.join(errors)}",
                elapsed_ms=_ms_since(started),
                attempts=0,
            )
            return self._terminal(tool, outcome)

        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(tool.retry.max_attempts),
            wait=wait_exponential(
                multiplier=tool.retry.delay_ms / 1000.0,
                exp_base=tool.retry.backoff_multiplier,
            ),
            sleep=self._sleep,
            before_sleep=self._log_retry(tool),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    data = await self._invoke_once(tool, handler, params)
        except Exception as e:
            outcome = ToolOutcome(
                tool_name=tool_name,
                success=False,
                message=str(e) or type(e).__name__,
                elapsed_ms=_ms_since(started),
                attempts=attempts,
                timed_out=isinstance(e, HandlerTimeout),
            )
            logger.warning("tool_failed",
                           tool=tool_name,
                           attempts=attempts,
                           timed_out=outcome.timed_out,
                           allow_failure=tool.allow_failure,
                           error=outcome.message)
            return self._terminal(tool, outcome)

        outcome = ToolOutcome(
            tool_name=tool_name,
            success=True,
            data=data,
            message="ok",
            elapsed_ms=_ms_since(started),
            attempts=attempts,
        )
        logger.info("tool_executed", tool=tool_name, attempts=attempts, elapsed_ms=round(outcome.elapsed_ms, 1))
        return outcome

    @staticmethod
    def _terminal(tool: ToolSchema, outcome: ToolOutcome) -> ToolOutcome:
        if tool.allow_failure:
            return outcome
        raise ToolExecutionError(tool.name, outcome.message, outcome)

    @staticmethod
    def _log_retry(tool: ToolSchema):
        def before_sleep(retry_state):
            logger.info("tool_retry_scheduled",
                        tool=tool.name,
                        attempt=retry_state.attempt_number,
                        delay_s=round(retry_state.next_action.sleep, 3),
                        error=str(retry_state.outcome.exception()))
        return before_sleep

    async def _invoke_once(self, tool: ToolSchema, handler: Handler, params: dict[str, Any]) -> Any:
        task = asyncio.ensure_future(self._call_handler(handler, dict(params)))
        try:
            done, _ = await asyncio.wait({task}, timeout=tool.timeout_s)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()
        # Leave the handler to finish on its own; only the caller gives up.
        self._background.add(task)
        task.add_done_callback(self._reap)
        raise HandlerTimeout(tool.name, tool.timeout_ms)

    def _reap(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("background_tool_failed", error=str(task.exception()))

    @staticmethod
    async def _call_handler(handler: Handler, params: dict[str, Any]) -> Any:
        invoke = getattr(handler, "invoke", None)
        result = invoke(params) if invoke is not None else handler(params)
        if inspect.isawaitable(result):
            result = await result
        return result

    # ── Plans ─────────────────────────────────────────────────

    async def execute_plan(
        self,
        plan: list[ToolCall],
        deadline: Optional[float] = None,
        snapshot: Optional[CatalogSnapshot] = None,
    ) -> list[ToolOutcome]:
        """
        Run a tool plan concurrently.

        Args:
            plan:     calls to make; order is preserved in the result
            deadline: event-loop time after which calls that have not started
                      are skipped instead of run
            snapshot: catalog snapshot shared with the rest of the turn

        Raises:
            ToolExecutionError on the first non-tolerated failure, after the
            remaining calls have been cancelled.
        """
        if not plan:
            return []
        snap = snapshot or self._catalog.snapshot()
        outcomes: list[Optional[ToolOutcome]] = [None] * len(plan)

        async def run(index: int, call: ToolCall):
            if not await self._acquire(deadline):
                logger.info("tool_skipped_budget", tool=call.tool_name)
                outcomes[index] = ToolOutcome(
                    tool_name=call.tool_name,
                    success=False,
                    skipped=True,
                    message="turn budget exhausted before start",
                )
                return
            try:
                outcomes[index] = await self.execute(call.tool_name, call.parameters, snap)
            finally:
                self._semaphore.release()

        tasks = [asyncio.ensure_future(run(i, call)) for i, call in enumerate(plan)]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        failure = next((t.exception() for t in tasks if t.done() and not t.cancelled() and t.exception()), None)
        if failure is not None:
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("tool_plan_aborted", error=str(failure), cancelled=len(pending))
            raise failure

        return [o for o in outcomes if o is not None]

    async def _acquire(self, deadline: Optional[float]) -> bool:
        if deadline is None:
            await self._semaphore.acquire()
            return True
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            return False
        return await acquire_within(self._semaphore, remaining)


def _ms_since(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0

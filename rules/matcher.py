"""
Rule Matcher — Scores and ranks catalog rules for one inbound message.

Pipeline (per turn):
  enabled rules
    → flow scope      (only when a flow is active)
    → variable gate   (all required variables present, hard filter)
    → scoring         (literal 1.0 | regex 0.9 + captures | semantic similarity)
    → relevance threshold
    → sort (priority desc, relevance desc, rule id asc)
    → top K
    → tool parameters (context variables < extraction < regex captures)
    → deduplicated tool plan + combined action text

Match modes are declared per rule. A rule set may mix them freely; no mode
takes precedence over another, all scores land on the same [0, 1] scale.

Zero survivors is a normal outcome: the caller proceeds with an empty plan.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from core.errors import GeneratorError
from core.generator import Generator, guarded_call
from models.schemas import (
    Context, ExtractionResult, FlowPosition, MatchMode, MatchResult,
    Rule, RuleMatch, ToolCall, ToolSchema,
)
from rules.catalog import CatalogSnapshot, RuleCatalog
from utils.aio import gather_or_cancel
from utils.conditions import capture_parameters, coerce_score, literal_match, regex_search

logger = structlog.get_logger()

LITERAL_SCORE = 1.0
REGEX_SCORE = 0.9


class _Scored:
    """Intermediate scoring result for one rule."""

    __slots__ = ("rule", "relevance", "captures", "reasoning")

    def __init__(self, rule: Rule, relevance: float, captures: dict[str, Any] = None, reasoning: str = ""):
        self.rule = rule
        self.relevance = relevance
        self.captures = captures or {}
        self.reasoning = reasoning


class RuleMatcher:
    """
    Ranks rules for a message against a catalog snapshot.

    The matcher is stateless between calls; every call reads one snapshot
    from the catalog (or uses the one passed in) and never touches the
    context it is given.
    """

    def __init__(
        self,
        catalog: RuleCatalog,
        generator: Generator,
        relevance_threshold: float = 0.3,
        top_k: int = 3,
        generator_timeout_s: Optional[float] = None,
    ):
        if top_k < 1:
            raise ValueError("top_k must be >= 1")
        self._catalog = catalog
        self._generator = generator
        self._threshold = relevance_threshold
        self._top_k = top_k
        self._timeout_s = generator_timeout_s

    async def match(
        self,
        message: str,
        context: Context,
        flow_position: Optional[FlowPosition] = None,
        snapshot: Optional[CatalogSnapshot] = None,
    ) -> MatchResult:
        snap = snapshot or self._catalog.snapshot()
        rejections: dict[str, str] = {}
        active_flow = flow_position if flow_position and flow_position.is_active else None

        # ── 1-3: enabled, flow scope, required variables ──
        candidates: list[Rule] = []
        step_bound = self._step_bound_rule_ids(snap) if active_flow else set()
        for rule in sorted(snap.rules.values(), key=lambda r: r.id):
            if not rule.enabled:
                rejections[rule.id] = "disabled"
                continue
            if active_flow and not self._in_flow_scope(rule, active_flow, snap, step_bound):
                rejections[rule.id] = "outside active flow step"
                continue
            missing = [v for v in rule.required_variables if v not in context.variables]
            if missing:
                rejections[rule.id] = f"missing required variables: {', '.join(missing)}"
                continue
            candidates.append(rule)

        # ── 4-5: score and threshold ──
        scored = await self._score_all(message, candidates, rejections)
        survivors: list[RuleMatch] = []
        captures: dict[str, dict[str, Any]] = {}
        for s in scored:
            if s.relevance < self._threshold:
                rejections[s.rule.id] = f"relevance {s.relevance:.2f} below threshold {self._threshold}"
                continue
            survivors.append(RuleMatch(
                rule_id=s.rule.id,
                priority=s.rule.priority,
                relevance=s.relevance,
                confidence=s.relevance,
                reasoning=s.reasoning,
            ))
            captures[s.rule.id] = s.captures

        # ── 6-7: order and cut ──
        survivors.sort(key=lambda m: (-m.priority, -m.relevance, m.rule_id))
        top = survivors[: self._top_k]

        # ── 8: parameters, context snapshot, plan ──
        context_snapshot: dict[str, Any] = {}
        for m in top:
            rule = snap.rules[m.rule_id]
            required = {v: context.variables[v].value for v in rule.required_variables}
            m.matched_context = required
            context_snapshot.update(required)

        if top:
            await self._attach_parameters(message, context, top, captures, snap)
        plan = self._build_plan(top, snap)

        # ── 9: combined action ──
        combined_action = "\n".join(snap.rules[m.rule_id].action for m in top)

        logger.info("rules_matched",
                    catalog_version=snap.version,
                    candidates=len(candidates),
                    survivors=len(survivors),
                    top_k=[m.rule_id for m in top],
                    tools=[c.tool_name for c in plan])

        return MatchResult(
            survivors=survivors,
            top_k=top,
            combined_action=combined_action,
            tool_plan=plan,
            context_snapshot=context_snapshot,
            rejections=rejections,
        )

    # ── Flow scope ────────────────────────────────────────────

    @staticmethod
    def _step_bound_rule_ids(snap: CatalogSnapshot) -> set[str]:
        """Rules referenced from any flow step."""
        return {rid for flow in snap.flows.values() for step in flow.steps for rid in step.rule_ids}

    @staticmethod
    def _in_flow_scope(rule: Rule, position: FlowPosition, snap: CatalogSnapshot, step_bound: set[str]) -> bool:
        flow = snap.get_flow(position.flow_id)
        step = flow.get_step(position.current_step) if flow else None
        if step and rule.id in step.rule_ids:
            return True
        if rule.flow_id is None:
            return rule.id not in step_bound
        return rule.flow_id == position.flow_id and rule.step_id in (None, position.current_step)

    # ── Scoring ───────────────────────────────────────────────

    async def _score_all(self, message: str, rules: list[Rule], rejections: dict[str, str]) -> list[_Scored]:
        scored: list[_Scored] = []
        semantic: list[Rule] = []

        for rule in rules:
            if rule.match_mode == MatchMode.LITERAL:
                if literal_match(message, rule.condition):
                    scored.append(_Scored(rule, LITERAL_SCORE, reasoning=f"literal match on '{rule.condition}'"))
                else:
                    rejections[rule.id] = "no literal match"
            elif rule.match_mode == MatchMode.REGEX:
                m = regex_search(message, rule.condition)
                if m:
                    params = capture_parameters(m, rule.parameter_names)
                    scored.append(_Scored(rule, REGEX_SCORE, params,
                                          reasoning=f"regex match, {len(params)} captured parameters"))
                else:
                    rejections[rule.id] = "no regex match"
            else:
                semantic.append(rule)

        if semantic:
            raw_scores = await gather_or_cancel(*(
                guarded_call("score", self._generator.score(message, r.condition), self._timeout_s)
                for r in semantic
            ))
            for rule, raw in zip(semantic, raw_scores):
                try:
                    similarity = coerce_score(raw)
                except TypeError as e:
                    raise GeneratorError("score", str(e)) from e
                if similarity < rule.semantic_threshold:
                    rejections[rule.id] = (f"similarity {similarity:.2f} below rule threshold "
                                           f"{rule.semantic_threshold}")
                    continue
                scored.append(_Scored(rule, similarity,
                                      reasoning=f"semantic similarity {similarity:.2f}"))

        return scored

    # ── Parameters ────────────────────────────────────────────

    async def _attach_parameters(
        self,
        message: str,
        context: Context,
        top: list[RuleMatch],
        captures: dict[str, dict[str, Any]],
        snap: CatalogSnapshot,
    ) -> None:
        tool_names: list[str] = []
        for m in top:
            for t in snap.rules[m.rule_id].tools:
                if t not in tool_names and t in snap.tools:
                    tool_names.append(t)

        extracted = await self._extract_for_tools(message, [snap.tools[t] for t in tool_names])
        variables = context.variable_values()

        for m in top:
            rule = snap.rules[m.rule_id]
            per_tool: dict[str, dict[str, Any]] = {}
            for t in rule.tools:
                tool = snap.get_tool(t)
                if tool is None:
                    continue
                properties = tool.input_schema.get("properties", {})
                params = {k: variables[k] for k in properties if k in variables}
                params.update(extracted.get(t, {}))
                params.update({k: v for k, v in captures.get(rule.id, {}).items()
                               if not properties or k in properties})
                per_tool[t] = params
            m.parameters = per_tool

    async def _extract_for_tools(self, message: str, tools: list[ToolSchema]) -> dict[str, dict[str, Any]]:
        """One extraction call per distinct tool that declares parameters."""
        targets = [t for t in tools if t.input_schema.get("properties")]
        if not targets:
            return {}
        results: list[ExtractionResult] = await gather_or_cancel(*(
            guarded_call("extract", self._generator.extract(message, t.input_schema), self._timeout_s)
            for t in targets
        ))
        extracted: dict[str, dict[str, Any]] = {}
        for tool, result in zip(targets, results):
            value = result.value if isinstance(result, ExtractionResult) else None
            if isinstance(value, dict):
                properties = tool.input_schema["properties"]
                extracted[tool.name] = {k: v for k, v in value.items() if k in properties and v is not None}
        return extracted

    # ── Plan ──────────────────────────────────────────────────

    @staticmethod
    def _build_plan(top: list[RuleMatch], snap: CatalogSnapshot) -> list[ToolCall]:
        """First occurrence wins; `top` is already in priority order."""
        plan: list[ToolCall] = []
        seen: set[str] = set()
        for m in top:
            for t in snap.rules[m.rule_id].tools:
                if t in seen:
                    continue
                seen.add(t)
                tool = snap.get_tool(t)
                if tool is None or not tool.enabled:
                    logger.info("tool_skipped_disabled", tool=t, rule_id=m.rule_id)
                    continue
                plan.append(ToolCall(
                    tool_name=t,
                    parameters=dict(m.parameters.get(t, {})),
                    source_rule_id=m.rule_id,
                    source_priority=m.priority,
                ))
        return plan

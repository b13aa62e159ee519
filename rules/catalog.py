"""
Rule Catalog — Per-agent registry of rules, tools, flows and variables.

The catalog is read on every turn and written only by administrative
operations. Writers build a complete replacement, validate it as a whole,
then swap a single reference. A reader calls `snapshot()` once and works
against that object for the rest of the turn, so it sees either the entire
pre-mutation or the entire post-mutation registry.

Usage:
    catalog = RuleCatalog("support")
    catalog.add_variable(VariableDecl(name="order_id"))
    catalog.add_tool(ToolSchema(name="lookup_order", input_schema={...}))
    catalog.add_rule(Rule(id="r1", condition="where is my order",
                          action="Look up the order", tools=["lookup_order"],
                          required_variables=["order_id"]))

    snap = catalog.snapshot()
    snap.enabled_rules()      # stable for the life of `snap`
"""
from __future__ import annotations

import threading
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

import jsonschema
import structlog

from core.errors import NotFoundError, ValidationError
from models.schemas import Flow, MatchMode, Rule, ToolSchema, VariableDecl
from utils.conditions import pattern_error

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Snapshot
# ──────────────────────────────────────────────────────────────

class CatalogSnapshot:
    """Immutable view of the catalog at one version."""

    __slots__ = ("version", "rules", "tools", "flows", "variables")

    def __init__(
        self,
        version: int,
        rules: dict[str, Rule],
        tools: dict[str, ToolSchema],
        flows: dict[str, Flow],
        variables: dict[str, VariableDecl],
    ):
        self.version = version
        self.rules: Mapping[str, Rule] = MappingProxyType(rules)
        self.tools: Mapping[str, ToolSchema] = MappingProxyType(tools)
        self.flows: Mapping[str, Flow] = MappingProxyType(flows)
        self.variables: Mapping[str, VariableDecl] = MappingProxyType(variables)

    def enabled_rules(self) -> list[Rule]:
        return [r for r in self.rules.values() if r.enabled]

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self.rules.get(rule_id)

    def get_tool(self, name: str) -> Optional[ToolSchema]:
        return self.tools.get(name)

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        return self.flows.get(flow_id)

    def get_variable(self, name: str) -> Optional[VariableDecl]:
        return self.variables.get(name)

    def __repr__(self):
        return (f"<CatalogSnapshot v{self.version} rules={len(self.rules)} "
                f"tools={len(self.tools)} flows={len(self.flows)}>")


# ──────────────────────────────────────────────────────────────
#  Validation
# ──────────────────────────────────────────────────────────────

def validate_catalog(
    rules: dict[str, Rule],
    tools: dict[str, ToolSchema],
    flows: dict[str, Flow],
    variables: dict[str, VariableDecl],
) -> list[str]:
    """Check cross references across the whole catalog. Returns error messages."""
    errors = []

    for name, tool in tools.items():
        try:
            jsonschema.validators.validator_for(tool.input_schema).check_schema(tool.input_schema)
        except jsonschema.SchemaError as e:
            errors.append(f"tool '{name}' has an invalid input_schema: {e.message}")

    for name, decl in variables.items():
        try:
            jsonschema.validators.validator_for(decl.extraction_schema).check_schema(decl.extraction_schema)
        except jsonschema.SchemaError as e:
            errors.append(f"variable '{name}' has an invalid extraction_schema: {e.message}")
        if decl.validator and decl.validator.pattern:
            err = pattern_error(decl.validator.pattern)
            if err:
                errors.append(f"variable '{name}' has an invalid validator pattern: {err}")

    for rid, rule in rules.items():
        for t in rule.tools:
            if t not in tools:
                errors.append(f"rule '{rid}' references unknown tool '{t}'")
        for v in rule.required_variables:
            if v not in variables:
                errors.append(f"rule '{rid}' requires undeclared variable '{v}'")
        if rule.step_id and not rule.flow_id:
            errors.append(f"rule '{rid}' sets step_id without flow_id")
        if rule.flow_id:
            flow = flows.get(rule.flow_id)
            if flow is None:
                errors.append(f"rule '{rid}' references unknown flow '{rule.flow_id}'")
            elif rule.step_id and flow.get_step(rule.step_id) is None:
                errors.append(f"rule '{rid}' references unknown step '{rule.step_id}' "
                              f"in flow '{rule.flow_id}'")
        if rule.match_mode == MatchMode.REGEX:
            err = pattern_error(rule.condition)
            if err:
                errors.append(f"rule '{rid}' has an invalid regex condition: {err}")

    for fid, flow in flows.items():
        step_ids = flow.step_ids
        seen = set()
        for sid in step_ids:
            if sid in seen:
                errors.append(f"flow '{fid}' has duplicate step '{sid}'")
            seen.add(sid)
        if flow.initial_step not in seen:
            errors.append(f"flow '{fid}' initial_step '{flow.initial_step}' not in steps")
        for step in flow.steps:
            for i, tr in enumerate(step.transitions):
                if tr.target not in seen:
                    errors.append(f"flow '{fid}' step '{step.id}' transition[{i}] "
                                  f"target '{tr.target}' not in steps")
            for r in step.rule_ids:
                if r not in rules:
                    errors.append(f"flow '{fid}' step '{step.id}' references unknown rule '{r}'")
            for v in step.required_variables:
                if v not in variables:
                    errors.append(f"flow '{fid}' step '{step.id}' requires undeclared variable '{v}'")

    return errors


# ──────────────────────────────────────────────────────────────
#  Catalog
# ──────────────────────────────────────────────────────────────

_Collections = tuple[dict[str, Rule], dict[str, ToolSchema], dict[str, Flow], dict[str, VariableDecl]]


class RuleCatalog:
    """Copy-on-write registry. Writers serialize; readers never block."""

    def __init__(self, agent_id: str = ""):
        self.agent_id = agent_id
        self._write_lock = threading.Lock()
        self._snapshot = CatalogSnapshot(0, {}, {}, {}, {})

    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def _mutate(self, change: Callable[[_Collections], None], event: str, **log: Any) -> CatalogSnapshot:
        with self._write_lock:
            current = self._snapshot
            draft: _Collections = (
                dict(current.rules), dict(current.tools),
                dict(current.flows), dict(current.variables),
            )
            change(draft)
            errors = validate_catalog(*draft)
            if errors:
                logger.error("catalog_validation_failed",
                             agent_id=self.agent_id, operation=event, errors=errors)
                raise ValidationError(f"Invalid catalog: {'; '.join(errors)}", errors)
            self._snapshot = CatalogSnapshot(current.version + 1, *draft)
        logger.info(event, agent_id=self.agent_id, version=self._snapshot.version, **log)
        return self._snapshot

    # ── Rules ─────────────────────────────────────────────────

    def add_rule(self, rule: Rule) -> CatalogSnapshot:
        def change(draft: _Collections):
            rules = draft[0]
            if rule.id in rules:
                raise ValidationError(f"Duplicate rule id '{rule.id}'")
            rules[rule.id] = rule.model_copy(deep=True)
        return self._mutate(change, "rule_registered", rule_id=rule.id, priority=rule.priority)

    def update_rule(self, rule: Rule) -> CatalogSnapshot:
        def change(draft: _Collections):
            rules = draft[0]
            if rule.id not in rules:
                raise NotFoundError("rule", rule.id)
            rules[rule.id] = rule.model_copy(deep=True)
        return self._mutate(change, "rule_updated", rule_id=rule.id)

    def remove_rule(self, rule_id: str) -> CatalogSnapshot:
        def change(draft: _Collections):
            if draft[0].pop(rule_id, None) is None:
                raise NotFoundError("rule", rule_id)
        return self._mutate(change, "rule_removed", rule_id=rule_id)

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> CatalogSnapshot:
        def change(draft: _Collections):
            rules = draft[0]
            if rule_id not in rules:
                raise NotFoundError("rule", rule_id)
            rules[rule_id] = rules[rule_id].model_copy(update={"enabled": enabled})
        return self._mutate(change, "rule_enabled" if enabled else "rule_disabled", rule_id=rule_id)

    def enable_rule(self, rule_id: str) -> CatalogSnapshot:
        return self.set_rule_enabled(rule_id, True)

    def disable_rule(self, rule_id: str) -> CatalogSnapshot:
        return self.set_rule_enabled(rule_id, False)

    # ── Tools ─────────────────────────────────────────────────

    def add_tool(self, tool: ToolSchema) -> CatalogSnapshot:
        def change(draft: _Collections):
            tools = draft[1]
            if tool.name in tools:
                raise ValidationError(f"Duplicate tool name '{tool.name}'")
            tools[tool.name] = tool.model_copy(deep=True)
        return self._mutate(change, "tool_registered", name=tool.name,
                            timeout_ms=tool.timeout_ms, max_attempts=tool.retry.max_attempts)

    def update_tool(self, tool: ToolSchema) -> CatalogSnapshot:
        def change(draft: _Collections):
            tools = draft[1]
            if tool.name not in tools:
                raise NotFoundError("tool", tool.name)
            tools[tool.name] = tool.model_copy(deep=True)
        return self._mutate(change, "tool_updated", name=tool.name)

    def remove_tool(self, name: str) -> CatalogSnapshot:
        def change(draft: _Collections):
            if draft[1].pop(name, None) is None:
                raise NotFoundError("tool", name)
        return self._mutate(change, "tool_removed", name=name)

    # ── Flows ─────────────────────────────────────────────────

    def add_flow(self, flow: Flow) -> CatalogSnapshot:
        def change(draft: _Collections):
            flows = draft[2]
            if flow.id in flows:
                raise ValidationError(f"Duplicate flow id '{flow.id}'")
            flows[flow.id] = flow.model_copy(deep=True)
        return self._mutate(change, "flow_registered", flow_id=flow.id, steps=len(flow.steps))

    def update_flow(self, flow: Flow) -> CatalogSnapshot:
        def change(draft: _Collections):
            flows = draft[2]
            if flow.id not in flows:
                raise NotFoundError("flow", flow.id)
            flows[flow.id] = flow.model_copy(deep=True)
        return self._mutate(change, "flow_updated", flow_id=flow.id)

    def remove_flow(self, flow_id: str) -> CatalogSnapshot:
        def change(draft: _Collections):
            if draft[2].pop(flow_id, None) is None:
                raise NotFoundError("flow", flow_id)
        return self._mutate(change, "flow_removed", flow_id=flow_id)

    # ── Variables ─────────────────────────────────────────────

    def add_variable(self, decl: VariableDecl) -> CatalogSnapshot:
        def change(draft: _Collections):
            variables = draft[3]
            if decl.name in variables:
                raise ValidationError(f"Duplicate variable '{decl.name}'")
            variables[decl.name] = decl.model_copy(deep=True)
        return self._mutate(change, "variable_registered", name=decl.name)

    def remove_variable(self, name: str) -> CatalogSnapshot:
        def change(draft: _Collections):
            if draft[3].pop(name, None) is None:
                raise NotFoundError("variable", name)
        return self._mutate(change, "variable_removed", name=name)

    # ── Bulk load ─────────────────────────────────────────────

    def load_config(self, config: dict[str, Any]) -> CatalogSnapshot:
        """
        Load rules, tools, flows and variables from a config dict (YAML shape)
        in a single swap. Either everything lands or nothing does.
        """
        try:
            variables = [VariableDecl(**v) for v in config.get("variables", [])]
            tools = [ToolSchema(**t) for t in config.get("tools", [])]
            flows = [Flow(**f) for f in config.get("flows", [])]
            rules = [Rule(**r) for r in config.get("rules", [])]
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid catalog config: {e}") from e

        def change(draft: _Collections):
            for group, items, key in (
                (draft[3], variables, "name"), (draft[1], tools, "name"),
                (draft[2], flows, "id"), (draft[0], rules, "id"),
            ):
                for item in items:
                    item_key = getattr(item, key)
                    if item_key in group:
                        raise ValidationError(f"Duplicate {type(item).__name__} '{item_key}'")
                    group[item_key] = item

        return self._mutate(change, "catalog_loaded",
                            rules=len(rules), tools=len(tools),
                            flows=len(flows), variables=len(variables))

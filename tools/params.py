"""Tool parameter preparation: schema defaults and JSON Schema validation."""
from __future__ import annotations

import copy
from typing import Any

import jsonschema


def apply_defaults(schema: dict[str, Any], parameters: dict[str, Any]) -> dict[str, Any]:
    """Fill top-level properties that declare a `default` and were not supplied."""
    result = dict(parameters)
    for name, prop in schema.get("properties", {}).items():
        if name not in result and isinstance(prop, dict) and "default" in prop:
            result[name] = copy.deepcopy(prop["default"])
    return result


def validate_parameters(schema: dict[str, Any], parameters: dict[str, Any]) -> list[str]:
    """Return schema violations as readable messages. Empty list means valid."""
    validator_cls = jsonschema.validators.validator_for(schema)
    errors = sorted(validator_cls(schema).iter_errors(parameters), key=lambda e: list(e.path))
    messages = []
    for e in errors:
        where = ".".join(str(p) for p in e.path)
        messages.append(f"{where}: {e.message}" if where else e.message)
    return messages

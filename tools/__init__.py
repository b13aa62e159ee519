"""
Tool execution — dispatch of registered external actions.

  params.py   — schema defaults and JSON Schema validation
  executor.py — ActionExecutor: timeout, retry with backoff, parallel plans
"""
from tools.executor import ActionExecutor
from tools.params import apply_defaults, validate_parameters

__all__ = ["ActionExecutor", "apply_defaults", "validate_parameters"]

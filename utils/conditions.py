"""
Shared condition helpers — used by the RuleMatcher and the FlowEngine.

Literal and regex matching against message text, capture-group mapping and
score coercion for values returned by the scoring capability.
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Optional


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern:
    return re.compile(pattern)


def pattern_error(pattern: str) -> Optional[str]:
    """Return the compile error for a regex, or None if it is valid."""
    try:
        compile_pattern(pattern)
    except re.error as e:
        return str(e)
    return None


def literal_match(text: str, pattern: str) -> bool:
    """Case-insensitive substring test."""
    return pattern.lower() in text.lower()


def regex_search(text: str, pattern: str) -> Optional[re.Match]:
    return compile_pattern(pattern).search(text)


def capture_parameters(match: re.Match, names: list[str]) -> dict[str, Any]:
    """
    Map capture groups onto parameter names.
    Named groups map by name; positional groups map onto `names` in order.
    Groups that did not participate are left out.
    """
    params: dict[str, Any] = {}
    for i, value in enumerate(match.groups()):
        if i < len(names) and value is not None:
            params[names[i]] = value
    for name, value in match.groupdict().items():
        if value is not None:
            params[name] = value
    return params


def coerce_score(raw: Any) -> float:
    """Normalize a boolean or numeric score into [0, 1]."""
    if isinstance(raw, bool):
        return 1.0 if raw else 0.0
    if isinstance(raw, (int, float)):
        return min(1.0, max(0.0, float(raw)))
    raise TypeError(f"score must be bool or number, got {type(raw).__name__}")


def condition_passes(raw: Any, threshold: float) -> bool:
    """Binary pass/fail for a transition condition. No partial credit."""
    if isinstance(raw, bool):
        return raw
    return coerce_score(raw) >= threshold

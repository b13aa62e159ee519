"""
Context variable validators.

validate_value returns a list of error strings; an empty list means the
value is acceptable.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any
from urllib.parse import urlparse

from models.schemas import ValidatorType, VariableValidator
from utils.conditions import compile_pattern

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_range(value: float, v: VariableValidator) -> list[str]:
    errors = []
    if v.min is not None and value < v.min:
        errors.append(f"{value} is below minimum {v.min}")
    if v.max is not None and value > v.max:
        errors.append(f"{value} is above maximum {v.max}")
    return errors


def _parse_datetime(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def validate_value(validator: VariableValidator, value: Any) -> list[str]:
    t = validator.type

    if t == ValidatorType.STRING:
        if not isinstance(value, str):
            return ["expected a string"]
        errors = []
        if validator.min_length is not None and len(value) < validator.min_length:
            errors.append(f"length {len(value)} is below min_length {validator.min_length}")
        if validator.max_length is not None and len(value) > validator.max_length:
            errors.append(f"length {len(value)} is above max_length {validator.max_length}")
        if validator.pattern and not compile_pattern(validator.pattern).search(value):
            errors.append(f"does not match pattern '{validator.pattern}'")
        return errors

    if t == ValidatorType.INTEGER:
        if not isinstance(value, int) or isinstance(value, bool):
            return ["expected an integer"]
        return _check_range(value, validator)

    if t == ValidatorType.FLOAT:
        if not _is_number(value):
            return ["expected a number"]
        return _check_range(float(value), validator)

    if t == ValidatorType.BOOLEAN:
        return [] if isinstance(value, bool) else ["expected a boolean"]

    if t == ValidatorType.EMAIL:
        if not isinstance(value, str) or not _EMAIL_RE.match(value):
            return ["invalid email address"]
        return []

    if t == ValidatorType.URL:
        if not isinstance(value, str):
            return ["expected a URL string"]
        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            return ["invalid URL"]
        return []

    if t == ValidatorType.DATE:
        if not isinstance(value, str):
            return ["expected an ISO date string"]
        try:
            date.fromisoformat(value)
        except ValueError:
            return ["invalid date, expected YYYY-MM-DD"]
        return []

    if t == ValidatorType.DATETIME:
        if not isinstance(value, str):
            return ["expected an ISO datetime string"]
        try:
            _parse_datetime(value)
        except ValueError:
            return ["invalid datetime, expected RFC 3339"]
        return []

    if t == ValidatorType.ENUM:
        if value not in validator.allowed_values:
            return [f"{value!r} is not one of {validator.allowed_values}"]
        return []

    return [f"unsupported validator type '{t}'"]


def is_valid(validator: VariableValidator, value: Any) -> bool:
    return not validate_value(validator, value)

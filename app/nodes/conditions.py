"""Field lookup and condition evaluation shared by the if and filter nodes."""

import math
from typing import Any, Dict, List, Optional

VALID_OPERATORS = ("equals", "notEquals", "contains", "greaterThan", "lessThan")

_MISSING = object()


def get_value_at_path(data: Any, path: Optional[str]) -> Any:
    """
    Resolve a dot-separated path such as ``user.addresses.0.city``.

    Numeric segments index into lists. Missing segments resolve to None.
    An empty path returns ``data`` itself.
    """
    if not path:
        return data

    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current.get(segment, _MISSING)
        elif isinstance(current, list) and segment.lstrip("-").isdigit():
            index = int(segment)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = _MISSING

        if current is _MISSING:
            return None
    return current


def set_value_at_path(data: Dict[str, Any], path: str, value: Any) -> Dict[str, Any]:
    """Set ``value`` at a dot-separated path, creating intermediate objects."""
    segments = path.split(".")
    for segment in segments:
        if not segment or segment.startswith("__"):
            raise ValueError(f"Invalid path segment in '{path}'")

    current = data
    for segment in segments[:-1]:
        if not isinstance(current.get(segment), dict):
            current[segment] = {}
        current = current[segment]
    current[segments[-1]] = value
    return data


def to_display_string(value: Any) -> str:
    """Stringify a value the way a JSON-oriented client would display it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if value.is_integer():
            return str(int(value))
    if isinstance(value, list):
        return ",".join(to_display_string(item) for item in value)
    if isinstance(value, dict):
        return "[object Object]"
    return str(value)


def to_number(value: Any) -> float:
    """Numeric coercion; returns NaN when the value has no numeric reading."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        # Blank strings read as zero
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def evaluate_condition(actual_value: Any, operator: str, expected_value: Any) -> bool:
    """
    Compare a field value against the configured value.

    equals, notEquals and contains compare display strings (contains is
    case-insensitive). greaterThan and lessThan compare numerically when both
    sides are numeric and fall back to string ordering otherwise.
    """
    actual_str = to_display_string(actual_value)
    expected_str = to_display_string(expected_value)

    if operator == "equals":
        return actual_str == expected_str
    if operator == "notEquals":
        return actual_str != expected_str
    if operator == "contains":
        return expected_str.lower() in actual_str.lower()
    if operator in ("greaterThan", "lessThan"):
        actual_num = to_number(actual_value)
        expected_num = to_number(expected_value)
        if math.isnan(actual_num) or math.isnan(expected_num):
            # lexicographic fallback
            return actual_str > expected_str if operator == "greaterThan" else actual_str < expected_str
        return actual_num > expected_num if operator == "greaterThan" else actual_num < expected_num

    raise ValueError(f"Unsupported operator: {operator}")


def validate_condition(condition: Any) -> List[str]:
    """Collect every problem with a ``{field, operator, value}`` condition block."""
    if not isinstance(condition, dict):
        return ["Condition configuration is required"]

    errors = []
    field = condition.get("field")
    if not field or not isinstance(field, str):
        errors.append("Condition field is required and must be a string")

    operator = condition.get("operator")
    if not operator:
        errors.append("Condition operator is required")
    elif operator not in VALID_OPERATORS:
        errors.append(f"Invalid operator: {operator}")

    if "value" not in condition:
        errors.append("Condition value is required")

    return errors

"""Validation and formatting helpers shared by node executors."""

import json
import re
from datetime import datetime, timezone
from typing import Any

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_PATTERN.match(value))


def is_json_string(value: str) -> bool:
    try:
        json.loads(value)
        return True
    except (TypeError, ValueError):
        return False


def parse_json_field(value: Any) -> Any:
    """Decode ``value`` when it is a JSON string, otherwise return it unchanged."""
    if isinstance(value, str) and value.strip():
        return json.loads(value)
    return value


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

"""In-process action nodes: data transform and delay."""

import ast
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..core.exceptions import ExecutionCancelledError
from ..core.logging import get_logger
from ..core.node_registry import NodeExecutionContext, NodeExecutor
from ..models.core import ActionType, NodeCategory, NodeExecutionResult
from .common import is_number
from .conditions import get_value_at_path, set_value_at_path, to_display_string

logger = get_logger(__name__)

TRANSFORM_OPERATIONS = ("map", "filter", "reduce", "sort", "group", "merge")
TRANSFORM_LANGUAGES = ("expression", "jsonpath")

SAFE_BUILTINS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "round": round,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "sorted": sorted,
    "list": list,
    "dict": dict,
    "isinstance": isinstance,
}

DELAY_TYPES = ("fixed", "random", "exponential")
DELAY_UNITS = {
    "milliseconds": 1,
    "seconds": 1000,
    "minutes": 60 * 1000,
    "hours": 60 * 60 * 1000,
}
MAX_DELAY_MS = 24 * 60 * 60 * 1000


def check_expression(script: str) -> Optional[str]:
    """Return an error message when ``script`` is not an allowed expression, else None."""
    try:
        tree = ast.parse(script.strip(), mode="eval")
    except SyntaxError as e:
        return f"Invalid expression syntax in transformation script: {e.msg}"

    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            return f"Access to private attribute '{node.attr}' is not allowed"
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            return f"Access to '{node.id}' is not allowed"
    return None


def compile_expression(script: str) -> Callable[..., Any]:
    """Compile a restricted expression into a callable taking its variables as keywords."""
    code = compile(script.strip(), "<transform>", "eval")

    def evaluate(**variables):
        # No builtins beyond the whitelist
        return eval(code, {"__builtins__": {}, **SAFE_BUILTINS, **variables})

    return evaluate


def compile_path(script: str) -> Callable[..., Any]:
    """Compile a dot path (``$.a.b`` or ``a.b``) into a callable reading from ``item``."""
    path = script.strip()
    if path.startswith("$"):
        path = path[1:].lstrip(".")

    def evaluate(item=None, **_):
        return get_value_at_path(item, path)

    return evaluate


def delay_to_ms(value: float, unit: str) -> float:
    if unit not in DELAY_UNITS:
        raise ValueError(f"Invalid unit: {unit}")
    return value * DELAY_UNITS[unit]


class TransformNodeExecutor(NodeExecutor):
    """Applies a map/filter/reduce/sort/group/merge operation to the input.

    Scripts are either restricted Python expressions (variables ``item``,
    ``index``, ``items`` and, for reduce, ``acc``) or dot paths read from each
    item.
    """

    category = NodeCategory.ACTION
    subtype = ActionType.TRANSFORM.value
    label = "Data Transform"
    description = "Transform data with an expression or a JSON path"

    def validate(self, config: Dict[str, Any]) -> List[str]:
        errors = []

        if config.get("operation") not in TRANSFORM_OPERATIONS:
            errors.append("Valid operation is required")

        language = config.get("language", "expression")
        if language not in TRANSFORM_LANGUAGES:
            errors.append("Valid script language is required")

        script = config.get("script")
        if not isinstance(script, str) or not script.strip():
            errors.append("Transformation script is required")
        elif language == "expression":
            problem = check_expression(script)
            if problem:
                errors.append(problem)

        for key in ("input_path", "output_path"):
            if config.get(key) is not None and not isinstance(config[key], str):
                errors.append(f"{key.replace('_', ' ').capitalize()} must be a string")

        return errors

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        started = time.perf_counter()
        config = context.config

        data = context.input
        if config.get("input_path"):
            data = get_value_at_path(context.input, config["input_path"])

        language = config.get("language", "expression")
        evaluate = compile_expression(config["script"]) if language == "expression" else compile_path(config["script"])

        try:
            transformed, processed = self._apply(config["operation"], evaluate, data, config, language)
        except Exception as e:
            return NodeExecutionResult.fail(f"Transformation failed: {e}")

        context.cancellation.raise_if_cancelled()

        if config.get("output_path"):
            transformed = set_value_at_path({}, config["output_path"], transformed)

        return NodeExecutionResult.ok({
            "operation": config["operation"],
            "original_data": data,
            "transformed_data": transformed,
            "items_processed": processed,
            "duration_ms": round((time.perf_counter() - started) * 1000, 3),
        })

    def _apply(self, operation: str, evaluate: Callable[..., Any], data: Any, config: Dict[str, Any], language: str):
        # Scalars and objects are treated as a one-item list
        items = data if isinstance(data, list) else [data]

        if operation == "map":
            mapped = [evaluate(item=item, index=index, items=items) for index, item in enumerate(items)]
            return (mapped if isinstance(data, list) else mapped[0]), len(items)

        if operation == "filter":
            kept = [item for index, item in enumerate(items) if evaluate(item=item, index=index, items=items)]
            return kept, len(items)

        if operation == "reduce":
            acc = config.get("initial_value", 0 if language == "jsonpath" else None)
            for index, item in enumerate(items):
                if language == "jsonpath":
                    # Path reduce sums the numeric values it finds
                    value = evaluate(item=item)
                    acc = acc + value if is_number(value) else acc
                else:
                    acc = evaluate(acc=acc, item=item, index=index, items=items)
            return acc, len(items)

        if operation == "sort":
            ordered = sorted(
                items,
                key=lambda item: evaluate(item=item, items=items),
                reverse=bool(config.get("descending")),
            )
            return ordered, len(items)

        if operation == "group":
            groups: Dict[str, List[Any]] = {}
            for index, item in enumerate(items):
                key = to_display_string(evaluate(item=item, index=index, items=items))
                groups.setdefault(key, []).append(item)
            return groups, len(items)

        if operation == "merge":
            merged: Dict[str, Any] = {}
            for index, item in enumerate(items):
                value = evaluate(item=item, index=index, items=items)
                if not isinstance(value, dict):
                    raise ValueError(f"merge expects objects, item {index} produced {type(value).__name__}")
                merged.update(value)
            return merged, len(items)

        raise ValueError(f"Unsupported operation: {operation}")


class DelayNodeExecutor(NodeExecutor):
    """Waits for a fixed, random or exponential delay, passing its input through."""

    category = NodeCategory.ACTION
    subtype = ActionType.DELAY.value
    label = "Delay"
    description = "Pause the workflow for a period of time"

    def validate(self, config: Dict[str, Any]) -> List[str]:
        errors = []

        delay_type = config.get("delay_type")
        if delay_type not in DELAY_TYPES:
            errors.append("Valid delay type is required")

        value = config.get("value")
        if not is_number(value) or value < 0:
            errors.append("Delay value must be a non-negative number")

        unit = config.get("unit")
        if unit not in DELAY_UNITS:
            errors.append("Valid time unit is required")

        if is_number(value) and unit in DELAY_UNITS and delay_to_ms(value, unit) > MAX_DELAY_MS:
            errors.append("Delay cannot exceed 24 hours")

        if delay_type in ("random", "exponential") and config.get("max_delay_ms") is not None:
            max_delay = config["max_delay_ms"]
            if not is_number(max_delay) or max_delay <= 0:
                errors.append("Max delay must be a positive number")

        return errors

    def plan_delay_ms(self, config: Dict[str, Any]) -> float:
        base = delay_to_ms(config["value"], config["unit"])
        delay_type = config["delay_type"]

        if delay_type == "random":
            upper = max(0, config.get("max_delay_ms") or base * 2)
            actual = base if upper <= base else base + random.random() * (upper - base)
        elif delay_type == "exponential":
            upper = config.get("max_delay_ms") or base * 4
            # Up to 8x the base, capped
            actual = min(base * (2 ** (random.random() * 3)), upper)
        else:
            actual = base

        return max(0.0, min(actual, MAX_DELAY_MS))

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        config = context.config
        start_time = datetime.now(timezone.utc)
        actual_ms = self.plan_delay_ms(config)

        try:
            await context.cancellation.sleep(actual_ms / 1000)
        except ExecutionCancelledError:
            return NodeExecutionResult.fail("Delay was cancelled")  # run stop or timeout

        passthrough = config.get("passthrough", True) is not False
        return NodeExecutionResult.ok({
            "delay_type": config["delay_type"],
            "actual_delay_ms": round(actual_ms),
            "planned_delay_ms": round(delay_to_ms(config["value"], config["unit"])),
            "unit": config["unit"],
            "start_time": start_time.isoformat(),
            "end_time": datetime.now(timezone.utc).isoformat(),
            "passthrough": passthrough,
            "passthrough_data": context.input if passthrough else None,
        })

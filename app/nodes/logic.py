"""Logic nodes: if, switch, loop and filter."""

from typing import Any, Dict, List, Optional

from ..core.logging import get_logger
from ..core.node_registry import NodeExecutionContext, NodeExecutor
from ..models.core import LogicType, NodeCategory, NodeExecutionResult
from .conditions import evaluate_condition, get_value_at_path, to_display_string, validate_condition

logger = get_logger(__name__)


def extract_items(data: Any, path: Optional[str] = None) -> Optional[List[Any]]:
    """
    Find the list a logic node should iterate over.

    With a path, the value at that path must be a list. Without one, ``data``
    itself is used when it is a list, otherwise its first list-valued property.
    """
    if path:
        value = get_value_at_path(data, path)
        return value if isinstance(value, list) else None
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for value in data.values():
            if isinstance(value, list):
                return value
    return None


def extract_loop_items(data: Any, path: Optional[str] = None) -> List[Any]:
    """Item list for a loop: the input itself, then `items`, `data`, `data.items`."""
    if path:
        return extract_items(data, path) or []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        if isinstance(data.get("items"), list):
            return data["items"]
        nested = data.get("data")
        if isinstance(nested, list):
            return nested
        if isinstance(nested, dict) and isinstance(nested.get("items"), list):
            return nested["items"]
    return []


class IfNodeExecutor(NodeExecutor):
    """Evaluates one condition against the input and reports the branch taken."""

    category = NodeCategory.LOGIC
    subtype = LogicType.IF.value
    label = "If"
    description = "Route execution down the true or false branch based on a condition"

    def validate(self, config: Dict[str, Any]) -> List[str]:
        return validate_condition(config.get("condition"))

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        condition = context.config["condition"]
        actual_value = get_value_at_path(context.input, condition["field"])
        condition_met = evaluate_condition(actual_value, condition["operator"], condition["value"])

        return NodeExecutionResult.ok({
            "condition_met": condition_met,
            "branch": "true" if condition_met else "false",
            "field": condition["field"],
            "operator": condition["operator"],
            "value": condition["value"],
            "actual_value": actual_value,
        })


class SwitchNodeExecutor(NodeExecutor):
    """Matches a field value against a list of cases."""

    category = NodeCategory.LOGIC
    subtype = LogicType.SWITCH.value
    label = "Switch"
    description = "Select a case by comparing a field against configured values"

    def validate(self, config: Dict[str, Any]) -> List[str]:
        errors = []
        if not config.get("field") or not isinstance(config.get("field"), str):
            errors.append("Switch field is required and must be a string")

        cases = config.get("cases")
        if not isinstance(cases, list) or not cases:
            errors.append("At least one case is required")
        else:
            for index, case in enumerate(cases):
                if not isinstance(case, dict) or "value" not in case:
                    errors.append(f"Case {index + 1} must be an object with a value")
        return errors

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        value = get_value_at_path(context.input, context.config["field"])
        actual = to_display_string(value)

        # First matching case wins
        for case in context.config["cases"]:
            if to_display_string(case["value"]) == actual:
                label = case.get("label") or to_display_string(case["value"])
                return NodeExecutionResult.ok({"case": label, "value": value, "matched": True})

        return NodeExecutionResult.ok({"case": "default", "value": value, "matched": False})


class LoopNodeExecutor(NodeExecutor):
    """Collects the items a downstream subgraph should process."""

    category = NodeCategory.LOGIC
    subtype = LogicType.LOOP.value
    label = "Loop"
    description = "Extract a list of items from the input, optionally capped"

    def validate(self, config: Dict[str, Any]) -> List[str]:
        errors = []
        input_path = config.get("input_path")
        if input_path is not None and not isinstance(input_path, str):
            errors.append("Input path must be a string")

        max_iterations = config.get("max_iterations")
        if max_iterations is not None and (
            isinstance(max_iterations, bool) or not isinstance(max_iterations, int) or max_iterations < 1
        ):
            errors.append("Max iterations must be a positive integer")
        return errors

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        items = extract_loop_items(context.input, context.config.get("input_path"))

        max_iterations = context.config.get("max_iterations")
        if max_iterations is not None and len(items) > max_iterations:
            logger.info(f"Loop node {context.node_id} capped {len(items)} items to {max_iterations}")
            items = items[:max_iterations]

        return NodeExecutionResult.ok({"iterations": len(items), "items": items})


class FilterNodeExecutor(NodeExecutor):
    """Keeps the list items that satisfy a condition."""

    category = NodeCategory.LOGIC
    subtype = LogicType.FILTER.value
    label = "Filter"
    description = "Filter a list by a field condition"

    def validate(self, config: Dict[str, Any]) -> List[str]:
        return validate_condition(config.get("condition"))

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        items = extract_items(context.input)
        if items is None:
            return NodeExecutionResult.fail("Input must be an array or contain an array property")

        condition = context.config["condition"]
        filtered = [
            item for item in items
            if evaluate_condition(
                get_value_at_path(item, condition["field"]), condition["operator"], condition["value"]
            )
        ]

        return NodeExecutionResult.ok({
            "original_count": len(items),
            "filtered_count": len(filtered),
            "field": condition["field"],
            "operator": condition["operator"],
            "value": condition["value"],
            "filtered_items": filtered,
        })

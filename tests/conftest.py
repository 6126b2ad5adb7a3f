"""Pytest configuration and fixtures."""

from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from app.config import get_testing_config, reset_config
from app.core.node_registry import NodeExecutionContext, NodeExecutor, NodeRegistry
from app.factory import create_app
from app.models.core import NodeCategory, NodeExecutionResult
from app.nodes import build_node_registry
from app.nodes.actions import DelayNodeExecutor
from app.nodes.logic import IfNodeExecutor
from app.nodes.triggers import ManualTriggerExecutor


class CallLog:
    """Shared record of executor invocations, in call order."""

    def __init__(self):
        self.calls: List[str] = []
        self.contexts: List[NodeExecutionContext] = []

    def record(self, context: NodeExecutionContext):
        self.calls.append(context.node_id)
        self.contexts.append(context)

    def count(self, node_id: str) -> int:
        return self.calls.count(node_id)


class StartExecutor(NodeExecutor):
    """Trigger returning its configured output, or the trigger payload."""

    category = NodeCategory.TRIGGER
    subtype = "start"

    def __init__(self, log: CallLog):
        self.log = log

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        self.log.record(context)
        return NodeExecutionResult.ok(context.config.get("output", context.input))


class RecordExecutor(NodeExecutor):
    """Deterministic action echoing its node id and input."""

    category = NodeCategory.ACTION
    subtype = "record"

    def __init__(self, log: CallLog):
        self.log = log

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        self.log.record(context)
        if "output" in context.config:
            return NodeExecutionResult.ok(context.config["output"])
        return NodeExecutionResult.ok({"node": context.node_id, "input": context.input})


class FlakyExecutor(NodeExecutor):
    """Fails the first ``fail_times`` attempts per node (forever when unset)."""

    category = NodeCategory.ACTION
    subtype = "flaky"

    def __init__(self, log: CallLog):
        self.log = log

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        self.log.record(context)
        fail_times = context.config.get("fail_times")
        if fail_times is None or self.log.count(context.node_id) <= fail_times:
            return NodeExecutionResult.fail(context.config.get("message", "boom"))
        return NodeExecutionResult.ok({"recovered": True})


class RaisingExecutor(NodeExecutor):
    category = NodeCategory.ACTION
    subtype = "raise"

    def __init__(self, log: CallLog):
        self.log = log

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        self.log.record(context)
        raise RuntimeError("executor exploded")


class SleepExecutor(NodeExecutor):
    """Sleeps cooperatively on its cancellation token."""

    category = NodeCategory.ACTION
    subtype = "sleep"

    def __init__(self, log: CallLog):
        self.log = log

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        self.log.record(context)
        await context.cancellation.sleep(context.config.get("seconds", 10))
        return NodeExecutionResult.ok({"slept": True})


class StrictExecutor(NodeExecutor):
    """Requires ``value`` (a number) and ``name`` in its config."""

    category = NodeCategory.ACTION
    subtype = "strict"

    def __init__(self, log: CallLog):
        self.log = log

    def validate(self, config: Dict[str, Any]) -> List[str]:
        errors = []
        if not isinstance(config.get("value"), int):
            errors.append("value must be an integer")
        if not config.get("name"):
            errors.append("name is required")
        return errors

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        self.log.record(context)
        return NodeExecutionResult.ok({"value": context.config["value"]})


class MutatingExecutor(NodeExecutor):
    category = NodeCategory.ACTION
    subtype = "mutate"

    def __init__(self, log: CallLog):
        self.log = log

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        self.log.record(context)
        context.config["touched"] = True
        context.config.setdefault("nested", {})["touched"] = True
        return NodeExecutionResult.ok({})


class NestedLimitsExecutor(NodeExecutor):
    """Validator that assumes ``limits`` is an object."""

    category = NodeCategory.ACTION
    subtype = "limits"

    def __init__(self, log: CallLog):
        self.log = log

    def validate(self, config: Dict[str, Any]) -> List[str]:
        if config["limits"].get("max", 0) < 0:
            return ["max must not be negative"]
        return []

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        self.log.record(context)
        return NodeExecutionResult.ok(context.config["limits"])


@pytest.fixture
def call_log():
    return CallLog()


@pytest.fixture
def stub_registry(call_log):
    """Sealed registry of deterministic test executors plus the real if, delay and manual nodes."""
    registry = NodeRegistry()
    for executor_cls in (
        StartExecutor, RecordExecutor, FlakyExecutor, RaisingExecutor,
        SleepExecutor, StrictExecutor, MutatingExecutor, NestedLimitsExecutor
    ):
        registry.register(executor_cls(call_log))
    registry.register(ManualTriggerExecutor())
    registry.register(IfNodeExecutor())
    registry.register(DelayNodeExecutor())
    registry.seal()
    return registry


@pytest.fixture
def node_registry():
    """Registry with every built-in node type."""
    return build_node_registry()


@pytest.fixture
def app_config():
    reset_config()
    return get_testing_config()


@pytest.fixture
def client(app_config):
    """Test client with the application lifespan running."""
    with TestClient(create_app(app_config)) as test_client:
        yield test_client

"""Tests for workflow orchestration and the execution engine service."""

import asyncio

import pytest

from app.core.exceptions import ExecutionEngineError
from app.core.execution_engine import ExecutionEngine
from app.core.workflow_executor import WorkflowExecutor
from app.core.workflow_registry import WorkflowRegistry
from app.models.core import Edge, ExecutionStatusEnum, LogSeverity, Node, RunSettings, Workflow


def start(node_id="t", **config):
    return Node(id=node_id, category="trigger", subtype="start", config=config)


def record(node_id, **config):
    return Node(id=node_id, category="action", subtype="record", config=config)


def if_node(node_id, field, value, operator="equals"):
    return Node(
        id=node_id, category="logic", subtype="if",
        config={"condition": {"field": field, "operator": operator, "value": value}}
    )


def messages(run):
    return [(entry.node_id, entry.message) for entry in run.logs]


class TestEntryResolution:
    """Tests for trigger discovery and start-node overrides."""

    @pytest.mark.asyncio
    async def test_no_triggers_fails_run(self, stub_registry, call_log):
        workflow = Workflow(name="empty", nodes=[record("a")])

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert run.status == ExecutionStatusEnum.FAILED
        assert "no trigger nodes found" in run.error.lower()
        assert run.node_outputs == {}
        assert call_log.calls == []
        assert run.completed_at is not None

    @pytest.mark.asyncio
    async def test_missing_start_node(self, stub_registry, call_log):
        workflow = Workflow(name="w", nodes=[start(), record("a")], edges=[Edge(source="t", target="a")])

        run = await WorkflowExecutor(workflow, stub_registry).execute(start_node_id="ghost")

        assert run.status == ExecutionStatusEnum.FAILED
        assert run.error == "Start node not found: ghost"
        assert call_log.calls == []

    @pytest.mark.asyncio
    async def test_start_node_runs_only_its_subgraph(self, stub_registry, call_log):
        workflow = Workflow(
            name="w",
            nodes=[start(), record("a"), record("b")],
            edges=[Edge(source="t", target="a"), Edge(source="a", target="b")],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute(start_node_id="a")

        assert run.status == ExecutionStatusEnum.COMPLETED
        assert call_log.calls == ["a", "b"]

    @pytest.mark.asyncio
    async def test_triggers_run_sequentially_in_listed_order(self, stub_registry, call_log):
        workflow = Workflow(
            name="two triggers",
            nodes=[start("t1"), start("t2"), record("a"), record("b")],
            edges=[Edge(source="t1", target="a"), Edge(source="t2", target="b")],
        )

        await WorkflowExecutor(workflow, stub_registry).execute()

        assert call_log.calls == ["t1", "a", "t2", "b"]

    @pytest.mark.asyncio
    async def test_cycle_rejected_before_any_node_runs(self, stub_registry, call_log):
        workflow = Workflow(
            name="loop",
            nodes=[start(), record("a"), record("b")],
            edges=[Edge(source="t", target="a"), Edge(source="a", target="b"), Edge(source="b", target="a")],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert run.status == ExecutionStatusEnum.FAILED
        assert run.error == "Workflow contains a cycle: a -> b -> a"
        assert call_log.calls == []

    @pytest.mark.asyncio
    async def test_executor_is_single_use(self, stub_registry):
        executor = WorkflowExecutor(Workflow(name="w", nodes=[start()]), stub_registry)
        await executor.execute()
        with pytest.raises(ExecutionEngineError):
            await executor.execute()


class TestTraversal:
    """Tests for depth-first traversal, inputs and log framing."""

    @pytest.mark.asyncio
    async def test_depth_first_in_edge_order(self, stub_registry, call_log):
        workflow = Workflow(
            name="tree",
            nodes=[start(), record("a"), record("a1"), record("b")],
            edges=[
                Edge(source="t", target="a"),
                Edge(source="t", target="b"),
                Edge(source="a", target="a1"),
            ],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert call_log.calls == ["t", "a", "a1", "b"]
        assert messages(run)[0] == ("workflow-start", "Starting workflow: tree")
        assert messages(run)[-1] == ("workflow-end", "Workflow completed successfully")
        assert messages(run)[1:4] == [
            ("t", "Executing node: t"),
            ("t", "Node executed successfully"),
            ("a", "Executing node: a"),
        ]

    @pytest.mark.asyncio
    async def test_input_is_first_upstream_output(self, stub_registry, call_log):
        workflow = Workflow(
            name="w",
            nodes=[start(output={"x": 1}), record("a")],
            edges=[Edge(source="t", target="a")],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert run.node_outputs["a"] == {"node": "a", "input": {"x": 1}}
        assert call_log.contexts[1].previous_nodes == ["t"]

    @pytest.mark.asyncio
    async def test_trigger_data_feeds_root_triggers(self, stub_registry):
        workflow = Workflow(name="w", nodes=[start()])

        run = await WorkflowExecutor(workflow, stub_registry, trigger_data={"event": "push"}).execute()

        assert run.node_outputs["t"] == {"event": "push"}

    @pytest.mark.asyncio
    async def test_missing_edge_target_skipped(self, stub_registry, call_log):
        workflow = Workflow(
            name="w", nodes=[start(), record("a")],
            edges=[Edge(source="t", target="ghost"), Edge(source="t", target="a")],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert run.status == ExecutionStatusEnum.COMPLETED
        assert call_log.calls == ["t", "a"]

    @pytest.mark.asyncio
    async def test_reconvergent_node_runs_per_path_last_write_wins(self, stub_registry, call_log):
        workflow = Workflow(
            name="diamond",
            nodes=[start(), record("a", output="A"), record("b", output="B"), record("c")],
            edges=[
                Edge(source="t", target="a"),
                Edge(source="t", target="b"),
                Edge(source="a", target="c"),
                Edge(source="b", target="c"),
            ],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert call_log.count("c") == 2
        # c always reads from its first incoming edge (a)
        assert run.node_outputs["c"] == {"node": "c", "input": "A"}
        assert len(run.logs_for("c")) == 4

    @pytest.mark.asyncio
    async def test_determinism(self, stub_registry):
        workflow = Workflow(
            name="w",
            nodes=[start(output={"status": "active"}), if_node("i", "status", "active"), record("a"), record("b")],
            edges=[
                Edge(source="t", target="i"),
                Edge(source="i", target="a", branch_handle="true"),
                Edge(source="i", target="b", branch_handle="false"),
            ],
        )

        first = await WorkflowExecutor(workflow, stub_registry).execute()
        second = await WorkflowExecutor(workflow, stub_registry).execute()

        assert first.node_outputs == second.node_outputs
        assert [m for _, m in messages(first)] == [m for _, m in messages(second)]


class TestFailureHandling:
    """Tests for validation failures, retries and continue-on-fail at run level."""

    @pytest.mark.asyncio
    async def test_invalid_config_fails_run_without_invoking(self, stub_registry, call_log):
        workflow = Workflow(
            name="w",
            nodes=[start(), Node(id="s", category="action", subtype="strict", config={"value": 3})],
            edges=[Edge(source="t", target="s")],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert run.status == ExecutionStatusEnum.FAILED
        assert "name is required" in run.error
        assert call_log.count("s") == 0
        assert ("s", "Invalid configuration: name is required") in messages(run)

    @pytest.mark.asyncio
    async def test_malformed_nested_config_reports_every_violation(self, node_registry):
        workflow = Workflow(
            name="w",
            nodes=[
                Node(id="t", category="trigger", subtype="manual"),
                Node(
                    id="call", category="action", subtype="http",
                    config={"url": "not a url", "authentication": "token"}
                ),
            ],
            edges=[Edge(source="t", target="call")],
        )

        run = await WorkflowExecutor(workflow, node_registry).execute()

        expected = "Invalid configuration: Invalid URL format; Authentication must be an object"
        assert run.status == ExecutionStatusEnum.FAILED
        assert run.error == expected
        assert ("call", expected) in messages(run)
        assert "call" not in run.node_outputs

    @pytest.mark.asyncio
    async def test_validator_crash_becomes_config_error(self, stub_registry, call_log):
        workflow = Workflow(
            name="w",
            nodes=[start(), Node(id="l", category="action", subtype="limits", config={"limits": "ten"})],
            edges=[Edge(source="t", target="l")],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert run.status == ExecutionStatusEnum.FAILED
        assert run.error.startswith("Invalid configuration: Configuration could not be validated:")
        assert call_log.count("l") == 0
        assert ("l", run.error) in messages(run)
        assert run.logs_for("l")[-1].message == f"Node execution failed: {run.error}"

    @pytest.mark.asyncio
    async def test_retry_count_attempts_and_log_order(self, stub_registry, call_log):
        workflow = Workflow(
            name="w",
            nodes=[
                start(),
                Node(id="f", category="action", subtype="flaky", run_settings=RunSettings(retry_count=2)),
                record("after"),
            ],
            edges=[Edge(source="t", target="f"), Edge(source="f", target="after")],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert call_log.count("f") == 3
        node_messages = [entry.message for entry in run.logs_for("f")]
        assert node_messages == [
            "Executing node: f",
            "Attempt 1 failed: boom",
            "Attempt 2 failed: boom",
            "Attempt 3 failed: boom",
            "Node execution failed: boom",
        ]
        assert run.status == ExecutionStatusEnum.FAILED
        assert run.error == "boom"
        assert messages(run)[-1] == ("workflow-error", "Workflow failed: boom")
        assert call_log.count("after") == 0

    @pytest.mark.asyncio
    async def test_continue_on_fail_runs_downstream(self, stub_registry, call_log):
        workflow = Workflow(
            name="w",
            nodes=[
                start(),
                Node(
                    id="f", category="action", subtype="flaky", config={"message": "unreachable"},
                    run_settings=RunSettings(retry_count=1, continue_on_fail=True)
                ),
                record("after"),
            ],
            edges=[Edge(source="t", target="f"), Edge(source="f", target="after")],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert run.status == ExecutionStatusEnum.COMPLETED
        assert run.node_outputs["f"] == {"error": True, "message": "unreachable"}
        assert run.node_outputs["after"]["input"] == {"error": True, "message": "unreachable"}
        warnings = [entry for entry in run.logs_for("f") if entry.level == LogSeverity.WARNING]
        assert warnings[0].message == "continue_on_fail enabled; proceeding downstream"

    @pytest.mark.asyncio
    async def test_failure_stops_remaining_triggers(self, stub_registry, call_log):
        workflow = Workflow(
            name="w",
            nodes=[start("t1"), Node(id="x", category="action", subtype="raise"), start("t2")],
            edges=[Edge(source="t1", target="x")],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert run.status == ExecutionStatusEnum.FAILED
        assert run.error == "executor exploded"
        assert "t2" not in call_log.calls

    @pytest.mark.asyncio
    async def test_unknown_node_type_fails_run(self, stub_registry):
        workflow = Workflow(
            name="w",
            nodes=[start(), Node(id="u", category="action", subtype="teleport")],
            edges=[Edge(source="t", target="u")],
        )

        run = await WorkflowExecutor(workflow, stub_registry).execute()

        assert run.status == ExecutionStatusEnum.FAILED
        assert run.error == "Unknown node type: action/teleport"

    @pytest.mark.asyncio
    async def test_default_run_settings_apply(self, stub_registry, call_log):
        workflow = Workflow(
            name="w",
            nodes=[start(), Node(id="f", category="action", subtype="flaky", config={"fail_times": 1})],
            edges=[Edge(source="t", target="f")],
        )

        run = await WorkflowExecutor(
            workflow, stub_registry, default_run_settings=RunSettings(retry_count=1)
        ).execute()

        assert run.status == ExecutionStatusEnum.COMPLETED
        assert call_log.count("f") == 2


class TestBranchRouting:
    """Tests for if-node branch routing."""

    def branching_workflow(self, status):
        return Workflow(
            name="branch",
            nodes=[
                start(output={"status": status}),
                if_node("check", "status", "active"),
                record("yes"),
                record("no"),
                record("always"),
            ],
            edges=[
                Edge(source="t", target="check"),
                Edge(source="check", target="yes", branch_handle="true"),
                Edge(source="check", target="no", branch_handle="false"),
                Edge(source="check", target="always"),
            ],
        )

    @pytest.mark.asyncio
    async def test_true_branch(self, stub_registry, call_log):
        run = await WorkflowExecutor(self.branching_workflow("active"), stub_registry).execute()

        assert run.node_outputs["check"]["condition_met"] is True
        assert call_log.calls == ["t", "yes", "always"]
        assert run.logs_for("no") == []
        assert "no" not in run.node_outputs

    @pytest.mark.asyncio
    async def test_false_branch(self, stub_registry, call_log):
        run = await WorkflowExecutor(self.branching_workflow("inactive"), stub_registry).execute()

        assert run.node_outputs["check"]["condition_met"] is False
        assert call_log.calls == ["t", "no", "always"]
        assert run.logs_for("yes") == []

    @pytest.mark.asyncio
    async def test_branch_handles_ignored_for_non_if_nodes(self, stub_registry, call_log):
        workflow = Workflow(
            name="w",
            nodes=[start(), record("a"), record("b")],
            edges=[Edge(source="t", target="a", branch_handle="false"), Edge(source="t", target="b", branch_handle="x")],
        )

        await WorkflowExecutor(workflow, stub_registry).execute()

        assert call_log.calls == ["t", "a", "b"]


class TestStop:
    """Tests for cooperative cancellation of a run."""

    def sleeping_workflow(self):
        return Workflow(
            name="slow",
            nodes=[start(), Node(id="s", category="action", subtype="sleep", config={"seconds": 5}), record("after")],
            edges=[Edge(source="t", target="s"), Edge(source="s", target="after")],
        )

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_node(self, stub_registry, call_log):
        executor = WorkflowExecutor(self.sleeping_workflow(), stub_registry)
        asyncio.get_running_loop().call_later(0.05, executor.stop)

        run = await executor.execute()

        assert run.status == ExecutionStatusEnum.CANCELLED
        assert run.completed_at is not None
        assert run.error is None
        assert "s" not in run.node_outputs
        assert run.logs_for("after") == []
        assert "after" not in call_log.calls
        assert messages(run)[-1] == ("workflow-cancelled", "Workflow cancelled")

    @pytest.mark.asyncio
    async def test_stop_is_terminal_once(self, stub_registry):
        executor = WorkflowExecutor(self.sleeping_workflow(), stub_registry)
        task = asyncio.ensure_future(executor.execute())
        await asyncio.sleep(0.05)

        executor.stop()
        completed_at = executor.run.completed_at
        executor.stop()
        run = await task

        assert run.status == ExecutionStatusEnum.CANCELLED
        assert run.completed_at == completed_at
        assert not executor.is_running

    @pytest.mark.asyncio
    async def test_stop_before_execute(self, stub_registry, call_log):
        executor = WorkflowExecutor(self.sleeping_workflow(), stub_registry)
        executor.stop()

        run = await executor.execute()

        assert run.status == ExecutionStatusEnum.CANCELLED
        assert call_log.calls == []


class TestScenario:
    """Manual trigger feeding an if node with transform and delay branches."""

    @pytest.mark.asyncio
    async def test_active_status_takes_transform_branch(self, node_registry):
        workflow = Workflow(
            name="Status router",
            nodes=[
                Node(id="trigger", category="trigger", subtype="manual"),
                if_node("check", "data.status", "active"),
                Node(
                    id="transform", category="action", subtype="transform",
                    config={"operation": "map", "script": "{'status': str(item['actual_value']).upper()}"}
                ),
                Node(
                    id="wait", category="action", subtype="delay",
                    config={"delay_type": "fixed", "value": 1, "unit": "seconds"}
                ),
            ],
            edges=[
                Edge(source="trigger", target="check"),
                Edge(source="check", target="transform", branch_handle="true"),
                Edge(source="check", target="wait", branch_handle="false"),
            ],
        )

        run = await WorkflowExecutor(workflow, node_registry, trigger_data={"status": "active"}).execute()

        assert run.status == ExecutionStatusEnum.COMPLETED
        assert run.node_outputs["check"]["condition_met"] is True
        assert run.node_outputs["transform"]["transformed_data"] == {"status": "ACTIVE"}
        assert run.logs_for("wait") == []
        assert "wait" not in run.node_outputs


class TestExecutionEngine:
    """Tests for the service layer around the orchestrator."""

    def make_engine(self, registry, **kwargs):
        return ExecutionEngine(registry, WorkflowRegistry(), **kwargs)

    @pytest.mark.asyncio
    async def test_execute_records_history(self, stub_registry):
        engine = self.make_engine(stub_registry)
        workflow = Workflow(name="w", nodes=[start()])

        run = await engine.execute_workflow(workflow)

        assert run.status == ExecutionStatusEnum.COMPLETED
        history = engine.workflow_registry.get_executions(workflow.id)
        assert [r.id for r in history] == [run.id]
        assert not engine.is_workflow_running(workflow.id)

    @pytest.mark.asyncio
    async def test_stop_workflow_cancels_background_run(self, stub_registry):
        engine = self.make_engine(stub_registry)
        workflow = Workflow(
            name="slow",
            nodes=[start(), Node(id="s", category="action", subtype="sleep", config={"seconds": 5})],
            edges=[Edge(source="t", target="s")],
        )

        run = engine.start_background(workflow)
        await asyncio.sleep(0.05)
        assert engine.get_active_executions() == {workflow.id: [run.id]}

        stopped = engine.stop_workflow(workflow.id)
        await engine.shutdown()

        assert stopped == [run.id]
        assert run.status == ExecutionStatusEnum.CANCELLED
        assert engine.get_active_executions() == {}

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, stub_registry):
        engine = self.make_engine(stub_registry, max_concurrent_executions=1)
        workflow = Workflow(
            name="slow",
            nodes=[start(), Node(id="s", category="action", subtype="sleep", config={"seconds": 0.05})],
            edges=[Edge(source="t", target="s")],
        )

        first, second = await asyncio.gather(engine.execute_workflow(workflow), engine.execute_workflow(workflow))

        assert first.status == second.status == ExecutionStatusEnum.COMPLETED
        # the second run only starts logging once the first has finished
        assert second.logs[0].timestamp >= first.completed_at

    def test_rejects_invalid_concurrency(self, stub_registry):
        with pytest.raises(ExecutionEngineError):
            self.make_engine(stub_registry, max_concurrent_executions=0)

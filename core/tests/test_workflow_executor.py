"""
Tests for WorkflowExecutor: the sequential fold over sorted nodes,
terminal states, branching and trace persistence.
"""

import pytest

from flowengine.graph.executor import JobPayload, WorkflowExecutor, taken_edges
from flowengine.graph.models import Connection, ExecutionContext, Node, Workflow
from flowengine.graph.registry import ExecutorRegistry
from flowengine.observability.logging import (
    clear_trace_context,
    get_trace_context,
    set_trace_context,
)
from flowengine.observability.trace_schemas import StepType, TraceStatus
from flowengine.runtime.event_bus import EventBus, EventType
from flowengine.storage.backend import FileRecordStore, InMemoryRecordStore


# ---- Fake executors ----
class Recorder:
    def __init__(self):
        self.calls = []

    def step(self, key, value):
        async def run(data, node_id, user_id, context, capabilities):
            self.calls.append(node_id)
            return context.with_values(**{key: value})

        return run


async def boom(data, node_id, user_id, context, capabilities):
    raise ValueError("node exploded")


def brancher(branch):
    async def run(data, node_id, user_id, context, capabilities):
        return context.with_branch(branch)

    return run


def _executor(registry, event_bus=None):
    return WorkflowExecutor(
        registry,
        executions=InMemoryRecordStore(),
        workflows=InMemoryRecordStore(),
        traces=InMemoryRecordStore(),
        event_bus=event_bus,
    )


def _chain(*types):
    nodes = [Node(id=f"n{i}", type=t) for i, t in enumerate(types)]
    conns = [
        Connection(source=f"n{i}", target=f"n{i + 1}") for i in range(len(types) - 1)
    ]
    return Workflow(id="wf-1", agent_id="agent-1", nodes=nodes, connections=conns)


# ---------------------------------------------------------------------------
# Success and failure
# ---------------------------------------------------------------------------


class TestLinearExecution:
    @pytest.mark.asyncio
    async def test_three_nodes_in_order(self):
        rec = Recorder()
        registry = ExecutorRegistry()
        registry.register("a", rec.step("a", 1))
        registry.register("b", rec.step("b", 2))
        registry.register("c", rec.step("c", 3))
        executor = _executor(registry)

        execution = await executor.execute(workflow=_chain("a", "b", "c"), user_id="u1")

        assert execution.status == "success"
        assert rec.calls == ["n0", "n1", "n2"]
        assert execution.node_path == ["n0", "n1", "n2"]
        assert execution.output == {"a": 1, "b": 2, "c": 3}
        stored = await executor.executions.load(execution.id)
        assert stored.status == "success"
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_initial_data_reaches_first_node(self):
        seen = {}

        async def capture(data, node_id, user_id, context, capabilities):
            seen.update(context.data)
            seen["user"] = user_id
            return context

        registry = ExecutorRegistry()
        registry.register("capture", capture)
        execution = await _executor(registry).execute(
            workflow=_chain("capture"), user_id="u9", initial_data={"prompt": "hi"}
        )
        assert execution.status == "success"
        assert seen == {"prompt": "hi", "user": "u9"}

    @pytest.mark.asyncio
    async def test_third_node_failure(self):
        rec = Recorder()
        registry = ExecutorRegistry()
        registry.register("ok", rec.step("ok", True))
        registry.register("boom", boom)
        registry.register("after", rec.step("after", True))
        executor = _executor(registry)

        execution = await executor.execute(workflow=_chain("ok", "ok", "boom", "after"))

        assert execution.status == "failed"
        assert execution.failed_node_id == "n2"
        assert execution.error == "node exploded"
        assert "ValueError" in execution.error_stack
        assert execution.node_path == ["n0", "n1"]
        assert rec.calls == ["n0", "n1"]

        result = executor.to_result(execution)
        assert result.status == "failed"
        assert result.retryable is True

        traces = await executor.traces.list()
        assert len(traces) == 1
        assert traces[0].status == TraceStatus.FAILED
        assert traces[0].steps[-1].type == StepType.ERROR


class TestRejectedBeforeStart:
    @pytest.mark.asyncio
    async def test_cycle_runs_nothing(self):
        rec = Recorder()
        registry = ExecutorRegistry()
        registry.register("a", rec.step("a", 1))
        workflow = Workflow(
            id="wf-cycle",
            nodes=[Node(id="x", type="a"), Node(id="y", type="a")],
            connections=[Connection(source="x", target="y"), Connection(source="y", target="x")],
        )
        executor = _executor(registry)

        execution = await executor.execute(workflow=workflow)

        assert execution.status == "failed"
        assert "Cycle detected" in execution.error
        assert execution.failed_node_id is None
        assert rec.calls == []
        assert executor.to_result(execution).retryable is False

    @pytest.mark.asyncio
    async def test_unknown_node_type(self):
        execution = await _executor(ExecutorRegistry()).execute(workflow=_chain("mystery"))
        assert execution.status == "failed"
        assert "mystery" in execution.error

    @pytest.mark.asyncio
    async def test_duplicate_node_ids(self):
        registry = ExecutorRegistry()
        registry.register("a", Recorder().step("a", 1))
        workflow = Workflow(id="wf-dup", nodes=[Node(id="x", type="a"), Node(id="x", type="a")])
        execution = await _executor(registry).execute(workflow=workflow)
        assert execution.status == "failed"
        assert "Duplicate node id" in execution.error

    @pytest.mark.asyncio
    async def test_missing_workflow_via_job(self):
        executor = _executor(ExecutorRegistry())
        result = await executor.run_job(JobPayload(workflow_id="nope"))
        assert result.status == "failed"
        assert "nope" in result.error
        assert result.retryable is False


class TestAlwaysTerminal:
    @pytest.mark.asyncio
    async def test_unreadable_stored_workflow(self, tmp_path):
        workflows = FileRecordStore(tmp_path, "workflows", Workflow)
        workflows.directory.mkdir(parents=True)
        corrupt = '{"id": "wf-broken", "nodes": [{"id": 1}]}'
        (workflows.directory / "wf-broken.json").write_text(corrupt)
        executor = WorkflowExecutor(
            ExecutorRegistry(), executions=InMemoryRecordStore(), workflows=workflows
        )

        execution = await executor.execute(workflow_id="wf-broken")

        assert execution.status == "failed"
        assert execution.failed_node_id is None
        assert [e.status for e in await executor.executions.list()] == ["failed"]

    @pytest.mark.asyncio
    async def test_executor_returning_none_fails_the_node(self):
        async def forgetful(data, node_id, user_id, context, capabilities):
            return None

        registry = ExecutorRegistry()
        registry.register("forgetful", forgetful)
        executor = _executor(registry)

        execution = await executor.execute(workflow=_chain("forgetful"))

        assert execution.status == "failed"
        assert execution.failed_node_id == "n0"
        stored = await executor.executions.list()
        assert [e.status for e in stored] == ["failed"]

    @pytest.mark.asyncio
    async def test_trace_context_restored_after_run(self):
        set_trace_context(worker="w1")
        try:
            registry = ExecutorRegistry()
            registry.register("a", Recorder().step("a", 1))
            await _executor(registry).execute(workflow=_chain("a"))
            await _executor(registry).execute(workflow=_chain("mystery"))
            assert get_trace_context() == {"worker": "w1"}
        finally:
            clear_trace_context()


# ---------------------------------------------------------------------------
# Branching
# ---------------------------------------------------------------------------


class TestBranching:
    def _branch_workflow(self):
        return Workflow(
            id="wf-branch",
            nodes=[
                Node(id="start", type="start"),
                Node(id="cond", type="cond"),
                Node(id="yes", type="yes"),
                Node(id="no", type="no"),
                Node(id="after_no", type="no"),
            ],
            connections=[
                Connection(source="start", target="cond"),
                Connection(source="cond", target="yes", sourceHandle="yes"),
                Connection(source="cond", target="no", sourceHandle="no"),
                Connection(source="no", target="after_no"),
            ],
        )

    @pytest.mark.asyncio
    async def test_only_selected_branch_runs(self):
        rec = Recorder()
        registry = ExecutorRegistry()
        registry.register("start", rec.step("started", True))
        registry.register("cond", brancher("yes"))
        registry.register("yes", rec.step("took", "yes"))
        registry.register("no", rec.step("took", "no"))
        executor = _executor(registry)

        execution = await executor.execute(workflow=self._branch_workflow())

        assert execution.status == "success"
        assert execution.node_path == ["start", "cond", "yes"]
        assert execution.skipped_nodes == ["no", "after_no"]
        assert execution.output["took"] == "yes"

    @pytest.mark.asyncio
    async def test_selected_branch_does_not_leak(self):
        seen = []

        async def check(data, node_id, user_id, context, capabilities):
            seen.append(context.selected_branch)
            return context

        registry = ExecutorRegistry()
        registry.register("start", check)
        registry.register("cond", brancher("yes"))
        registry.register("yes", check)
        registry.register("no", check)

        await _executor(registry).execute(workflow=self._branch_workflow())
        assert seen == [None, None]

    @pytest.mark.asyncio
    async def test_branch_decision_is_traced(self):
        registry = ExecutorRegistry()
        registry.register("start", Recorder().step("s", 1))
        registry.register("cond", brancher("no"))
        registry.register("yes", Recorder().step("y", 1))
        registry.register("no", Recorder().step("n", 1))
        executor = _executor(registry)

        await executor.execute(workflow=self._branch_workflow())

        trace = (await executor.traces.list())[0]
        decisions = [s for s in trace.steps if s.type == StepType.DECISION]
        assert [d.output for d in decisions] == ["no"]
        assert trace.metrics.decisions == 1

    def test_taken_edges_ignores_branch_on_single_edge(self):
        edge = Connection(source="a", target="b", sourceHandle="x")
        assert taken_edges([edge], "y") == [edge]

    def test_taken_edges_keeps_untagged_edges(self):
        tagged = Connection(source="a", target="b", sourceHandle="x")
        plain = Connection(source="a", target="c")
        assert taken_edges([tagged, plain], "y") == [plain]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestExecutionEvents:
    @pytest.mark.asyncio
    async def test_lifecycle_events(self):
        bus = EventBus()
        registry = ExecutorRegistry()
        registry.register("a", Recorder().step("a", 1))
        executor = _executor(registry, event_bus=bus)

        execution = await executor.execute(workflow=_chain("a"), triggered_by="schedule")

        started = bus.get_history(EventType.EXECUTION_STARTED)
        completed = bus.get_history(EventType.EXECUTION_COMPLETED)
        assert started[0].execution_id == execution.id
        assert started[0].data == {"triggered_by": "schedule"}
        assert completed[0].data["output"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_failure_event_names_node(self):
        bus = EventBus()
        registry = ExecutorRegistry()
        registry.register("boom", boom)
        await _executor(registry, event_bus=bus).execute(workflow=_chain("boom"))

        failed = bus.get_history(EventType.EXECUTION_FAILED)
        assert failed[0].node_id == "n0"
        assert failed[0].data["error"] == "node exploded"

    @pytest.mark.asyncio
    async def test_plain_dict_result_is_accepted(self):
        async def legacy(data, node_id, user_id, context, capabilities):
            return {**context.data, "legacy": True}

        registry = ExecutorRegistry()
        registry.register("legacy", legacy)
        execution = await _executor(registry).execute(workflow=_chain("legacy"))
        assert execution.output == {"legacy": True}


def test_context_with_values_does_not_mutate():
    ctx = ExecutionContext(data={"a": 1})
    newer = ctx.with_values(b=2)
    assert ctx.data == {"a": 1}
    assert newer.data == {"a": 1, "b": 2}

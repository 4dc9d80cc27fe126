"""
Workflow Executor - drives one execution of a workflow graph.

State machine: Pending -> Running -> Success | Failed. The fold over sorted
nodes is strictly sequential; any executor error aborts the run with no
rollback of effects already applied by earlier nodes.

Branching: a node may set ``context.selected_branch``. When that node has
several handle-tagged outgoing edges, only the edge whose handle matches is
taken. A non-root node runs iff at least one taken edge reaches it.
"""

import logging
import time
import traceback
from typing import Any, Literal

from pydantic import BaseModel, Field

from flowengine.errors import (
    FlowEngineError,
    InvalidWorkflow,
    NodeExecutionError,
    WorkflowNotFound,
)
from flowengine.graph.capabilities import Capabilities, NodeStatus
from flowengine.graph.models import (
    Connection,
    Execution,
    ExecutionContext,
    Node,
    Workflow,
)
from flowengine.graph.registry import ExecutorRegistry, NodeExecutor
from flowengine.graph.sorter import sort_nodes
from flowengine.observability.logging import trace_scope
from flowengine.observability.trace_schemas import Trace, TraceStatus
from flowengine.observability.tracer import CreateTraceInput, Tracer
from flowengine.runtime.event_bus import EventBus
from flowengine.storage.backend import RecordStore

logger = logging.getLogger(__name__)


class JobPayload(BaseModel):
    """Queue payload that starts a workflow run."""

    workflow_id: str
    user_id: str | None = None
    initial_data: dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = "manual"


class JobResult(BaseModel):
    workflow_id: str
    execution_id: str
    status: Literal["success", "failed"]
    result: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = False


def taken_edges(
    outgoing: list[Connection], selected_branch: str | None
) -> list[Connection]:
    """Edges followed after a node ran, given the branch it selected (if any)."""
    if selected_branch is None:
        return outgoing
    handled = [c for c in outgoing if c.source_handle]
    if len(outgoing) < 2 or not handled:
        return outgoing
    # Untagged edges are not branch edges and are always followed
    return [c for c in outgoing if c.source_handle is None or c.source_handle == selected_branch]


class WorkflowExecutor:
    """
    Runs workflows against an executor registry.

    Every started Execution ends in exactly one terminal state, which is
    persisted before run() returns.
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        executions: RecordStore[Execution],
        workflows: RecordStore[Workflow] | None = None,
        traces: RecordStore[Trace] | None = None,
        capabilities: Capabilities | None = None,
        event_bus: EventBus | None = None,
    ):
        self.registry = registry
        self.executions = executions
        self.workflows = workflows
        self.traces = traces
        self.capabilities = capabilities or Capabilities()
        self.event_bus = event_bus

    async def run_job(self, payload: JobPayload, job_id: str | None = None) -> JobResult:
        """Queue entry point: load the workflow by id and execute it."""
        execution = await self.execute(
            workflow_id=payload.workflow_id,
            user_id=payload.user_id,
            initial_data=payload.initial_data,
            triggered_by=payload.triggered_by,
            job_id=job_id,
        )
        return self.to_result(execution)

    @staticmethod
    def to_result(execution: Execution) -> JobResult:
        succeeded = execution.status == "success"
        return JobResult(
            workflow_id=execution.workflow_id,
            execution_id=execution.id,
            status="success" if succeeded else "failed",
            result=execution.output if succeeded else None,
            error=execution.error,
            # Only node failures can plausibly succeed on a later attempt
            retryable=not succeeded and execution.failed_node_id is not None,
        )

    async def execute(
        self,
        workflow_id: str | None = None,
        user_id: str | None = None,
        initial_data: dict[str, Any] | None = None,
        triggered_by: str = "manual",
        job_id: str | None = None,
        workflow: Workflow | None = None,
    ) -> Execution:
        """
        Execute a workflow once.

        Pass either ``workflow_id`` (loaded from the workflow store) or an
        already-loaded ``workflow``.
        """
        if workflow is None and workflow_id is None:
            raise ValueError("execute() needs a workflow or a workflow_id")

        execution = Execution(
            workflow_id=workflow.id if workflow else workflow_id,
            user_id=user_id,
            job_id=job_id,
            triggered_by=triggered_by,
        )
        execution.mark_running()
        await self.executions.save(execution.id, execution)

        with trace_scope(workflow_id=execution.workflow_id, execution_id=execution.id):
            return await self._run(execution, workflow, initial_data)

    async def _run(
        self,
        execution: Execution,
        workflow: Workflow | None,
        initial_data: dict[str, Any] | None,
    ) -> Execution:
        """Take a saved Running execution to exactly one terminal state."""
        logger.info(f"Execution {execution.id} started (triggered by {execution.triggered_by})")
        if self.event_bus:
            await self.event_bus.emit_execution_started(
                execution.workflow_id, execution.id, execution.triggered_by
            )

        tracer: Tracer | None = None
        try:
            if workflow is None:
                workflow = await self._load_workflow(execution.workflow_id)
            ordered, executors = self._plan(workflow)

            tracer = self._new_tracer(execution, workflow)
            context = ExecutionContext(data=dict(initial_data or {}))
            capabilities = self.capabilities.bind(
                tracer=tracer, publish_status=self._status_publisher(execution)
            )
            context = await self._fold(
                workflow, ordered, executors, execution, context, capabilities, tracer
            )
        except NodeExecutionError as e:
            logger.error(f"❌ Execution {execution.id} failed at node {e.node_id}: {e.cause}")
            tracer = tracer or self._new_tracer(execution, workflow)
            tracer.log_error(e.cause, metadata={"node_id": e.node_id, "node_type": e.node_type})
            await self._finish_failed(execution, tracer, str(e.cause), e.stack, e.node_id)
            return execution
        except FlowEngineError as e:
            # Configuration problems: nothing has run yet
            logger.error(f"❌ Execution {execution.id} rejected before start: {e}")
            tracer = tracer or self._new_tracer(execution, workflow)
            tracer.log_error(e)
            await self._finish_failed(execution, tracer, str(e), stack=None, node_id=None)
            return execution
        except Exception as e:
            # Unreadable stored workflow, broken store, engine bug
            logger.exception(f"❌ Execution {execution.id} aborted: {e}")
            tracer = tracer or self._new_tracer(execution, workflow)
            tracer.log_error(e)
            await self._finish_failed(
                execution, tracer, str(e) or type(e).__name__, traceback.format_exc(), None
            )
            return execution

        execution.mark_success(context.to_dict())
        await self.executions.save(execution.id, execution)
        await tracer.complete(output=execution.output, status=TraceStatus.COMPLETED)
        logger.info(f"✓ Execution {execution.id} succeeded ({len(execution.node_path)} nodes)")
        if self.event_bus:
            await self.event_bus.emit_execution_completed(
                execution.workflow_id, execution.id, execution.output
            )
        return execution

    # ---------------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------------

    async def _load_workflow(self, workflow_id: str) -> Workflow:
        if self.workflows is None:
            raise WorkflowNotFound(workflow_id)
        workflow = await self.workflows.load(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    def _plan(self, workflow: Workflow) -> tuple[list[Node], dict[str, NodeExecutor]]:
        """Validate, sort and resolve executors before any node runs."""
        errors = workflow.validate_graph()
        if errors:
            raise InvalidWorkflow(errors)
        ordered = sort_nodes(workflow.nodes, workflow.connections)
        executors: dict[str, NodeExecutor] = {}
        for node in ordered:
            executors[node.id] = self.registry.get(node.type)
        return ordered, executors

    async def _fold(
        self,
        workflow: Workflow,
        ordered: list[Node],
        executors: dict[str, NodeExecutor],
        execution: Execution,
        context: ExecutionContext,
        capabilities: Capabilities,
        tracer: Tracer,
    ) -> ExecutionContext:
        user_id = execution.user_id or ""
        taken: set[str] = set()

        for node in ordered:
            incoming = workflow.incoming(node.id)
            if incoming and not any(c.id in taken for c in incoming):
                logger.info(f"Skipping node {node.id}: no taken edge reaches it")
                execution.skipped_nodes.append(node.id)
                if self.event_bus:
                    await self.event_bus.emit_node_skipped(
                        execution.workflow_id, execution.id, node.id
                    )
                continue

            start = time.monotonic()
            with trace_scope(node_id=node.id):
                try:
                    result = await executors[node.id](
                        dict(node.data), node.id, user_id, context, capabilities
                    )
                    if not isinstance(result, ExecutionContext):
                        result = ExecutionContext(data=dict(result))
                except NodeExecutionError:
                    raise
                except Exception as e:
                    raise NodeExecutionError(node.id, node.type, e) from e
            context = result
            execution.node_path.append(node.id)
            logger.debug(
                f"Node {node.id} ({node.type}) done",
                extra={"latency_ms": int((time.monotonic() - start) * 1000), "node_id": node.id},
            )

            selected = context.selected_branch
            for conn in taken_edges(workflow.outgoing(node.id), selected):
                taken.add(conn.id)
            if selected is not None:
                tracer.log_decision(
                    reasoning=f"Node {node.id} selected branch",
                    decision=selected,
                    metadata={"node_id": node.id},
                )
                context = ExecutionContext(data=context.data, selected_branch=None)

        return context

    async def _finish_failed(
        self,
        execution: Execution,
        tracer: Tracer,
        error: str,
        stack: str | None,
        node_id: str | None,
    ) -> None:
        execution.mark_failed(error, stack, node_id)
        await self.executions.save(execution.id, execution)
        await tracer.complete(output={"error": error}, status=TraceStatus.FAILED)
        if self.event_bus:
            await self.event_bus.emit_execution_failed(
                execution.workflow_id, execution.id, error, node_id
            )

    def _new_tracer(self, execution: Execution, workflow: Workflow | None) -> Tracer:
        agent_id = (workflow.agent_id or workflow.id) if workflow else execution.workflow_id
        return Tracer(
            CreateTraceInput(
                agent_id=agent_id,
                user_id=execution.user_id or "",
                execution_id=execution.id,
                triggered_by=execution.triggered_by,
                metadata={"workflow_id": execution.workflow_id, "job_id": execution.job_id},
            ),
            on_save=self._save_trace if self.traces is not None else None,
        )

    async def _save_trace(self, trace: Trace) -> None:
        await self.traces.save(trace.id, trace)

    def _status_publisher(self, execution: Execution):
        bus = self.event_bus

        async def publish(node_id: str, status: NodeStatus) -> None:
            logger.debug(f"Node {node_id} status: {status}")
            if bus is not None:
                await bus.emit_node_status(execution.workflow_id, execution.id, node_id, status)

        return publish

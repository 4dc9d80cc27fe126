"""Workflow graph: models, sorting, executor registry and the workflow executor."""

from flowengine.graph.capabilities import Capabilities, NodeStatus, StepRunner
from flowengine.graph.executor import JobPayload, JobResult, WorkflowExecutor
from flowengine.graph.models import (
    Connection,
    Execution,
    ExecutionContext,
    ExecutionStatus,
    Node,
    Workflow,
)
from flowengine.graph.registry import ExecutorRegistry, NodeExecutor
from flowengine.graph.sorter import sort_nodes

__all__ = [
    "Capabilities",
    "Connection",
    "Execution",
    "ExecutionContext",
    "ExecutionStatus",
    "ExecutorRegistry",
    "JobPayload",
    "JobResult",
    "Node",
    "NodeExecutor",
    "NodeStatus",
    "StepRunner",
    "Workflow",
    "WorkflowExecutor",
    "sort_nodes",
]

"""
Workflow graph and execution records.

A Workflow is a set of typed nodes joined by connections. Node ``data`` is
opaque to the engine; each executor validates only the keys it needs.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Node(BaseModel):
    """A single step in a workflow."""

    id: str
    type: str = Field(description="Selects the executor from the registry")
    data: dict[str, Any] = Field(
        default_factory=dict, description="Executor-specific configuration"
    )

    model_config = {"extra": "allow"}


class Connection(BaseModel):
    """
    A directed edge between two nodes.

    Outgoing edges of a branching node are told apart by ``source_handle``,
    which carries the branch id the node may select.
    """

    id: str = Field(default_factory=lambda: f"conn_{uuid.uuid4().hex[:8]}")
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")

    model_config = {"extra": "allow", "populate_by_name": True}


class Workflow(BaseModel):
    id: str
    name: str = ""
    agent_id: str | None = None
    user_id: str | None = None
    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> list[Connection]:
        return [c for c in self.connections if c.source == node_id]

    def incoming(self, node_id: str) -> list[Connection]:
        return [c for c in self.connections if c.target == node_id]

    def nodes_of_type(self, node_type: str) -> list[Node]:
        return [n for n in self.nodes if n.type == node_type]

    def validate_graph(self) -> list[str]:
        """Return structural errors: duplicate ids and dangling edge endpoints."""
        errors: list[str] = []
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                errors.append(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        for conn in self.connections:
            if conn.source not in seen:
                errors.append(f"Connection '{conn.id}' references missing source '{conn.source}'")
            if conn.target not in seen:
                errors.append(f"Connection '{conn.id}' references missing target '{conn.target}'")
        return errors


# ---------------------------------------------------------------------------
# Execution record
# ---------------------------------------------------------------------------


class ExecutionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED)


class Execution(BaseModel):
    """
    One run of a workflow.

    Status moves Pending -> Running -> Success|Failed and is never rewritten
    once terminal. The engine never deletes executions.
    """

    id: str = Field(default_factory=lambda: f"exec_{uuid.uuid4().hex}")
    workflow_id: str
    user_id: str | None = None
    job_id: str | None = None
    triggered_by: str = "manual"
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output: dict[str, Any] | None = None
    error: str | None = None
    error_stack: str | None = None
    failed_node_id: str | None = None
    node_path: list[str] = Field(default_factory=list)
    skipped_nodes: list[str] = Field(default_factory=list)

    def mark_running(self) -> None:
        if self.status != ExecutionStatus.PENDING:
            raise RuntimeError(f"Execution {self.id} cannot start from {self.status}")
        self.status = ExecutionStatus.RUNNING
        self.started_at = _utcnow()

    def mark_success(self, output: dict[str, Any]) -> None:
        self._finish(ExecutionStatus.SUCCESS)
        self.output = output

    def mark_failed(self, error: str, stack: str | None = None, node_id: str | None = None) -> None:
        self._finish(ExecutionStatus.FAILED)
        self.error = error
        self.error_stack = stack
        self.failed_node_id = node_id

    def _finish(self, status: ExecutionStatus) -> None:
        if self.status.is_terminal:
            raise RuntimeError(
                f"Execution {self.id} already {self.status}, refusing transition to {status}"
            )
        self.status = status
        self.completed_at = _utcnow()


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------


@dataclass
class ExecutionContext:
    """
    Key/value bag threaded through node executors for one execution.

    ``data`` is schema-less. ``selected_branch`` is the one typed field: a
    branching node sets it to the handle of the outgoing edge to follow.
    The executor clears it after reading so it never leaks to later nodes.
    """

    data: dict[str, Any] = field(default_factory=dict)
    selected_branch: str | None = None

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def with_values(self, **values: Any) -> ExecutionContext:
        """Return a new context with ``values`` merged in."""
        return ExecutionContext(data={**self.data, **values}, selected_branch=self.selected_branch)

    def with_branch(self, branch: str) -> ExecutionContext:
        return ExecutionContext(data=dict(self.data), selected_branch=branch)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.data)

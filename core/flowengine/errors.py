"""Exception taxonomy for the workflow engine.

Evaluation outcomes (blocked / needs_review) are decisions, not errors, and
therefore have no exception class here.
"""

import traceback
from typing import Any


class FlowEngineError(Exception):
    """Base class for all engine errors."""


class CycleDetected(FlowEngineError):
    """The workflow graph contains at least one cycle."""

    def __init__(self, node_ids: set[str]):
        self.node_ids = set(node_ids)
        super().__init__(f"Cycle detected among nodes: {', '.join(sorted(self.node_ids))}")


class InvalidWorkflow(FlowEngineError):
    """Structural problems with a workflow (dangling edges, duplicate ids)."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid workflow: " + "; ".join(self.errors))


class WorkflowNotFound(FlowEngineError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class UnknownNodeType(FlowEngineError):
    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"No executor registered for node type: {node_type}")


class ExecutorConfigError(FlowEngineError):
    """A node's ``data`` is missing or malformed for its executor."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(f"Node {node_id}: {message}")


class NodeExecutionError(FlowEngineError):
    """Wraps any exception raised by a node executor.

    Carries the original exception and its formatted stack so the failed
    Execution record can be inspected after the fact.
    """

    def __init__(self, node_id: str, node_type: str, cause: BaseException):
        self.node_id = node_id
        self.node_type = node_type
        self.cause = cause
        self.stack = "".join(traceback.format_exception(type(cause), cause, cause.__traceback__))
        super().__init__(f"Node {node_id} ({node_type}) failed: {cause}")


class TriggerParseError(FlowEngineError):
    """A cron expression could not be parsed."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron expression {expression!r}: {reason}")


class CredentialError(FlowEngineError):
    """Encryption or decryption of a stored credential failed."""

    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)


class ActionBlocked(FlowEngineError):
    """A side-effecting action was refused (readonly tier or eval veto)."""

    def __init__(self, action: str, reason: str):
        self.action = action
        self.reason = reason
        super().__init__(f"Action {action} blocked: {reason}")


class JobFailed(FlowEngineError):
    """Raised by a queue handler so the job is retried per its options."""

    def __init__(self, job_name: str, message: str = "", result: Any = None):
        self.job_name = job_name
        self.result = result
        super().__init__(f"Job {job_name} failed: {message}")

"""Node executor registry: node type -> async executor."""

import logging
from typing import Any, Protocol

from flowengine.errors import UnknownNodeType
from flowengine.graph.capabilities import Capabilities
from flowengine.graph.models import ExecutionContext

logger = logging.getLogger(__name__)


class NodeExecutor(Protocol):
    """
    Contract every node type implements.

    Receives the accumulated context and returns a new one. Raising aborts
    the whole execution.
    """

    async def __call__(
        self,
        data: dict[str, Any],
        node_id: str,
        user_id: str,
        context: ExecutionContext,
        capabilities: Capabilities,
    ) -> ExecutionContext: ...


class ExecutorRegistry:
    """Maps node type identifiers to executors. One instance per engine."""

    def __init__(self) -> None:
        self._executors: dict[str, NodeExecutor] = {}

    def register(self, node_type: str, executor: NodeExecutor) -> None:
        if node_type in self._executors:
            logger.debug(f"Replacing executor for node type '{node_type}'")
        self._executors[node_type] = executor

    def get(self, node_type: str) -> NodeExecutor:
        try:
            return self._executors[node_type]
        except KeyError:
            raise UnknownNodeType(node_type) from None

    def has(self, node_type: str) -> bool:
        return node_type in self._executors

    def node_types(self) -> list[str]:
        return sorted(self._executors)

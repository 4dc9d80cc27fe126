"""Topological ordering of workflow nodes (Kahn's algorithm)."""

import heapq
import logging

from flowengine.errors import CycleDetected, InvalidWorkflow
from flowengine.graph.models import Connection, Node

logger = logging.getLogger(__name__)


def sort_nodes(nodes: list[Node], connections: list[Connection]) -> list[Node]:
    """
    Order nodes so every node follows all sources of its incoming edges.

    Every declared connection is a dependency, including the edges of
    branching nodes; branch pruning happens later in the executor. Among
    nodes that are ready at the same time, declaration order wins, so the
    result is deterministic.

    Raises:
        InvalidWorkflow: a connection references a node that does not exist.
        CycleDetected: the graph has a cycle. No partial order is returned.
    """
    position = {node.id: i for i, node in enumerate(nodes)}

    dangling = [
        f"Connection '{c.id}' references missing node"
        f" '{c.source if c.source not in position else c.target}'"
        for c in connections
        if c.source not in position or c.target not in position
    ]
    if dangling:
        raise InvalidWorkflow(dangling)

    in_degree = {node.id: 0 for node in nodes}
    successors: dict[str, list[str]] = {node.id: [] for node in nodes}
    for conn in connections:
        successors[conn.source].append(conn.target)
        in_degree[conn.target] += 1

    # Min-heap keyed by declaration index gives the stable tie-break
    ready = [position[node_id] for node_id, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    ordered: list[Node] = []
    while ready:
        node = nodes[heapq.heappop(ready)]
        ordered.append(node)
        for target in successors[node.id]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                heapq.heappush(ready, position[target])

    if len(ordered) != len(nodes):
        remaining = {node_id for node_id, degree in in_degree.items() if degree > 0}
        logger.warning(f"Cycle detected among {len(remaining)} nodes: {sorted(remaining)}")
        raise CycleDetected(remaining)

    return ordered

"""Graph resolution for workflow execution.

Turns a node/connection set into a deterministic execution order and a
predecessor map. Order is stable across calls for an unchanged graph:
ties between ready nodes are broken by (execution_order, node id).
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

import networkx as nx

from typeflow.core.errors import GraphCycleError, GraphValidationError
from typeflow.core.models import Connection, Node

logger = logging.getLogger(__name__)


@dataclass
class ResolvedGraph:
    """Execution order plus dependency maps for one workflow snapshot."""

    order: list[str]
    predecessors: dict[str, list[str]] = field(default_factory=dict)
    successors: dict[str, list[str]] = field(default_factory=dict)

    def position(self, node_id: str) -> int:
        return self.order.index(node_id)

    def roots(self) -> list[str]:
        return [n for n in self.order if not self.predecessors.get(n)]

    def levels(self) -> list[list[str]]:
        """Group nodes into generations that may run concurrently.

        Each generation only depends on earlier ones. Within a generation
        nodes keep their resolved order.
        """
        depth: dict[str, int] = {}
        for node_id in self.order:
            preds = self.predecessors.get(node_id, [])
            depth[node_id] = 1 + max((depth[p] for p in preds), default=-1)
        generations: dict[int, list[str]] = {}
        for node_id in self.order:
            generations.setdefault(depth[node_id], []).append(node_id)
        return [generations[level] for level in sorted(generations)]


class GraphResolver:
    """Resolves workflow graphs into executable order."""

    def resolve(self, nodes: Iterable[Node], connections: Iterable[Connection]) -> ResolvedGraph:
        """Compute a topological order and predecessor map.

        Raises:
            GraphValidationError: duplicate node ids, unknown endpoints, self-loops
            GraphCycleError: the graph contains a cycle
        """
        nodes = list(nodes)
        connections = list(connections)

        by_id: dict[str, Node] = {}
        for node in nodes:
            if node.id in by_id:
                raise GraphValidationError(f"Duplicate node ID: '{node.id}'")
            by_id[node.id] = node

        predecessors: dict[str, list[str]] = {node_id: [] for node_id in by_id}
        successors: dict[str, list[str]] = {node_id: [] for node_id in by_id}
        for conn in connections:
            if conn.source_node_id not in by_id:
                raise GraphValidationError(
                    f"Connection {conn.id}: source '{conn.source_node_id}' not found"
                )
            if conn.target_node_id not in by_id:
                raise GraphValidationError(
                    f"Connection {conn.id}: target '{conn.target_node_id}' not found"
                )
            if conn.source_node_id == conn.target_node_id:
                raise GraphCycleError([conn.source_node_id, conn.target_node_id])
            # Parallel edges between the same pair count once for ordering
            if conn.source_node_id not in predecessors[conn.target_node_id]:
                predecessors[conn.target_node_id].append(conn.source_node_id)
                successors[conn.source_node_id].append(conn.target_node_id)

        in_degree = {node_id: len(preds) for node_id, preds in predecessors.items()}

        def sort_key(node_id: str) -> tuple[int, str]:
            return (by_id[node_id].execution_order, node_id)

        ready = [sort_key(n) for n, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            _, node_id = heapq.heappop(ready)
            order.append(node_id)
            for succ in successors[node_id]:
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    heapq.heappush(ready, sort_key(succ))

        if len(order) != len(by_id):
            raise GraphCycleError(self._find_cycle(by_id, successors, set(order)))

        # Predecessor lists follow execution order so input concatenation is stable
        position = {node_id: i for i, node_id in enumerate(order)}
        for node_id in predecessors:
            predecessors[node_id].sort(key=position.__getitem__)
            successors[node_id].sort(key=position.__getitem__)

        logger.debug(f"Resolved execution order: {order}")
        return ResolvedGraph(order=order, predecessors=predecessors, successors=successors)

    def _find_cycle(
        self,
        by_id: dict[str, Node],
        successors: dict[str, list[str]],
        ordered: set[str],
    ) -> list[str]:
        """Name the nodes of one cycle among the nodes Kahn's pass could not order."""
        G = nx.DiGraph()
        for node_id in sorted(by_id):
            if node_id not in ordered:
                G.add_node(node_id)
        for source in sorted(G.nodes()):
            for target in successors[source]:
                if target in G:
                    G.add_edge(source, target)
        try:
            cycle = nx.find_cycle(G)
        except nx.NetworkXNoCycle:
            return sorted(G.nodes())
        return [edge[0] for edge in cycle]


def resolve(nodes: Iterable[Node], connections: Iterable[Connection]) -> ResolvedGraph:
    """Module-level shortcut for GraphResolver().resolve()."""
    return GraphResolver().resolve(nodes, connections)

"""Tests for graph resolution.

Tests cover:
- Deterministic topological order with execution_order tie-breaks
- Predecessor and successor maps in execution order
- Validation errors for duplicates and dangling connections
- Cycle detection naming the nodes of a cycle
"""

from __future__ import annotations

import pytest

from conftest import make_node
from typeflow.core.errors import GraphCycleError, GraphValidationError
from typeflow.core.graph import GraphResolver, resolve
from typeflow.core.models import Connection


def edges(*pairs: tuple[str, str]) -> list[Connection]:
    return [Connection(source_node_id=s, target_node_id=t) for s, t in pairs]


# =============================================================================
# Ordering
# =============================================================================


class TestOrdering:
    """Tests for execution order."""

    def test_linear_chain(self):
        """A -> B -> C resolves in chain order."""
        nodes = [make_node("C"), make_node("A"), make_node("B")]
        graph = resolve(nodes, edges(("A", "B"), ("B", "C")))

        assert graph.order == ["A", "B", "C"]
        assert graph.predecessors == {"A": [], "B": ["A"], "C": ["B"]}
        assert graph.successors["A"] == ["B"]

    def test_ties_broken_by_execution_order_then_id(self):
        """Independent nodes sort by (execution_order, id)."""
        nodes = [
            make_node("z", execution_order=0),
            make_node("b", execution_order=2),
            make_node("a", execution_order=2),
            make_node("m", execution_order=1),
        ]
        graph = resolve(nodes, [])
        assert graph.order == ["z", "m", "a", "b"]

    def test_every_node_after_its_predecessors(self):
        """Diamond: D comes after both branches."""
        nodes = [make_node(n) for n in ("D", "C", "B", "A")]
        graph = resolve(nodes, edges(("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")))

        position = {n: i for i, n in enumerate(graph.order)}
        for target, preds in graph.predecessors.items():
            for pred in preds:
                assert position[pred] < position[target]
        assert graph.predecessors["D"] == ["B", "C"]
        assert graph.levels() == [["A"], ["B", "C"], ["D"]]
        assert graph.roots() == ["A"]

    def test_resolution_is_idempotent(self):
        """Resolving the same graph twice gives the same order."""
        nodes = [make_node(n, execution_order=i % 2) for i, n in enumerate("edcba")]
        conns = edges(("a", "c"), ("b", "c"), ("c", "d"))
        resolver = GraphResolver()
        first = resolver.resolve(nodes, conns)
        second = resolver.resolve(list(reversed(nodes)), list(reversed(conns)))
        assert first.order == second.order
        assert first.predecessors == second.predecessors

    def test_parallel_edges_count_once(self):
        """Two connections between the same nodes add one dependency."""
        graph = resolve([make_node("A"), make_node("B")], edges(("A", "B"), ("A", "B")))
        assert graph.predecessors["B"] == ["A"]

    def test_empty_graph(self):
        graph = resolve([], [])
        assert graph.order == []


# =============================================================================
# Validation
# =============================================================================


class TestValidation:
    """Tests for structural validation."""

    def test_duplicate_node_ids(self):
        with pytest.raises(GraphValidationError, match="Duplicate node ID"):
            resolve([make_node("A"), make_node("A")], [])

    def test_unknown_source(self):
        with pytest.raises(GraphValidationError, match="source 'X' not found"):
            resolve([make_node("A")], edges(("X", "A")))

    def test_unknown_target(self):
        with pytest.raises(GraphValidationError, match="target 'Y' not found"):
            resolve([make_node("A")], edges(("A", "Y")))

    def test_self_loop_is_a_cycle(self):
        with pytest.raises(GraphCycleError) as exc_info:
            resolve([make_node("A")], edges(("A", "A")))
        assert exc_info.value.node_ids == ["A", "A"]


# =============================================================================
# Cycles
# =============================================================================


class TestCycles:
    """Tests for cycle detection."""

    def test_cycle_names_its_nodes(self):
        """A -> B -> C -> B reports B and C, never the acyclic root."""
        nodes = [make_node(n) for n in "ABC"]
        with pytest.raises(GraphCycleError) as exc_info:
            resolve(nodes, edges(("A", "B"), ("B", "C"), ("C", "B")))

        assert set(exc_info.value.node_ids) == {"B", "C"}
        assert "A" not in exc_info.value.node_ids
        assert "cycle" in str(exc_info.value)

    def test_cycle_is_graph_validation_error(self):
        nodes = [make_node("A"), make_node("B")]
        with pytest.raises(GraphValidationError):
            resolve(nodes, edges(("A", "B"), ("B", "A")))

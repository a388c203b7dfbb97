"""Tests for the workflow engine.

Tests cover:
- Input assembly (trigger payloads, predecessor outputs, data mappings)
- Batch runs: linear, diamond and parallel branches
- Failure policy: halting versus continue_on_fail
- Final output selection
"""

from __future__ import annotations

import threading

import pytest

from conftest import ORG, chain_workflow, make_node, make_workflow
from typeflow.core.engine import RunStatus, apply_data_mapping
from typeflow.core.errors import GraphCycleError, WorkflowNotFoundError
from typeflow.core.items import make_item
from typeflow.core.models import Connection, NodeRunStatus
from typeflow.core.registry import NodeType, NodeTypeDescription


def node_type(name, execute) -> NodeType:
    return NodeType(description=NodeTypeDescription(name=name), execute=execute)


# =============================================================================
# Input Assembly
# =============================================================================


class TestNodeInput:
    """Tests for WorkflowEngine.node_input()."""

    def test_trigger_receives_payload(self, engine):
        wf = chain_workflow()
        graph = engine.resolve_graph(wf)
        items = engine.node_input(wf, wf.get_node("A"), graph, {}, [{"id": 1}, {"id": 2}])
        assert [i["json"] for i in items] == [{"id": 1}, {"id": 2}]

    def test_non_trigger_root_gets_empty_item(self, engine):
        wf = make_workflow([make_node("X")])
        items = engine.node_input(wf, wf.get_node("X"), engine.resolve_graph(wf), {}, {"ignored": True})
        assert items == [{"json": {}}]

    def test_predecessor_outputs_concatenated_with_input_index(self, engine):
        wf = make_workflow(
            [make_node("L"), make_node("R"), make_node("M", "merge")],
            [("L", "M"), ("R", "M")],
        )
        outputs = {"L": [make_item({"side": "l"})], "R": [make_item({"side": "r"}), make_item({"side": "r2"})]}

        items = engine.node_input(wf, wf.get_node("M"), engine.resolve_graph(wf), outputs, None)

        assert [i["json"]["side"] for i in items] == ["l", "r", "r2"]
        assert [i["pairedItem"] for i in items] == [
            {"item": 0, "input": 0},
            {"item": 0, "input": 1},
            {"item": 1, "input": 1},
        ]

    def test_upstream_outputs_not_aliased(self, engine):
        wf = make_workflow([make_node("A"), make_node("B")], [("A", "B")])
        outputs = {"A": [make_item({"v": 1})]}

        items = engine.node_input(wf, wf.get_node("B"), engine.resolve_graph(wf), outputs, None)
        items[0]["json"]["v"] = 99
        assert outputs["A"][0]["json"]["v"] == 1

    def test_data_mapping_applied(self, engine):
        wf = make_workflow([make_node("A"), make_node("B")])
        wf.connections = [
            Connection(source_node_id="A", target_node_id="B", data_mapping={"user_id": "user.id"})
        ]
        outputs = {"A": [make_item({"user": {"id": 7}})]}

        items = engine.node_input(wf, wf.get_node("B"), engine.resolve_graph(wf), outputs, None)
        assert items[0]["json"] == {"user": {"id": 7}, "user_id": 7}


class TestApplyDataMapping:
    """Tests for apply_data_mapping()."""

    def test_reads_from_original_fields(self):
        items = [make_item({"a": 1, "b": 2})]
        apply_data_mapping(items, {"b": "a", "c": "b"})
        assert items[0]["json"] == {"a": 1, "b": 1, "c": 2}

    def test_no_mapping(self):
        items = [make_item({"a": 1})]
        assert apply_data_mapping(items, None) is items


# =============================================================================
# Batch Runs
# =============================================================================


class TestBatchRun:
    """Tests for execute_workflow()."""

    def test_linear_chain(self, engine):
        result = engine.execute_workflow(chain_workflow(), trigger_data={"id": 1})

        assert result.success
        assert result.order == ["A", "B", "C"]
        assert result.output == [{"json": {"id": 1, "step": "B"}, "pairedItem": {"item": 0, "input": 0}}]
        assert all(r.status == NodeRunStatus.SUCCESS for r in result.node_results.values())

    def test_workflow_output_node_wins(self, engine):
        wf = make_workflow(
            [
                make_node("T", "manual"),
                make_node("Out", "workflowOutput"),
                make_node("Side", "editFields", config={"fields": [{"name": "side", "value": True}]}),
            ],
            [("T", "Out"), ("T", "Side")],
        )
        result = engine.execute_workflow(wf, trigger_data={"v": 1})
        assert [i["json"] for i in result.output] == [{"v": 1}]

    def test_diamond_runs_each_node_once(self, engine, registry, recorder):
        wf = make_workflow(
            [make_node(n, "recorder") for n in "ABCD"],
            [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")],
        )
        result = engine.execute_workflow(wf)

        assert result.success
        assert len(recorder.calls) == 4
        assert len(result.node_outputs["D"]) == 2

    def test_independent_branches_run_concurrently(self, engine, registry):
        barrier = threading.Barrier(2, timeout=5)

        def rendezvous(items, params, ctx):
            barrier.wait()
            return items

        registry.register(node_type("rendezvous", rendezvous))
        wf = make_workflow(
            [make_node("T", "manual"), make_node("L", "rendezvous"), make_node("R", "rendezvous")],
            [("T", "L"), ("T", "R")],
        )
        result = engine.execute_workflow(wf)
        assert result.success, result.error

    def test_run_by_id(self, engine, test_db):
        test_db.save_workflow(chain_workflow())
        result = engine.run_workflow_by_id("wf-abc", ORG, {"x": 1})
        assert result.success
        assert result.output[0]["json"]["x"] == 1

    def test_run_by_id_wrong_org(self, engine, test_db):
        test_db.save_workflow(chain_workflow())
        with pytest.raises(WorkflowNotFoundError):
            engine.run_workflow_by_id("wf-abc", "other-org")

    def test_cycle_raises_before_running(self, engine, recorder):
        wf = make_workflow(
            [make_node("A", "recorder"), make_node("B", "recorder")],
            [("A", "B"), ("B", "A")],
        )
        with pytest.raises(GraphCycleError):
            engine.execute_workflow(wf)
        assert recorder.calls == []


# =============================================================================
# Failure Policy
# =============================================================================


class TestFailurePolicy:
    """Tests for halting and continue_on_fail."""

    def test_failure_halts_downstream(self, engine, recorder):
        wf = chain_workflow(make_node("B", "throwError", config={"error_message": "boom"}))
        wf.nodes[2] = make_node("C", "recorder")

        result = engine.execute_workflow(wf)

        assert result.status == RunStatus.FAILED
        assert result.failed_node_id == "B"
        assert result.error == "boom"
        assert result.node_results["B"].status == NodeRunStatus.ERROR
        assert "C" not in result.node_outputs
        assert recorder.calls == []

    def test_continue_on_fail_emits_error_item(self, engine, recorder):
        wf = chain_workflow(
            make_node("B", "throwError", config={"error_message": "boom"}, continue_on_fail=True)
        )
        wf.nodes[2] = make_node("C", "recorder")

        result = engine.execute_workflow(wf)

        assert result.success
        assert result.node_results["B"].status == NodeRunStatus.ERROR
        assert result.node_results["B"].error == "boom"
        assert recorder.calls == [[{"error": "boom"}]]

    def test_run_node_never_raises(self, engine):
        wf = make_workflow([make_node("X", "unknownType")])
        scope = engine.create_scope(ORG)
        try:
            step = engine.run_node(wf, wf.get_node("X"), engine.resolve_graph(wf), {}, None, scope)
        finally:
            scope.release()

        assert step.halted
        assert "unknownType" in str(step.error)
        assert step.result.item_count == 0

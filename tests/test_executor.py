"""Tests for node execution, item helpers and the execution context."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import ORG, make_node, make_workflow
from typeflow.core.errors import (
    CredentialError,
    NodeExecutionError,
    NodeOperationError,
    NodeTypeNotFoundError,
    ParameterResolutionError,
)
from typeflow.core.items import get_path, make_item, normalize_output, set_path, trigger_items
from typeflow.core.registry import NodeType, NodeTypeDescription


@pytest.fixture
def scope(engine):
    scope = engine.create_scope(ORG)
    yield scope
    scope.release()


def register(registry, name, execute, credentials=None):
    registry.register(
        NodeType(
            description=NodeTypeDescription(name=name, credentials=credentials or []),
            execute=execute,
        )
    )


# =============================================================================
# Item Helpers
# =============================================================================


class TestNormalizeOutput:
    """Tests for flattening node results."""

    def test_none_is_empty(self):
        assert normalize_output(None) == []

    def test_multiple_outputs_flattened_in_order(self):
        result = [[make_item({"a": 1})], [make_item({"b": 2}), make_item({"c": 3})]]
        assert [i["json"] for i in normalize_output(result)] == [{"a": 1}, {"b": 2}, {"c": 3}]

    def test_plain_values_wrapped(self):
        assert normalize_output([{"a": 1}, 5]) == [{"json": {"a": 1}}, {"json": {"value": 5}}]

    def test_single_dict(self):
        assert normalize_output({"a": 1}) == [{"json": {"a": 1}}]


class TestTriggerItems:
    """Tests for trigger payload conversion."""

    def test_none_gives_one_empty_item(self):
        assert trigger_items(None) == [{"json": {}}]

    def test_list_gives_item_per_element(self):
        assert trigger_items([{"a": 1}, {"a": 2}]) == [{"json": {"a": 1}}, {"json": {"a": 2}}]


class TestPaths:
    """Tests for dotted path helpers."""

    def test_get_path(self):
        data = {"a": {"b": [{"c": 1}, {"c": 2}]}}
        assert get_path(data, "a.b[1].c") == 2
        assert get_path(data, "a.b.0.c") == 1
        assert get_path(data, "a.x.y", "none") == "none"

    def test_set_path_creates_parents(self):
        data: dict = {}
        set_path(data, "a.b.c", 1)
        assert data == {"a": {"b": {"c": 1}}}


# =============================================================================
# Node Executor
# =============================================================================


class TestNodeExecutor:
    """Tests for NodeExecutor.execute()."""

    def test_runs_programmatic_node(self, engine, registry, scope):
        register(registry, "double", lambda items, params, ctx: [{"n": i["json"]["n"] * 2} for i in items])
        node = make_node("D", "double")
        wf = make_workflow([node])

        output = engine.executor.execute(wf, node, [make_item({"n": 2})], {}, scope)
        assert output == [{"json": {"n": 4}}]

    def test_input_items_are_copied(self, engine, registry, scope):
        def mutate(items, params, ctx):
            items[0]["json"]["touched"] = True
            return items

        register(registry, "mutate", mutate)
        node = make_node("M", "mutate")
        original = [make_item({"a": 1})]

        engine.executor.execute(make_workflow([node]), node, original, {}, scope)
        assert original == [{"json": {"a": 1}}]

    def test_unknown_type_wrapped(self, engine, scope):
        node = make_node("X", "doesNotExist")
        with pytest.raises(NodeExecutionError) as exc_info:
            engine.executor.execute(make_workflow([node]), node, [make_item({})], {}, scope)

        assert exc_info.value.node_id == "X"
        assert isinstance(exc_info.value.cause, NodeTypeNotFoundError)

    def test_node_exception_wrapped_with_message(self, engine, registry, scope):
        def explode(items, params, ctx):
            raise ValueError("kaput")

        register(registry, "explode", explode)
        node = make_node("E", "explode", label="Exploder")
        with pytest.raises(NodeExecutionError) as exc_info:
            engine.executor.execute(make_workflow([node]), node, [make_item({})], {}, scope)

        assert str(exc_info.value) == "kaput"
        assert exc_info.value.node_label == "Exploder"

    def test_parameter_error_wrapped(self, engine, registry, scope):
        register(registry, "echo", lambda items, params, ctx: [{"v": params.get("v")}])
        node = make_node("P", "echo", config={"v": "{{ $json. }}"})
        with pytest.raises(NodeExecutionError) as exc_info:
            engine.executor.execute(make_workflow([node]), node, [make_item({})], {}, scope)
        assert isinstance(exc_info.value.cause, ParameterResolutionError)

    def test_node_reference_by_label(self, engine, registry, scope):
        register(registry, "echo", lambda items, params, ctx: [{"v": params.get("v")}])
        fetch = make_node("f1", "noOp", label="Fetch")
        node = make_node("P", "echo", config={"v": '$node["Fetch"].json.id'})
        wf = make_workflow([fetch, node], [("f1", "P")])

        output = engine.executor.execute(wf, node, [make_item({})], {"f1": [make_item({"id": 5})]}, scope)
        assert output == [{"json": {"v": 5}}]

    def test_output_converted_to_json_types(self, engine, registry, scope):
        stamp = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        register(registry, "typed", lambda items, params, ctx: [{"at": stamp, "pair": (1, 2)}])
        node = make_node("T", "typed")

        output = engine.executor.execute(make_workflow([node]), node, [make_item({})], {}, scope)
        assert output == [{"json": {"at": "2024-05-01T12:30:00Z", "pair": [1, 2]}}]

    def test_unserializable_output_fails_node(self, engine, registry, scope):
        register(registry, "leaky", lambda items, params, ctx: [{"f": len}])
        node = make_node("L", "leaky")
        with pytest.raises(NodeExecutionError, match="not JSON-serializable") as exc_info:
            engine.executor.execute(make_workflow([node]), node, [make_item({})], {}, scope)

        assert exc_info.value.node_id == "L"
        assert isinstance(exc_info.value.cause, NodeOperationError)

    def test_cancelled_scope(self, engine, scope):
        node = make_node("N")
        scope.cancel_event.set()
        with pytest.raises(NodeExecutionError, match="cancelled"):
            engine.executor.execute(make_workflow([node]), node, [make_item({})], {}, scope)


# =============================================================================
# Execution Context
# =============================================================================


class TestExecutionContext:
    """Tests for collaborators exposed to programmatic nodes."""

    def test_credentials_resolved_per_organization(self, engine, registry, scope):
        register(
            registry,
            "auth",
            lambda items, params, ctx: [{"token": ctx.get_credentials("exampleApi")["token"]}],
            credentials=["exampleApi"],
        )
        node = make_node("A", "auth")
        output = engine.executor.execute(make_workflow([node]), node, [make_item({})], {}, scope)
        assert output == [{"json": {"token": "secret-token"}}]

    def test_undeclared_credential_rejected(self, engine, registry, scope):
        register(
            registry,
            "auth",
            lambda items, params, ctx: ctx.get_credentials("otherApi"),
            credentials=["exampleApi"],
        )
        node = make_node("A", "auth")
        with pytest.raises(NodeExecutionError) as exc_info:
            engine.executor.execute(make_workflow([node]), node, [make_item({})], {}, scope)
        assert isinstance(exc_info.value.cause, CredentialError)

    def test_binary_helpers(self, engine, registry, scope):
        def binary(items, params, ctx):
            prepared = ctx.helpers.prepare_binary_data("hello", file_name="a.txt")
            ctx.items[0]["binary"] = {"data": prepared}
            return [{"text": ctx.helpers.get_binary_data_buffer(0).decode(), "mime": prepared["mimeType"]}]

        register(registry, "binary", binary)
        node = make_node("B", "binary")
        output = engine.executor.execute(make_workflow([node]), node, [make_item({})], {}, scope)
        assert output == [{"json": {"text": "hello", "mime": "text/plain"}}]

    def test_workflow_and_mode(self, engine, registry, scope):
        register(
            registry,
            "meta",
            lambda items, params, ctx: [{**ctx.get_workflow(), "mode": ctx.get_mode()}],
        )
        node = make_node("M", "meta")
        output = engine.executor.execute(make_workflow([node], name="Demo"), node, [make_item({})], {}, scope)
        assert output[0]["json"] == {"id": "wf-1", "name": "Demo", "organization_id": ORG, "mode": "manual"}

"""Tests for the node registry and declarative node execution."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from conftest import ORG, make_node, make_workflow
from typeflow.core.errors import NodeDefinitionError, NodeTypeNotFoundError
from typeflow.core.items import make_item
from typeflow.core.registry import NodeKind, NodeRegistry, NodeType, NodeTypeDescription
from typeflow.nodes import default_registry

USERS_NODE = """
name: exampleUsers
display_name: Example Users
credentials: [exampleApi]
request_defaults:
  base_url: https://api.example.test
  headers:
    Accept: application/json
parameters:
  - name: operation
    type: options
    options:
      - name: Get
        value: get
        routing:
          request:
            method: GET
            url: "=/users/{{ $parameter.user_id }}"
          output:
            property: data
      - name: Create
        value: create
        routing:
          request:
            method: POST
            url: /users
  - name: user_id
  - name: name
    routing:
      send:
        type: body
        property: user.name
  - name: limit
    routing:
      send:
        type: query
        property: limit
"""


@pytest.fixture
def definitions(tmp_path):
    directory = tmp_path / "nodes"
    directory.mkdir()
    (directory / "users.yaml").write_text(USERS_NODE)
    return directory


# =============================================================================
# Registration
# =============================================================================


class TestNodeRegistry:
    """Tests for registration and lookup."""

    def test_register_and_get(self):
        registry = NodeRegistry()
        node_type = NodeType(description=NodeTypeDescription(name="x"), execute=lambda *a: [])
        registry.register(node_type)

        assert registry.get("x") is node_type
        assert registry.has("x")
        assert node_type.kind == NodeKind.PROGRAMMATIC

    def test_duplicate_rejected_unless_replace(self):
        registry = NodeRegistry()
        registry.register(NodeType(description=NodeTypeDescription(name="x")))
        with pytest.raises(ValueError, match="already registered"):
            registry.register(NodeType(description=NodeTypeDescription(name="x")))
        registry.register(NodeType(description=NodeTypeDescription(name="x")), replace=True)

    def test_unknown_type(self):
        with pytest.raises(NodeTypeNotFoundError, match="Unknown node type 'nope'"):
            NodeRegistry().get("nope")

    def test_builtins(self, registry):
        for name in ("manual", "noOp", "throwError", "code", "filter", "merge", "httpRequest", "database"):
            assert registry.has(name)
        assert registry.get("manual").trigger
        assert not registry.get("noOp").trigger

    def test_entry_point_discovery(self, monkeypatch):
        good = MagicMock()
        good.name = "good"
        good.load.return_value = lambda: [NodeType(description=NodeTypeDescription(name="plugged"))]
        bad = MagicMock()
        bad.name = "bad"
        bad.load.side_effect = ImportError("missing dependency")
        monkeypatch.setattr("typeflow.core.registry.entry_points", lambda group: [good, bad])

        registry = NodeRegistry()
        assert registry.discover_entry_points() == 1
        assert registry.has("plugged")


# =============================================================================
# Declarative Definitions
# =============================================================================


class TestDefinitions:
    """Tests for YAML definitions validated against the node schema."""

    def test_load_definitions(self, definitions):
        registry = NodeRegistry()
        assert registry.load_definitions(definitions) == 1

        node_type = registry.get("exampleUsers")
        assert node_type.kind == NodeKind.DECLARATIVE
        assert node_type.description.credentials == ["exampleApi"]
        assert [p.name for p in node_type.description.parameters] == ["operation", "user_id", "name", "limit"]

    def test_missing_directory(self, tmp_path):
        assert NodeRegistry().load_definitions(tmp_path / "absent") == 0

    def test_schema_violation(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: bad\n")
        with pytest.raises(NodeDefinitionError, match="request_defaults"):
            NodeRegistry().load_definition(path)

    def test_invalid_send_type(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(
            "name: bad\nrequest_defaults: {}\nparameters:\n"
            "  - name: p\n    routing:\n      send: {type: cookie, property: x}\n"
        )
        with pytest.raises(NodeDefinitionError, match="Schema validation failed"):
            NodeRegistry().load_definition(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(NodeDefinitionError, match="Invalid YAML"):
            NodeRegistry().load_definition(path)

    def test_default_registry_reads_state_dir(self, settings, definitions):
        settings.node_paths = [definitions]
        registry = default_registry(settings, discover_plugins=False)
        assert registry.has("exampleUsers")
        assert registry.has("noOp")


class TestDeclarativeExecution:
    """Routing-only nodes build one request per item."""

    @pytest.fixture
    def session(self, engine, registry, definitions):
        registry.load_definitions(definitions)
        session = MagicMock()
        response = MagicMock(status_code=200, reason="OK", headers={})
        payload = {"data": [{"id": 7, "name": "Ada"}]}
        response.json.return_value = payload
        response.text = json.dumps(payload)
        response.content = response.text.encode()
        session.request.return_value = response
        return session

    def run(self, engine, session, config, items):
        node = make_node("U", "exampleUsers", config=config)
        scope = engine.create_scope(ORG)
        scope.http._session = session
        try:
            return engine.executor.execute(make_workflow([node]), node, items, {}, scope)
        finally:
            scope.release()

    def test_get_routing(self, engine, session):
        output = self.run(
            engine,
            session,
            {"operation": "get", "user_id": "{{ $json.id }}"},
            [make_item({"id": 7})],
        )

        kwargs = session.request.call_args.kwargs
        assert kwargs["method"] == "GET"
        assert kwargs["url"] == "https://api.example.test/users/7"
        assert kwargs["headers"]["Accept"] == "application/json"
        assert kwargs["headers"]["Authorization"] == "Bearer secret-token"
        assert output == [{"json": {"id": 7, "name": "Ada"}, "pairedItem": {"item": 0}}]

    def test_list_response_items_paired_independently(self, engine):
        items = engine.executor.declarative._to_items({"data": [{"id": 1}, {"id": 2}]}, "data", 3)
        assert [i["pairedItem"] for i in items] == [{"item": 3}, {"item": 3}]

        items[0]["pairedItem"]["item"] = 9
        assert items[1]["pairedItem"] == {"item": 3}

    def test_send_routing(self, engine, session):
        self.run(
            engine,
            session,
            {"operation": "create", "name": "$json.name", "limit": 5},
            [make_item({"name": "Ada"}), make_item({"name": "Bob"})],
        )

        assert session.request.call_count == 2
        kwargs = session.request.call_args.kwargs
        assert kwargs["method"] == "POST"
        assert kwargs["url"] == "https://api.example.test/users"
        assert kwargs["params"] == {"limit": 5}
        assert json.loads(kwargs["data"]) == {"user": {"name": "Bob"}}

# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Typeflow test suite.

This module provides foundational fixtures used across all test modules:
- Settings pointing at a temporary state directory
- Test database, node registry, engine and debug controller
- Workflow builders for common graph shapes

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from typeflow.core.config import Settings
from typeflow.core.credentials import StaticCredentialProvider
from typeflow.core.debugger import DebugSessionController
from typeflow.core.engine import WorkflowEngine
from typeflow.core.models import Connection, Node, Workflow
from typeflow.core.registry import NodeRegistry, NodeType, NodeTypeDescription
from typeflow.core.state import Database
from typeflow.nodes import builtin_node_types

ORG = "org-1"


# =============================================================================
# Workflow Builders
# =============================================================================


def make_node(node_id: str, node_type: str = "noOp", **kwargs: Any) -> Node:
    """Build a node; extra kwargs become Node fields (config, label, ...)."""
    return Node(id=node_id, type=node_type, **kwargs)


def make_workflow(
    nodes: list[Node],
    edges: list[tuple[str, str]] | None = None,
    workflow_id: str = "wf-1",
    organization_id: str = ORG,
    **kwargs: Any,
) -> Workflow:
    """Build a workflow from nodes and (source, target) edge pairs."""
    connections = [Connection(source_node_id=s, target_node_id=t) for s, t in edges or []]
    return Workflow(
        id=workflow_id,
        organization_id=organization_id,
        name=kwargs.pop("name", workflow_id),
        nodes=nodes,
        connections=connections,
        **kwargs,
    )


def chain_workflow(
    b_node: Node | None = None,
    workflow_id: str = "wf-abc",
    organization_id: str = ORG,
) -> Workflow:
    """A -> B -> C where A is a manual trigger and C passes items through.

    B defaults to an editFields node that sets "step" to "B".
    """
    b_node = b_node or make_node(
        "B", "editFields", config={"fields": [{"name": "step", "value": "B"}]}
    )
    return make_workflow(
        [make_node("A", "manual"), b_node, make_node("C", "noOp")],
        [("A", "B"), ("B", "C")],
        workflow_id=workflow_id,
        organization_id=organization_id,
    )


class CallRecorder:
    """Programmatic node type that records each invocation."""

    def __init__(self, name: str = "recorder"):
        self.calls: list[list[dict]] = []
        self.node_type = NodeType(
            description=NodeTypeDescription(name=name, display_name="Recorder"),
            execute=self.execute,
        )

    def execute(self, items, params, ctx):
        self.calls.append([item["json"] for item in items])
        return items


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every path under a temporary state directory."""
    return Settings(state_dir=tmp_path / ".typeflow", lock_timeout=5, wait_max_seconds=1)


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a test database with schema initialized."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def registry(settings: Settings) -> NodeRegistry:
    """Registry with only the built-in node types."""
    registry = NodeRegistry()
    registry.register_many(builtin_node_types(settings))
    return registry


@pytest.fixture
def recorder(registry: NodeRegistry) -> CallRecorder:
    """A registered 'recorder' node type."""
    rec = CallRecorder()
    registry.register(rec.node_type)
    return rec


@pytest.fixture
def credential_provider() -> StaticCredentialProvider:
    return StaticCredentialProvider({ORG: {"exampleApi": {"token": "secret-token"}}})


@pytest.fixture
def engine(
    registry: NodeRegistry,
    test_db: Database,
    credential_provider: StaticCredentialProvider,
    settings: Settings,
) -> WorkflowEngine:
    return WorkflowEngine(registry, store=test_db, credential_provider=credential_provider, settings=settings)


@pytest.fixture
def controller(engine: WorkflowEngine, test_db: Database, settings: Settings) -> DebugSessionController:
    return DebugSessionController(engine, test_db, settings)

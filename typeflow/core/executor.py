"""Node execution.

NodeExecutor looks up the node's type in the registry, builds a fresh
ExecutionContext, runs declarative or programmatic logic, and flattens
the result into one ordered item list. Every failure is wrapped in
NodeExecutionError; whether to halt is decided by the caller using the
node's continue_on_fail policy.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import TypeAdapter

from typeflow.core.context import ExecutionContext, RunScope
from typeflow.core.declarative import DeclarativeExecutor
from typeflow.core.errors import NodeExecutionError, NodeOperationError
from typeflow.core.expressions import ExpressionResolver, ParameterAccessor
from typeflow.core.items import ExecutionItem, copy_items, make_item, normalize_output
from typeflow.core.models import Node, Workflow
from typeflow.core.registry import NodeKind, NodeRegistry

logger = logging.getLogger(__name__)


def labelled_outputs(
    workflow: Workflow, node_outputs: Mapping[str, list[ExecutionItem]]
) -> dict[str, list[ExecutionItem]]:
    """Index prior outputs by node label, falling back to node id.

    $node["..."] references use labels; ids work when no label collides.
    """
    labelled: dict[str, list[ExecutionItem]] = {}
    for node_id, items in node_outputs.items():
        labelled.setdefault(node_id, items)
    for node_id, items in node_outputs.items():
        node = workflow.get_node(node_id)
        if node is not None:
            labelled[node.label] = items
    return labelled


def failure_output(error: BaseException) -> list[ExecutionItem]:
    """Output emitted by a failed node whose policy is continue_on_fail."""
    return [make_item({"error": str(error)})]


_ITEMS_ADAPTER: TypeAdapter[list[dict[str, Any]]] = TypeAdapter(list[dict[str, Any]])


def json_compatible(items: list[ExecutionItem]) -> list[ExecutionItem]:
    """Return items as plain JSON data so they persist like they run.

    Raises:
        NodeOperationError: an item holds a value JSON cannot represent
    """
    try:
        return _ITEMS_ADAPTER.dump_python(items, mode="json")
    except ValueError as e:
        raise NodeOperationError(f"Node output is not JSON-serializable: {e}") from e


class NodeExecutor:
    """Runs single nodes against their input items."""

    def __init__(
        self,
        registry: NodeRegistry,
        resolver: ExpressionResolver | None = None,
    ):
        self.registry = registry
        self.resolver = resolver or ExpressionResolver()
        self.declarative = DeclarativeExecutor(self.resolver)

    def execute(
        self,
        workflow: Workflow,
        node: Node,
        items: list[ExecutionItem],
        node_outputs: Mapping[str, list[ExecutionItem]],
        scope: RunScope,
    ) -> list[ExecutionItem]:
        """Execute one node.

        Args:
            workflow: Workflow snapshot the node belongs to
            node: Node to run
            items: Input items (copied before the node sees them)
            node_outputs: Outputs of already executed nodes, keyed by node id
            scope: Run-scoped collaborators

        Returns:
            Flattened output items

        Raises:
            NodeExecutionError: wrapping any failure (unknown type,
                parameter, credential, HTTP, subworkflow or node logic)
        """
        try:
            node_type = self.registry.get(node.type)
            items = copy_items(items)
            params = ParameterAccessor(
                node,
                items,
                labelled_outputs(workflow, node_outputs),
                declared=node_type.description.parameter_map,
                resolver=self.resolver,
                workflow={"id": workflow.id, "name": workflow.name},
            )
            ctx = ExecutionContext(node, node_type, workflow, items, params, scope)
            ctx.check_cancelled()

            logger.debug(
                f"Executing node '{node.label}' ({node.type}, {node_type.kind.value}) "
                f"with {len(items)} items"
            )
            if node_type.kind == NodeKind.DECLARATIVE:
                result = self.declarative.execute(ctx)
            else:
                result = node_type.execute(items, params, ctx)
            return json_compatible(normalize_output(result))
        except NodeExecutionError as e:
            if e.node_id == node.id:
                raise
            raise NodeExecutionError(node.id, node.label, e) from e
        except Exception as e:
            logger.debug(f"Node '{node.label}' failed: {e}")
            raise NodeExecutionError(node.id, node.label, e) from e

"""Workflow execution engine.

Assembles node inputs from upstream outputs, runs single nodes for the
debugger, and runs whole workflows in batch mode. Batch runs execute
independent branches concurrently on a thread pool while honoring
dependency edges: a node is submitted only after all its predecessors
have finished.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from typeflow.core.config import Settings
from typeflow.core.context import RunScope
from typeflow.core.credentials import CredentialProvider, CredentialScope
from typeflow.core.errors import NodeExecutionError, TypeflowError, WorkflowNotFoundError
from typeflow.core.executor import NodeExecutor, failure_output
from typeflow.core.expressions import ExpressionResolver
from typeflow.core.graph import GraphResolver, ResolvedGraph
from typeflow.core.http import HttpHelper
from typeflow.core.items import ExecutionItem, copy_items, get_path, make_item, set_path, trigger_items
from typeflow.core.models import Node, NodeResult, NodeRunStatus, Workflow
from typeflow.core.registry import NodeRegistry
from typeflow.core.subworkflow import SubworkflowInvoker

logger = logging.getLogger(__name__)

OUTPUT_NODE_TYPE = "workflowOutput"


class WorkflowStore(Protocol):
    """Read access to workflow snapshots."""

    def get_workflow(self, workflow_id: str, organization_id: str) -> Workflow: ...


class RunStatus(str, Enum):
    """Outcome of a batch workflow run."""

    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class NodeStep:
    """Result of running one node with failure policy applied."""

    node_id: str
    input: list[ExecutionItem]
    output: list[ExecutionItem]
    result: NodeResult
    error: NodeExecutionError | None = None
    halted: bool = False  # Failed and continue_on_fail is off


@dataclass
class WorkflowRunResult:
    """Result of a batch workflow run."""

    workflow_id: str
    status: RunStatus
    order: list[str]
    output: list[ExecutionItem] = field(default_factory=list)
    node_outputs: dict[str, list[ExecutionItem]] = field(default_factory=dict)
    node_results: dict[str, NodeResult] = field(default_factory=dict)
    error: str | None = None
    failed_node_id: str | None = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED


def apply_data_mapping(items: list[ExecutionItem], mapping: Mapping[str, str] | None) -> list[ExecutionItem]:
    """Set target fields from dotted source paths, keeping other fields."""
    if not mapping:
        return items
    for item in items:
        source = dict(item.get("json", {}))
        for target_field, source_path in mapping.items():
            set_path(item.setdefault("json", {}), target_field, get_path(source, source_path))
    return items


class WorkflowEngine:
    """Executes workflows node by node or as a batch.

    USAGE:
        engine = WorkflowEngine(registry, store=db, settings=settings)
        result = engine.execute_workflow(workflow, trigger_data={"id": 1})
        if result.success:
            print(result.output)
    """

    def __init__(
        self,
        registry: NodeRegistry,
        store: WorkflowStore | None = None,
        credential_provider: CredentialProvider | None = None,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.store = store
        self.credential_provider = credential_provider
        self.settings = settings or Settings()
        self.graph_resolver = GraphResolver()
        self.executor = NodeExecutor(registry, ExpressionResolver())
        self.invoker = SubworkflowInvoker(max_depth=self.settings.max_subworkflow_depth)

    # --- Scopes ---

    def create_scope(
        self,
        organization_id: str,
        cancel_event: threading.Event | None = None,
        mode: str = "manual",
    ) -> RunScope:
        """Create run-scoped collaborators. The caller must release() the scope."""
        cancel_event = cancel_event or threading.Event()
        scope = RunScope(
            organization_id=organization_id,
            credentials=CredentialScope(self.credential_provider, organization_id),
            http=HttpHelper(timeout=self.settings.http_timeout, cancel_event=cancel_event),
            cancel_event=cancel_event,
            mode=mode,
            invoker=self.invoker,
        )
        scope.run_workflow = self._child_runner(scope)
        return scope

    def _child_runner(self, parent: RunScope):
        """Callback the subworkflow invoker uses to run nested workflows.

        Child runs share the parent's credentials, HTTP helper and
        cancellation, so terminating the parent stops them too.
        """

        def run_child(
            workflow_id: str, trigger_data: Any, depth: int, chain: tuple[str, ...]
        ) -> list[ExecutionItem]:
            if self.store is None:
                raise WorkflowNotFoundError("No workflow store configured for subworkflows")
            workflow = self.store.get_workflow(workflow_id, parent.organization_id)
            child = RunScope(
                organization_id=parent.organization_id,
                credentials=parent.credentials,
                http=parent.http,
                cancel_event=parent.cancel_event,
                mode=parent.mode,
                depth=depth,
                chain=chain,
                invoker=parent.invoker,
            )
            child.run_workflow = self._child_runner(child)
            # The payload is the child's single trigger item, never a list of items
            result = self.execute_workflow(workflow, [make_item(trigger_data)], scope=child)
            if not result.success:
                raise TypeflowError(f"node '{result.failed_node_id}' failed: {result.error}")
            return result.output

        return run_child

    # --- Single node ---

    def resolve_graph(self, workflow: Workflow) -> ResolvedGraph:
        return self.graph_resolver.resolve(workflow.nodes, workflow.connections)

    def is_trigger(self, node: Node) -> bool:
        return self.registry.has(node.type) and self.registry.get(node.type).trigger

    def node_input(
        self,
        workflow: Workflow,
        node: Node,
        graph: ResolvedGraph,
        node_outputs: Mapping[str, list[ExecutionItem]],
        trigger_data: Any,
    ) -> list[ExecutionItem]:
        """Assemble a node's input items.

        Trigger nodes receive the trigger payload, other roots one empty
        item, and everything else the concatenated outputs of its
        predecessors (in execution order) with edge data mappings applied.
        Each item is tagged with the index of the input it arrived on.
        """
        predecessors = graph.predecessors.get(node.id, [])
        if not predecessors:
            if self.is_trigger(node):
                return trigger_items(trigger_data)
            return [make_item({})]

        incoming = workflow.incoming(node.id)
        items: list[ExecutionItem] = []
        for input_index, pred in enumerate(predecessors):
            upstream = copy_items(node_outputs.get(pred, []))
            for conn in incoming:
                if conn.source_node_id == pred:
                    upstream = apply_data_mapping(upstream, conn.data_mapping)
            for item_index, item in enumerate(upstream):
                item["pairedItem"] = {"item": item_index, "input": input_index}
            items.extend(upstream)
        return items

    def run_node(
        self,
        workflow: Workflow,
        node: Node,
        graph: ResolvedGraph,
        node_outputs: Mapping[str, list[ExecutionItem]],
        trigger_data: Any,
        scope: RunScope,
    ) -> NodeStep:
        """Run one node and apply its continue_on_fail policy. Never raises NodeExecutionError."""
        items = self.node_input(workflow, node, graph, node_outputs, trigger_data)
        started = datetime.now(UTC)
        start = time.monotonic()
        error: NodeExecutionError | None = None
        try:
            output = self.executor.execute(workflow, node, items, node_outputs, scope)
        except NodeExecutionError as e:
            error = e
            output = failure_output(e) if node.continue_on_fail else []
            logger.warning(f"Node '{node.label}' failed: {e}")

        result = NodeResult(
            status=NodeRunStatus.SUCCESS if error is None else NodeRunStatus.ERROR,
            item_count=len(output),
            error=str(error) if error is not None else None,
            started_at=started,
            finished_at=datetime.now(UTC),
            duration_ms=round((time.monotonic() - start) * 1000, 3),
        )
        return NodeStep(
            node_id=node.id,
            input=items,
            output=output,
            result=result,
            error=error,
            halted=error is not None and not node.continue_on_fail,
        )

    def final_output(
        self, workflow: Workflow, graph: ResolvedGraph, node_outputs: Mapping[str, list[ExecutionItem]]
    ) -> list[ExecutionItem]:
        """Output of the workflowOutput node, else of the last executed node."""
        for node_id in graph.order:
            node = workflow.get_node(node_id)
            if node is not None and node.type == OUTPUT_NODE_TYPE and node_id in node_outputs:
                return copy_items(node_outputs[node_id])
        for node_id in reversed(graph.order):
            if node_id in node_outputs:
                return copy_items(node_outputs[node_id])
        return []

    # --- Batch ---

    def run_workflow_by_id(
        self, workflow_id: str, organization_id: str, trigger_data: Any = None
    ) -> WorkflowRunResult:
        if self.store is None:
            raise WorkflowNotFoundError("No workflow store configured")
        workflow = self.store.get_workflow(workflow_id, organization_id)
        return self.execute_workflow(workflow, trigger_data, organization_id=organization_id)

    def execute_workflow(
        self,
        workflow: Workflow,
        trigger_data: Any = None,
        organization_id: str | None = None,
        scope: RunScope | None = None,
    ) -> WorkflowRunResult:
        """Run a whole workflow.

        Raises:
            GraphCycleError / GraphValidationError: before any node runs
        """
        graph = self.resolve_graph(workflow)
        owns_scope = scope is None
        if scope is None:
            scope = self.create_scope(organization_id or workflow.organization_id)
        logger.info(
            f"Executing workflow '{workflow.id}' ({len(graph.order)} nodes, depth {scope.depth})"
        )
        try:
            return self._run_batch(workflow, graph, trigger_data, scope)
        finally:
            if owns_scope:
                scope.release()

    def _run_batch(
        self, workflow: Workflow, graph: ResolvedGraph, trigger_data: Any, scope: RunScope
    ) -> WorkflowRunResult:
        node_outputs: dict[str, list[ExecutionItem]] = {}
        node_results: dict[str, NodeResult] = {}
        remaining = {node_id: len(graph.predecessors[node_id]) for node_id in graph.order}
        ready = [node_id for node_id in graph.order if remaining[node_id] == 0]
        halted: NodeStep | None = None

        executor = ThreadPoolExecutor(max_workers=self.settings.max_parallel_nodes)
        futures: dict[Future, str] = {}
        try:
            while ready or futures:
                if halted is None and not scope.cancelled:
                    for node_id in sorted(ready, key=graph.position):
                        node = workflow.get_node(node_id)
                        future = executor.submit(
                            self.run_node,
                            workflow,
                            node,
                            graph,
                            dict(node_outputs),
                            trigger_data,
                            scope,
                        )
                        futures[future] = node_id
                ready = []
                if not futures:
                    break

                done, _ = wait(list(futures), return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: graph.position(futures[f])):
                    node_id = futures.pop(future)
                    step: NodeStep = future.result()
                    node_outputs[node_id] = step.output
                    node_results[node_id] = step.result
                    if step.halted:
                        if halted is None:
                            halted = step
                        continue
                    for succ in graph.successors[node_id]:
                        remaining[succ] -= 1
                        if remaining[succ] == 0:
                            ready.append(succ)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        if halted is not None:
            logger.info(f"Workflow '{workflow.id}' failed at node '{halted.node_id}'")
            return WorkflowRunResult(
                workflow_id=workflow.id,
                status=RunStatus.FAILED,
                order=graph.order,
                node_outputs=node_outputs,
                node_results=node_results,
                error=str(halted.error),
                failed_node_id=halted.node_id,
            )
        if scope.cancelled and len(node_results) < len(graph.order):
            return WorkflowRunResult(
                workflow_id=workflow.id,
                status=RunStatus.FAILED,
                order=graph.order,
                node_outputs=node_outputs,
                node_results=node_results,
                error="Execution cancelled",
            )

        logger.info(f"Workflow '{workflow.id}' completed ({len(node_results)} nodes)")
        return WorkflowRunResult(
            workflow_id=workflow.id,
            status=RunStatus.COMPLETED,
            order=graph.order,
            output=self.final_output(workflow, graph, node_outputs),
            node_outputs=node_outputs,
            node_results=node_results,
        )

"""Subworkflow invocation.

A node can run another workflow either once over all input items or once
per item. Nested runs go back through the same run_workflow callback the
outer engine exposes. Nesting is bounded by a maximum depth; the error
reports the invocation chain so self-referencing workflows are easy to spot.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from typeflow.core.errors import RequestCancelledError, SubworkflowError
from typeflow.core.items import ExecutionItem, copy_items, make_item

if TYPE_CHECKING:
    from typeflow.core.context import RunScope

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10
MODES = ("once", "foreach")

# run_workflow(workflow_id, trigger_data, depth, chain) -> final output items or None
RunWorkflowFn = Callable[[str, Any, int, tuple[str, ...]], "list[ExecutionItem] | None"]


class SubworkflowInvoker:
    """Runs nested workflows in once or foreach mode."""

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        self.max_depth = max_depth

    def invoke(
        self,
        subworkflow_id: str,
        mode: str,
        items: list[ExecutionItem],
        scope: RunScope,
        run_workflow: RunWorkflowFn,
    ) -> list[ExecutionItem]:
        """Run the sub-workflow and return this node's output items.

        Raises:
            SubworkflowError: unknown mode, depth exceeded, or any sub-run
                failure (foreach failures carry item_index). Partial
                outputs are discarded.
        """
        if not subworkflow_id:
            raise SubworkflowError("", "No workflow selected")
        if mode not in MODES:
            raise SubworkflowError(subworkflow_id, f"Unknown mode '{mode}', expected one of {MODES}")

        depth = scope.depth + 1
        chain = (*scope.chain, subworkflow_id)
        if depth > self.max_depth:
            raise SubworkflowError(
                subworkflow_id,
                f"Maximum subworkflow depth {self.max_depth} exceeded "
                f"(invocation chain: {' -> '.join(chain)})",
            )

        items = copy_items(items)
        logger.info(
            f"Invoking subworkflow '{subworkflow_id}' ({mode}, {len(items)} items, depth {depth})"
        )
        if mode == "once":
            return self._run_once(subworkflow_id, items, depth, chain, run_workflow)
        return self._run_foreach(subworkflow_id, items, depth, chain, run_workflow, scope)

    def _run_once(
        self,
        subworkflow_id: str,
        items: list[ExecutionItem],
        depth: int,
        chain: tuple[str, ...],
        run_workflow: RunWorkflowFn,
    ) -> list[ExecutionItem]:
        trigger_data = {
            "items": copy_items(items),
            "json": items[0].get("json", {}) if items else {},
        }
        try:
            output = run_workflow(subworkflow_id, trigger_data, depth, chain)
        except SubworkflowError:
            raise
        except Exception as e:
            raise SubworkflowError(subworkflow_id, str(e)) from e
        if not output:
            return [make_item({"success": True})]
        return copy_items(output)

    def _run_foreach(
        self,
        subworkflow_id: str,
        items: list[ExecutionItem],
        depth: int,
        chain: tuple[str, ...],
        run_workflow: RunWorkflowFn,
        scope: RunScope,
    ) -> list[ExecutionItem]:
        results: list[ExecutionItem] = []
        for index, item in enumerate(items):
            if scope.cancelled:
                raise RequestCancelledError(
                    f"Subworkflow '{subworkflow_id}' cancelled before item index {index}"
                )
            item_json = item.get("json", {})
            trigger_data = {"item": item_json, "index": index, "json": item_json}
            try:
                output = run_workflow(subworkflow_id, trigger_data, depth, chain)
            except Exception as e:
                raise SubworkflowError(subworkflow_id, str(e), item_index=index) from e
            if output:
                results.extend(copy_items(output))
            else:
                results.append(make_item({"success": True, "itemIndex": index}))
        return results

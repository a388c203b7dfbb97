"""Execution context handed to programmatic nodes.

RunScope holds the collaborators shared by every node invocation of one
debug session or workflow run (credentials, HTTP helper, cancellation,
subworkflow recursion state). ExecutionContext is rebuilt for every node
invocation so no state leaks from one node to the next.
"""

from __future__ import annotations

import base64
import mimetypes
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from typeflow.core.credentials import CredentialHandle, CredentialScope
from typeflow.core.errors import CredentialError, RequestCancelledError
from typeflow.core.expressions import ParameterAccessor
from typeflow.core.http import HttpHelper, RequestOptions
from typeflow.core.items import ExecutionItem, copy_items
from typeflow.core.models import Node, Workflow
from typeflow.core.registry import NodeType

if TYPE_CHECKING:
    from typeflow.core.subworkflow import SubworkflowInvoker

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class RunScope:
    """Collaborators owned by one session or run."""

    organization_id: str
    credentials: CredentialScope
    http: HttpHelper
    cancel_event: threading.Event = field(default_factory=threading.Event)
    mode: str = "manual"
    depth: int = 0  # Subworkflow nesting depth of this run
    chain: tuple[str, ...] = ()  # Workflow ids from the outermost run to this one
    run_workflow: Callable[..., list[ExecutionItem]] | None = None
    invoker: SubworkflowInvoker | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def release(self) -> None:
        self.credentials.release()
        self.http.close()


class ContextHelpers:
    """Request and binary-data helpers exposed as ctx.helpers."""

    def __init__(self, context: ExecutionContext):
        self._context = context

    def request(self, options: RequestOptions | dict[str, Any]) -> Any:
        self._context.check_cancelled()
        return self._context.scope.http.request(options)

    def request_with_authentication(
        self, credential_type: str, options: RequestOptions | dict[str, Any]
    ) -> Any:
        self._context.check_cancelled()
        credentials = self._context.get_credentials(credential_type)
        return self._context.scope.http.request(options, credentials=credentials)

    def prepare_binary_data(
        self,
        data: bytes | str,
        file_name: str | None = None,
        mime_type: str | None = None,
    ) -> dict[str, Any]:
        raw = data.encode("utf-8") if isinstance(data, str) else data
        if mime_type is None and file_name:
            mime_type = mimetypes.guess_type(file_name)[0]
        binary: dict[str, Any] = {
            "data": base64.b64encode(raw).decode("ascii"),
            "mimeType": mime_type or DEFAULT_MIME_TYPE,
            "fileSize": len(raw),
        }
        if file_name:
            binary["fileName"] = file_name
        return binary

    def get_binary_data_buffer(self, item_index: int, property_name: str = "data") -> bytes:
        items = self._context.items
        if not 0 <= item_index < len(items):
            raise IndexError(f"Item index {item_index} out of range")
        binary = items[item_index].get("binary", {}).get(property_name)
        if not binary or "data" not in binary:
            raise ValueError(f"Item {item_index} has no binary property '{property_name}'")
        return base64.b64decode(binary["data"])


class ExecutionContext:
    """Per-invocation view of the engine for a programmatic node."""

    def __init__(
        self,
        node: Node,
        node_type: NodeType,
        workflow: Workflow,
        items: list[ExecutionItem],
        params: ParameterAccessor,
        scope: RunScope,
    ):
        self.node = node
        self.node_type = node_type
        self.workflow = workflow
        self.items = items
        self.params = params
        self.scope = scope
        self.helpers = ContextHelpers(self)

    def get_input_data(self) -> list[ExecutionItem]:
        return copy_items(self.items)

    def get_node_parameter(self, name: str, item_index: int = 0, default: Any = None) -> Any:
        return self.params.get(name, item_index, default)

    def _check_declared(self, type_name: str) -> None:
        declared = self.node_type.description.credentials
        if declared and type_name not in declared:
            raise CredentialError(
                f"Node type '{self.node_type.name}' does not declare credential '{type_name}'"
            )

    def get_credentials(self, type_name: str) -> dict[str, Any]:
        self._check_declared(type_name)
        return self.scope.credentials.data(type_name)

    def get_credential_handle(self, type_name: str) -> CredentialHandle:
        self._check_declared(type_name)
        return self.scope.credentials.connected(type_name)

    def get_node(self) -> Node:
        return self.node.model_copy(deep=True)

    def get_workflow(self) -> dict[str, Any]:
        return {
            "id": self.workflow.id,
            "name": self.workflow.name,
            "organization_id": self.workflow.organization_id,
        }

    def get_mode(self) -> str:
        return self.scope.mode

    def input_count(self) -> int:
        """Number of upstream nodes feeding this node, including ones that sent no items."""
        return len({conn.source_node_id for conn in self.workflow.incoming(self.node.id)})

    def continue_on_fail(self) -> bool:
        return self.node.continue_on_fail

    def is_cancelled(self) -> bool:
        return self.scope.cancelled

    def check_cancelled(self) -> None:
        if self.scope.cancelled:
            raise RequestCancelledError(f"Execution of node '{self.node.label}' was cancelled")

    def sleep(self, seconds: float) -> None:
        """Wait, waking early (and raising) if the run is cancelled."""
        if self.scope.cancel_event.wait(timeout=max(seconds, 0)):
            self.check_cancelled()

    def execute_workflow(
        self, workflow_id: str, mode: str = "once", items: list[ExecutionItem] | None = None
    ) -> list[ExecutionItem]:
        """Invoke another workflow as a sub-procedure of this run."""
        if self.scope.invoker is None or self.scope.run_workflow is None:
            raise RuntimeError("Subworkflow execution is not available in this run")
        return self.scope.invoker.invoke(
            workflow_id,
            mode,
            self.get_input_data() if items is None else items,
            self.scope,
            self.scope.run_workflow,
        )

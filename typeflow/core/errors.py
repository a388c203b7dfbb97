"""Exception taxonomy for the execution engine.

Node-local errors (parameter, execution, credential, subworkflow) are
captured into session frames and node results. Graph and session state
errors are raised directly to the caller.
"""

from __future__ import annotations


class TypeflowError(Exception):
    """Base class for all engine errors."""

    pass


class ConfigError(TypeflowError):
    """Invalid or unreadable configuration."""

    pass


class GraphValidationError(TypeflowError):
    """Structural problem in a workflow graph (unknown endpoint, self-loop)."""

    pass


class GraphCycleError(GraphValidationError):
    """The workflow graph contains a cycle."""

    def __init__(self, node_ids: list[str]):
        self.node_ids = list(node_ids)
        super().__init__(f"Workflow graph contains a cycle: {' -> '.join(self.node_ids)}")


class ParameterResolutionError(TypeflowError):
    """A node parameter could not be resolved."""

    def __init__(self, message: str, parameter: str | None = None):
        self.parameter = parameter
        super().__init__(message)


class NodeTypeNotFoundError(TypeflowError):
    """No node type is registered under the requested name."""

    pass


class NodeDefinitionError(TypeflowError):
    """A declarative node definition file is invalid."""

    pass


class CredentialError(TypeflowError):
    """Missing or invalid credential."""

    pass


class HttpRequestError(TypeflowError):
    """HTTP call failed or returned a non-2xx status."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        url: str | None = None,
        method: str | None = None,
    ):
        self.status_code = status_code
        self.response_body = response_body
        self.url = url
        self.method = method
        super().__init__(message)


class HttpTimeoutError(HttpRequestError):
    """HTTP call exceeded its timeout."""

    def __init__(self, message: str, timeout: float, url: str, method: str | None = None):
        self.timeout = timeout
        super().__init__(message, url=url, method=method)


class RequestCancelledError(TypeflowError):
    """The owning session or run was cancelled while a call was in flight."""

    pass


class NodeExecutionError(TypeflowError):
    """A node failed. Wraps the underlying cause."""

    def __init__(self, node_id: str, node_label: str, cause: BaseException):
        self.node_id = node_id
        self.node_label = node_label
        self.cause = cause
        super().__init__(str(cause))


class SubworkflowError(TypeflowError):
    """A sub-workflow invocation failed."""

    def __init__(self, subworkflow_id: str, reason: str, item_index: int | None = None):
        self.subworkflow_id = subworkflow_id
        self.item_index = item_index
        self.reason = reason
        if item_index is None:
            message = f"Subworkflow '{subworkflow_id}' failed: {reason}"
        else:
            message = f"Subworkflow '{subworkflow_id}' failed for item index {item_index}: {reason}"
        super().__init__(message)


class WorkflowNotFoundError(TypeflowError):
    """Workflow does not exist in the requested organization."""

    pass


class SessionNotFoundError(TypeflowError):
    """Debug session does not exist in the requested organization."""

    pass


class SessionStateError(TypeflowError):
    """Operation is not allowed in the session's current status."""

    pass


class NodeOperationError(TypeflowError):
    """Node logic rejected its input or was asked to fail."""

    pass


class CodeExecutionError(NodeOperationError):
    """A code node snippet failed to compile or raised."""

    def __init__(self, message: str, source_location=None):
        self.source_location = source_location  # SourceLocation | None
        super().__init__(message)

"""Data models for workflows and debug sessions.

Uses Pydantic so every persisted structure round-trips through plain JSON.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


# --- Workflow Definition Models ---


class Node(BaseModel):
    """A single configured step in a workflow graph."""

    id: str
    type: str  # Registry key selecting the executor logic
    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    execution_order: int = 0  # Tie-break hint for topological ordering
    continue_on_fail: bool = False
    ui_metadata: dict[str, Any] | None = None  # Position, styling for the editor

    @field_validator("id", "type")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v

    @model_validator(mode="after")
    def default_label(self) -> "Node":
        """Nodes without a display label are referenced by id."""
        if not self.label:
            self.label = self.id
        return self


class Connection(BaseModel):
    """Directed edge between two nodes, optionally remapping fields."""

    id: str = ""
    source_node_id: str
    source_handle: str | None = None
    target_node_id: str
    target_handle: str | None = None
    data_mapping: dict[str, str] | None = None  # target_field -> dotted source path

    @model_validator(mode="after")
    def default_id(self) -> "Connection":
        if not self.id:
            self.id = f"{self.source_node_id}->{self.target_node_id}"
        return self


class Workflow(BaseModel):
    """Workflow snapshot. Read-only for the duration of an execution."""

    id: str
    organization_id: str = "default"
    name: str = ""
    description: str | None = None
    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)  # viewport, breakpoints, ...

    def get_node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self) -> set[str]:
        return {node.id for node in self.nodes}

    def incoming(self, node_id: str) -> list[Connection]:
        """Connections ending at node_id, in declaration order."""
        return [c for c in self.connections if c.target_node_id == node_id]

    @property
    def breakpoint_template(self) -> list[str]:
        """Persisted per-workflow breakpoints used to seed new debug sessions."""
        return list(self.metadata.get("breakpoints", []))


# --- Execution Models ---


class NodeRunStatus(str, Enum):
    """Outcome of a single node execution."""

    SUCCESS = "success"
    ERROR = "error"


class NodeResult(BaseModel):
    """Summary of one node execution."""

    status: NodeRunStatus
    item_count: int = 0
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: float = 0.0


class SourceLocation(BaseModel):
    """Location of a failure inside a code node."""

    line: int
    column: int = 0
    code: str | None = None  # Offending source line
    file_name: str | None = None


class DebugStackFrame(BaseModel):
    """One executed node in a debug session's call stack."""

    index: int
    node_id: str
    node_label: str
    node_type: str
    input: list[dict[str, Any]] = Field(default_factory=list)  # First N input items
    output: list[dict[str, Any]] = Field(default_factory=list)  # First N output items
    error: str | None = None
    source_location: SourceLocation | None = None
    timestamp: datetime = Field(default_factory=_utc_now)


class DebugSessionStatus(str, Enum):
    """Lifecycle of a debug session."""

    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (
            DebugSessionStatus.COMPLETED,
            DebugSessionStatus.FAILED,
            DebugSessionStatus.TERMINATED,
        )


class DebugSession(BaseModel):
    """Persisted, resumable debug session state.

    call_stack is append-only. cursor indexes execution_order and points at
    the next node to run; current_node_id mirrors it while paused.
    """

    id: str
    workflow_id: str
    organization_id: str
    status: DebugSessionStatus = DebugSessionStatus.IDLE
    current_node_id: str | None = None
    cursor: int = 0
    execution_order: list[str] = Field(default_factory=list)
    call_stack: list[DebugStackFrame] = Field(default_factory=list)
    node_results: dict[str, NodeResult] = Field(default_factory=dict)
    node_outputs: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    breakpoints: list[str] = Field(default_factory=list)
    trigger_data: Any = None
    error: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def is_paused(self) -> bool:
        return self.status == DebugSessionStatus.PAUSED

    @property
    def executed_count(self) -> int:
        return len(self.call_stack)

    def set_breakpoint(self, node_id: str, enabled: bool) -> None:
        """Add or remove a breakpoint, keeping the list sorted and unique."""
        points = set(self.breakpoints)
        if enabled:
            points.add(node_id)
        else:
            points.discard(node_id)
        self.breakpoints = sorted(points)

    def touch(self) -> None:
        self.updated_at = _utc_now()

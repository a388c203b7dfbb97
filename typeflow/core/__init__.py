"""Core modules for the Typeflow execution and debug engine."""

from typeflow.core.config import Settings, load_settings
from typeflow.core.debugger import DebugResult, DebugSessionController
from typeflow.core.engine import WorkflowEngine, WorkflowRunResult
from typeflow.core.graph import GraphResolver, ResolvedGraph
from typeflow.core.models import (
    Connection,
    DebugSession,
    DebugSessionStatus,
    DebugStackFrame,
    Node,
    Workflow,
)
from typeflow.core.registry import NodeRegistry, NodeType, NodeTypeDescription
from typeflow.core.state import Database, Event, EventType

__all__ = [
    "Connection",
    "Database",
    "DebugResult",
    "DebugSession",
    "DebugSessionController",
    "DebugSessionStatus",
    "DebugStackFrame",
    "Event",
    "EventType",
    "GraphResolver",
    "Node",
    "NodeRegistry",
    "NodeType",
    "NodeTypeDescription",
    "ResolvedGraph",
    "Settings",
    "Workflow",
    "WorkflowEngine",
    "WorkflowRunResult",
    "load_settings",
]

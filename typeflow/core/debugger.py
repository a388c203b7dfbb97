"""Debug session controller.

State machine wrapping the engine with breakpoints and single-stepping:

    idle -> active -> {paused <-> active} -> {completed | failed | terminated}

Sessions are persisted after every executed node, so each operation can
run in a fresh process against the stored snapshot. Operations on one
session are serialized by an in-process lock plus a file lock under
<state_dir>/locks. Node failures never raise out of the controller; they
mark the session failed and are recorded in the call stack. Only illegal
operations (SessionStateError, SessionNotFoundError) and graph errors
(GraphCycleError) are raised.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from typeflow.core.config import Settings
from typeflow.core.context import RunScope
from typeflow.core.engine import NodeStep, WorkflowEngine
from typeflow.core.errors import SessionStateError
from typeflow.core.graph import ResolvedGraph
from typeflow.core.items import truncate_items
from typeflow.core.models import (
    DebugSession,
    DebugSessionStatus,
    DebugStackFrame,
    SourceLocation,
    Workflow,
)
from typeflow.core.state import Database, Event, EventType

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 50


@dataclass
class DebugResult:
    """Session snapshot returned by every controller operation."""

    session: DebugSession

    @property
    def is_paused(self) -> bool:
        return self.session.is_paused

    @property
    def call_stack(self) -> list[DebugStackFrame]:
        return self.session.call_stack

    @property
    def status(self) -> DebugSessionStatus:
        return self.session.status


@dataclass
class _SessionRuntime:
    """In-process state for a session with resources in use."""

    lock: threading.Lock = field(default_factory=threading.Lock)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    scope: RunScope | None = None
    # Breakpoints of a run in flight; toggles while running update this set
    live_breakpoints: set[str] | None = None
    breakpoint_lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0  # Operations holding or waiting for the session lock
    paused: bool = False  # Scope is kept for the next step while paused


class DebugSessionController:
    """Creates and drives debug sessions.

    USAGE:
        controller = DebugSessionController(engine, db, settings)
        result = controller.create_session("wf-1", "org-1", breakpoints=["B"])
        result = controller.start(result.session.id, "org-1")
        if result.is_paused:
            result = controller.step_over(result.session.id, "org-1")
    """

    def __init__(self, engine: WorkflowEngine, db: Database, settings: Settings | None = None):
        self.engine = engine
        self.db = db
        self.settings = settings or engine.settings
        self._runtimes: dict[str, _SessionRuntime] = {}
        self._runtimes_lock = threading.Lock()

    # --- Runtime and locking ---

    def _existing_runtime(self, session_id: str) -> _SessionRuntime | None:
        with self._runtimes_lock:
            return self._runtimes.get(session_id)

    def _acquire_runtime(self, session_id: str) -> _SessionRuntime:
        with self._runtimes_lock:
            runtime = self._runtimes.get(session_id)
            if runtime is None:
                runtime = _SessionRuntime()
                self._runtimes[session_id] = runtime
            runtime.users += 1
            return runtime

    def _release_runtime(self, session_id: str, runtime: _SessionRuntime) -> None:
        """Forget the runtime once no operation uses it and the session is not paused."""
        with self._runtimes_lock:
            runtime.users -= 1
            if runtime.users > 0 or runtime.paused:
                return
            if self._runtimes.get(session_id) is runtime:
                del self._runtimes[session_id]
            scope, runtime.scope = runtime.scope, None
        if scope is not None:
            scope.release()

    def _drop_runtime(self, session_id: str) -> None:
        """Release session resources once the session is terminal."""
        with self._runtimes_lock:
            runtime = self._runtimes.pop(session_id, None)
            if runtime is None:
                return
            runtime.paused = False
            scope, runtime.scope = runtime.scope, None
        if scope is not None:
            scope.release()

    def close(self) -> None:
        """Release the run scopes of sessions left paused by this controller.

        Paused sessions stay resumable; the next operation opens a new scope.
        """
        with self._runtimes_lock:
            runtimes = list(self._runtimes.values())
            self._runtimes.clear()
        for runtime in runtimes:
            runtime.paused = False
            if runtime.scope is not None:
                runtime.scope.release()
                runtime.scope = None
        if runtimes:
            logger.debug(f"Released {len(runtimes)} debug session runtime(s)")

    @contextmanager
    def _session_lock(self, session_id: str) -> Generator[_SessionRuntime, None, None]:
        """Serialize operations on one session within and across processes."""
        runtime = self._acquire_runtime(session_id)
        try:
            with runtime.lock:
                lock_dir = self.settings.lock_dir
                lock_dir.mkdir(parents=True, exist_ok=True)
                file_lock = FileLock(str(lock_dir / f"{session_id}.lock"), timeout=self.settings.lock_timeout)
                try:
                    file_lock.acquire()
                except FileLockTimeout:
                    raise SessionStateError(
                        f"Debug session '{session_id}' is busy (lock timeout after "
                        f"{self.settings.lock_timeout}s)"
                    )
                try:
                    yield runtime
                finally:
                    file_lock.release()
        finally:
            self._release_runtime(session_id, runtime)

    def _scope(self, session: DebugSession, runtime: _SessionRuntime) -> RunScope:
        if runtime.scope is None:
            runtime.scope = self.engine.create_scope(
                session.organization_id, cancel_event=runtime.cancel_event, mode="debug"
            )
        return runtime.scope

    # --- Persistence helpers ---

    def _save(self, session: DebugSession) -> None:
        session.touch()
        self.db.save_session(session)

    def _event(
        self,
        session: DebugSession,
        event_type: EventType,
        node_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.db.append_event(
            Event(
                session_id=session.id,
                workflow_id=session.workflow_id,
                event_type=event_type,
                node_id=node_id,
                status=session.status.value,
                payload=payload or {},
            )
        )

    def _validate_node_ids(self, workflow: Workflow, node_ids: list[str]) -> None:
        unknown = sorted(set(node_ids) - workflow.node_ids())
        if unknown:
            raise SessionStateError(
                f"Unknown node(s) for workflow '{workflow.id}': {', '.join(unknown)}"
            )

    def _load_graph(self, session: DebugSession) -> tuple[Workflow, ResolvedGraph]:
        workflow = self.db.get_workflow(session.workflow_id, session.organization_id)
        graph = self.engine.resolve_graph(workflow)
        if session.execution_order and graph.order != session.execution_order:
            raise SessionStateError(
                f"Workflow '{workflow.id}' changed since debug session '{session.id}' started"
            )
        return workflow, graph

    # --- Operations ---

    def create_session(
        self,
        workflow_id: str,
        organization_id: str,
        breakpoints: list[str] | None = None,
        trigger_data: Any = None,
    ) -> DebugResult:
        """Allocate an idle session.

        Breakpoints default to the workflow's persisted breakpoint template.

        Raises:
            WorkflowNotFoundError: workflow is not in the organization
            SessionStateError: a breakpoint names an unknown node
        """
        workflow = self.db.get_workflow(workflow_id, organization_id)
        points = workflow.breakpoint_template if breakpoints is None else list(breakpoints)
        self._validate_node_ids(workflow, points)

        session = DebugSession(
            id=uuid.uuid4().hex,
            workflow_id=workflow.id,
            organization_id=organization_id,
            breakpoints=sorted(set(points)),
            trigger_data=trigger_data,
        )
        self.db.save_session(session)
        self._event(session, EventType.SESSION_CREATED, payload={"breakpoints": session.breakpoints})
        logger.info(f"Created debug session {session.id} for workflow '{workflow.id}'")
        return DebugResult(session)

    def start(self, session_id: str, organization_id: str) -> DebugResult:
        """Run from the first node until a breakpoint, completion or failure.

        Raises:
            SessionStateError: session is not idle
            GraphCycleError: workflow graph has a cycle (session stays idle)
        """
        with self._session_lock(session_id) as runtime:
            session = self.db.get_session(session_id, organization_id)
            if session.status != DebugSessionStatus.IDLE:
                raise SessionStateError(
                    f"Cannot start session in status '{session.status.value}' (expected 'idle')"
                )
            workflow, graph = self._load_graph(session)
            self._activate(session, graph)
            self._run(session, workflow, graph, runtime, max_nodes=None, skip_first_breakpoint=False)
            return DebugResult(session)

    def step_over(self, session_id: str, organization_id: str) -> DebugResult:
        """Execute exactly one node, ignoring its breakpoint.

        Valid when paused, or when idle as a bootstrap step.

        Raises:
            SessionStateError: session is active or terminal
            GraphCycleError: bootstrap on a cyclic graph (session stays idle)
        """
        with self._session_lock(session_id) as runtime:
            session = self.db.get_session(session_id, organization_id)
            if session.status not in (DebugSessionStatus.PAUSED, DebugSessionStatus.IDLE):
                raise SessionStateError(
                    f"Cannot step over in status '{session.status.value}' "
                    f"(expected 'paused' or 'idle')"
                )
            workflow, graph = self._load_graph(session)
            if session.status == DebugSessionStatus.IDLE:
                self._activate(session, graph)
            else:
                session.status = DebugSessionStatus.ACTIVE
            self._run(session, workflow, graph, runtime, max_nodes=1, skip_first_breakpoint=True)
            return DebugResult(session)

    def continue_(self, session_id: str, organization_id: str) -> DebugResult:
        """Resume from the paused node until the next breakpoint, completion or failure.

        Raises:
            SessionStateError: session is not paused
        """
        with self._session_lock(session_id) as runtime:
            session = self.db.get_session(session_id, organization_id)
            if session.status != DebugSessionStatus.PAUSED:
                raise SessionStateError(
                    f"Cannot continue in status '{session.status.value}' (expected 'paused')"
                )
            workflow, graph = self._load_graph(session)
            session.status = DebugSessionStatus.ACTIVE
            self._run(session, workflow, graph, runtime, max_nodes=None, skip_first_breakpoint=True)
            return DebugResult(session)

    def terminate(self, session_id: str, organization_id: str) -> DebugResult:
        """Stop the session and release its resources.

        Cancellation is signalled before waiting for the session lock so an
        in-flight node call is interrupted.

        Raises:
            SessionStateError: session is already terminal
        """
        session = self.db.get_session(session_id, organization_id)
        if session.status.is_terminal:
            raise SessionStateError(f"Session already {session.status.value}")

        runtime = self._existing_runtime(session_id)
        if runtime is not None:
            runtime.cancel_event.set()
            if runtime.scope is not None:
                runtime.scope.http.cancel()

        with self._session_lock(session_id):
            session = self.db.get_session(session_id, organization_id)
            if session.status.is_terminal:
                raise SessionStateError(f"Session already {session.status.value}")
            session.status = DebugSessionStatus.TERMINATED
            self._save(session)
            self._event(session, EventType.SESSION_TERMINATED, node_id=session.current_node_id)
        self._drop_runtime(session_id)
        logger.info(f"Terminated debug session {session_id}")
        return DebugResult(session)

    def toggle_breakpoint(
        self,
        node_id: str,
        enabled: bool,
        organization_id: str,
        session_id: str | None = None,
        workflow_id: str | None = None,
    ) -> list[str]:
        """Enable or disable a breakpoint on a session or a workflow template.

        Session breakpoints change in any status and take effect before the
        next node a running or paused session executes. Workflow breakpoints
        seed sessions created later.

        Returns:
            The updated breakpoint list
        """
        if (session_id is None) == (workflow_id is None):
            raise ValueError("Pass exactly one of session_id or workflow_id")

        if workflow_id is not None:
            workflow = self.db.get_workflow(workflow_id, organization_id)
            self._validate_node_ids(workflow, [node_id])
            points = set(workflow.breakpoint_template)
            if enabled:
                points.add(node_id)
            else:
                points.discard(node_id)
            workflow = self.db.set_workflow_breakpoints(workflow_id, organization_id, sorted(points))
            self.db.append_event(
                Event(
                    workflow_id=workflow_id,
                    event_type=EventType.BREAKPOINT_TOGGLED,
                    node_id=node_id,
                    payload={"enabled": enabled},
                )
            )
            return workflow.breakpoint_template

        assert session_id is not None
        session = self.db.get_session(session_id, organization_id)
        workflow = self.db.get_workflow(session.workflow_id, organization_id)
        self._validate_node_ids(workflow, [node_id])

        runtime = self._existing_runtime(session_id)
        if runtime is not None:
            with runtime.breakpoint_lock:
                if runtime.live_breakpoints is not None:
                    # A run is in flight; it persists the live set when it stops
                    if enabled:
                        runtime.live_breakpoints.add(node_id)
                    else:
                        runtime.live_breakpoints.discard(node_id)
                    self._event(session, EventType.BREAKPOINT_TOGGLED, node_id, {"enabled": enabled})
                    return sorted(runtime.live_breakpoints)

        with self._session_lock(session_id):
            session = self.db.get_session(session_id, organization_id)
            session.set_breakpoint(node_id, enabled)
            self._save(session)
            self._event(session, EventType.BREAKPOINT_TOGGLED, node_id, {"enabled": enabled})
            return list(session.breakpoints)

    def get_breakpoints(
        self,
        organization_id: str,
        session_id: str | None = None,
        workflow_id: str | None = None,
    ) -> list[str]:
        if (session_id is None) == (workflow_id is None):
            raise ValueError("Pass exactly one of session_id or workflow_id")
        if workflow_id is not None:
            return self.db.get_workflow(workflow_id, organization_id).breakpoint_template
        assert session_id is not None
        runtime = self._existing_runtime(session_id)
        if runtime is not None:
            with runtime.breakpoint_lock:
                if runtime.live_breakpoints is not None:
                    return sorted(runtime.live_breakpoints)
        return list(self.db.get_session(session_id, organization_id).breakpoints)

    def get_session(self, session_id: str, organization_id: str) -> DebugResult:
        return DebugResult(self.db.get_session(session_id, organization_id))

    def list_sessions(
        self, organization_id: str, workflow_id: str | None = None, limit: int = 10
    ) -> list[DebugSession]:
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        return self.db.list_sessions(organization_id, workflow_id=workflow_id, limit=limit)

    # --- Execution ---

    def _activate(self, session: DebugSession, graph: ResolvedGraph) -> None:
        session.status = DebugSessionStatus.ACTIVE
        session.execution_order = list(graph.order)
        session.cursor = 0
        session.current_node_id = graph.order[0] if graph.order else None
        self._event(session, EventType.SESSION_STARTED, payload={"order": graph.order})

    def _run(
        self,
        session: DebugSession,
        workflow: Workflow,
        graph: ResolvedGraph,
        runtime: _SessionRuntime,
        max_nodes: int | None,
        skip_first_breakpoint: bool,
    ) -> None:
        """Execute nodes from the cursor until a stop condition.

        Stops before a node in the current breakpoint set (except the first
        node when skip_first_breakpoint), after max_nodes nodes, on a halting
        node failure, or when the order is exhausted.
        """
        runtime.paused = False
        with runtime.breakpoint_lock:
            runtime.live_breakpoints = set(session.breakpoints)
        try:
            executed = 0
            order = session.execution_order
            while session.cursor < len(order):
                if runtime.cancel_event.is_set():
                    # terminate() is waiting for the lock and finalizes the session
                    return

                node_id = order[session.cursor]
                with runtime.breakpoint_lock:
                    session.breakpoints = sorted(runtime.live_breakpoints)
                    at_breakpoint = node_id in runtime.live_breakpoints

                if max_nodes is not None and executed >= max_nodes:
                    self._pause(session, node_id)
                    runtime.paused = True
                    return
                if at_breakpoint and not (skip_first_breakpoint and executed == 0):
                    self._pause(session, node_id)
                    runtime.paused = True
                    return

                node = workflow.get_node(node_id)
                assert node is not None
                step = self.engine.run_node(
                    workflow,
                    node,
                    graph,
                    session.node_outputs,
                    session.trigger_data,
                    self._scope(session, runtime),
                )
                self._record(session, node.label, node.type, step)
                executed += 1

                if runtime.cancel_event.is_set():
                    return

                if step.halted:
                    session.status = DebugSessionStatus.FAILED
                    session.error = str(step.error)
                    self._save(session)
                    self._event(
                        session, EventType.SESSION_FAILED, node_id, {"error": session.error}
                    )
                    logger.info(f"Debug session {session.id} failed at node '{node_id}'")
                    self._drop_runtime(session.id)
                    return
                self._save(session)

            session.status = DebugSessionStatus.COMPLETED
            self._save(session)
            self._event(session, EventType.SESSION_COMPLETED, session.current_node_id)
            logger.info(f"Debug session {session.id} completed ({session.executed_count} frames)")
            self._drop_runtime(session.id)
        finally:
            with runtime.breakpoint_lock:
                if runtime.live_breakpoints is not None:
                    session.breakpoints = sorted(runtime.live_breakpoints)
                runtime.live_breakpoints = None
            if not session.status.is_terminal:
                self._save(session)

    def _pause(self, session: DebugSession, node_id: str) -> None:
        session.status = DebugSessionStatus.PAUSED
        session.current_node_id = node_id
        self._save(session)
        self._event(session, EventType.SESSION_PAUSED, node_id)
        logger.debug(f"Debug session {session.id} paused before '{node_id}'")

    def _record(self, session: DebugSession, label: str, node_type: str, step: NodeStep) -> None:
        """Append a frame and store the node's output and result."""
        limit = self.settings.frame_item_limit
        source_location = None
        if step.error is not None:
            location = getattr(step.error.cause, "source_location", None)
            if isinstance(location, SourceLocation):
                source_location = location

        frame = DebugStackFrame(
            index=len(session.call_stack),
            node_id=step.node_id,
            node_label=label,
            node_type=node_type,
            input=truncate_items(step.input, limit),
            output=truncate_items(step.output, limit),
            error=str(step.error) if step.error is not None else None,
            source_location=source_location,
        )
        session.call_stack.append(frame)
        session.node_outputs[step.node_id] = step.output
        session.node_results[step.node_id] = step.result
        session.cursor += 1
        session.current_node_id = step.node_id
        self._event(
            session,
            EventType.NODE_FAILED if step.error is not None else EventType.NODE_EXECUTED,
            step.node_id,
            {"frame": frame.index, "items": step.result.item_count, "error": frame.error},
        )

"""SQLite persistence for workflows, debug sessions and the event log.

Debug sessions are stored as JSON snapshots so a session can be reloaded
between stateless calls. The events table is an append-only audit trail of
session transitions.
"""

import json
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from typeflow.core.errors import SessionNotFoundError, WorkflowNotFoundError
from typeflow.core.models import DebugSession, DebugSessionStatus, Workflow


class EventType(str, Enum):
    """Types of events in the event log."""

    # Session lifecycle
    SESSION_CREATED = "debug_session_created"
    SESSION_STARTED = "debug_session_started"
    SESSION_PAUSED = "debug_paused"
    SESSION_COMPLETED = "debug_completed"
    SESSION_FAILED = "debug_failed"
    SESSION_TERMINATED = "debug_terminated"

    # Node events
    NODE_EXECUTED = "debug_node_executed"
    NODE_FAILED = "debug_node_failed"

    # Breakpoints
    BREAKPOINT_TOGGLED = "breakpoint_toggled"


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Pydantic models, bytes and Path."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, bytes):
            return obj.decode("utf-8", errors="replace")
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Event(BaseModel):
    """Immutable event in the event log."""

    id: int | None = None
    session_id: str | None = None
    workflow_id: str
    event_type: EventType
    node_id: str | None = None
    status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


class Database:
    """SQLite store for workflow snapshots and debug session state."""

    SCHEMA = """
    -- Workflow snapshots (definition stored as JSON)
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        name TEXT NOT NULL,
        definition JSON NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Debug sessions (full session snapshot in state)
    CREATE TABLE IF NOT EXISTS debug_sessions (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        status TEXT CHECK(status IN ('idle', 'active', 'paused', 'completed', 'failed', 'terminated')),
        current_node_id TEXT,
        state JSON NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- Event log (immutable)
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT,  -- NULL for workflow-level events
        workflow_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        node_id TEXT,
        status TEXT,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_workflows_org ON workflows(organization_id);
    CREATE INDEX IF NOT EXISTS idx_sessions_workflow ON debug_sessions(workflow_id, organization_id);
    CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id);
    CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
    """

    def __init__(self, db_path: str | Path = ".typeflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Explicit transaction context for atomic operations."""
        with self._connect() as conn:
            yield conn

    # --- Workflows ---

    def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow snapshot."""
        now = _utc_now().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflows (id, organization_id, name, definition, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    organization_id = excluded.organization_id,
                    name = excluded.name,
                    definition = excluded.definition,
                    updated_at = excluded.updated_at
                """,
                (
                    workflow.id,
                    workflow.organization_id,
                    workflow.name or workflow.id,
                    workflow.model_dump_json(),
                    now,
                    now,
                ),
            )

    def get_workflow(self, workflow_id: str, organization_id: str) -> Workflow:
        """Load a workflow owned by the organization.

        Raises:
            WorkflowNotFoundError: unknown id or owned by another organization
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM workflows WHERE id = ? AND organization_id = ?",
                (workflow_id, organization_id),
            ).fetchone()
        if row is None:
            raise WorkflowNotFoundError(
                f"Workflow '{workflow_id}' not found in organization '{organization_id}'"
            )
        return Workflow.model_validate_json(row["definition"])

    def list_workflows(self, organization_id: str | None = None) -> list[Workflow]:
        with self._connect() as conn:
            if organization_id is None:
                rows = conn.execute("SELECT definition FROM workflows ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT definition FROM workflows WHERE organization_id = ? ORDER BY id",
                    (organization_id,),
                ).fetchall()
        return [Workflow.model_validate_json(row["definition"]) for row in rows]

    def set_workflow_breakpoints(
        self, workflow_id: str, organization_id: str, breakpoints: list[str]
    ) -> Workflow:
        """Persist the breakpoint template used to seed new sessions."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT definition FROM workflows WHERE id = ? AND organization_id = ?",
                (workflow_id, organization_id),
            ).fetchone()
            if row is None:
                raise WorkflowNotFoundError(
                    f"Workflow '{workflow_id}' not found in organization '{organization_id}'"
                )
            workflow = Workflow.model_validate_json(row["definition"])
            workflow.metadata["breakpoints"] = sorted(set(breakpoints))
            conn.execute(
                "UPDATE workflows SET definition = ?, updated_at = ? WHERE id = ?",
                (workflow.model_dump_json(), _utc_now().isoformat(), workflow_id),
            )
        return workflow

    # --- Debug sessions ---

    def save_session(self, session: DebugSession) -> None:
        """Insert or replace a session snapshot."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO debug_sessions (id, workflow_id, organization_id, status,
                                            current_node_id, state, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    current_node_id = excluded.current_node_id,
                    state = excluded.state,
                    updated_at = excluded.updated_at
                """,
                (
                    session.id,
                    session.workflow_id,
                    session.organization_id,
                    session.status.value,
                    session.current_node_id,
                    _safe_json_dumps(session.model_dump(mode="json")),
                    session.created_at.isoformat(),
                    session.updated_at.isoformat(),
                ),
            )

    def get_session(self, session_id: str, organization_id: str) -> DebugSession:
        """Load a session owned by the organization.

        Raises:
            SessionNotFoundError: unknown id or owned by another organization
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT state FROM debug_sessions WHERE id = ? AND organization_id = ?",
                (session_id, organization_id),
            ).fetchone()
        if row is None:
            raise SessionNotFoundError(
                f"Debug session '{session_id}' not found in organization '{organization_id}'"
            )
        return DebugSession.model_validate_json(row["state"])

    def list_sessions(
        self,
        organization_id: str,
        workflow_id: str | None = None,
        status: DebugSessionStatus | None = None,
        limit: int = 10,
    ) -> list[DebugSession]:
        """Most recently updated sessions first."""
        query = "SELECT state FROM debug_sessions WHERE organization_id = ?"
        params: list[Any] = [organization_id]
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY updated_at DESC, id LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [DebugSession.model_validate_json(row["state"]) for row in rows]

    # --- Event log ---

    def append_event(self, event: Event) -> int:
        """Append an event to the log."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events (session_id, workflow_id, event_type, node_id,
                                    status, payload, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.session_id,
                    event.workflow_id,
                    event.event_type.value,
                    event.node_id,
                    event.status,
                    _safe_json_dumps(event.payload),
                    event.timestamp.isoformat(),
                ),
            )
            return cursor.lastrowid  # type: ignore

    def get_events(
        self, session_id: str, event_types: list[EventType] | None = None
    ) -> list[Event]:
        """Get events for a session, optionally filtered by type."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events
                    WHERE session_id = ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [session_id] + [et.value for et in event_types],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE session_id = ? ORDER BY id",
                    (session_id,),
                ).fetchall()

            return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        """Convert database row to Event."""
        return Event(
            id=row["id"],
            session_id=row["session_id"],
            workflow_id=row["workflow_id"],
            event_type=EventType(row["event_type"]),
            node_id=row["node_id"],
            status=row["status"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

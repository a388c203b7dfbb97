"""Tests for SQLite persistence of workflows, sessions and events."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import ORG, chain_workflow, make_node, make_workflow
from typeflow.core.errors import SessionNotFoundError, WorkflowNotFoundError
from typeflow.core.models import DebugSession, DebugSessionStatus, DebugStackFrame
from typeflow.core.state import Database, Event, EventType


def make_session(session_id: str = "s-1", **kwargs) -> DebugSession:
    kwargs.setdefault("workflow_id", "wf-abc")
    kwargs.setdefault("organization_id", ORG)
    return DebugSession(id=session_id, **kwargs)


# =============================================================================
# Workflows
# =============================================================================


class TestWorkflowStore:
    """Tests for workflow snapshots."""

    def test_save_and_get(self, test_db):
        workflow = chain_workflow()
        test_db.save_workflow(workflow)

        loaded = test_db.get_workflow("wf-abc", ORG)
        assert loaded == workflow

    def test_save_replaces(self, test_db):
        test_db.save_workflow(chain_workflow())
        test_db.save_workflow(make_workflow([make_node("X")], workflow_id="wf-abc"))

        assert [n.id for n in test_db.get_workflow("wf-abc", ORG).nodes] == ["X"]

    def test_other_organization_not_visible(self, test_db):
        test_db.save_workflow(chain_workflow())
        with pytest.raises(WorkflowNotFoundError, match="not found in organization 'org-2'"):
            test_db.get_workflow("wf-abc", "org-2")

    def test_list_by_organization(self, test_db):
        test_db.save_workflow(chain_workflow(workflow_id="b"))
        test_db.save_workflow(chain_workflow(workflow_id="a"))
        test_db.save_workflow(chain_workflow(workflow_id="c", organization_id="org-2"))

        assert [w.id for w in test_db.list_workflows(ORG)] == ["a", "b"]
        assert len(test_db.list_workflows()) == 3

    def test_breakpoint_template(self, test_db):
        test_db.save_workflow(chain_workflow())
        updated = test_db.set_workflow_breakpoints("wf-abc", ORG, ["C", "B", "C"])

        assert updated.breakpoint_template == ["B", "C"]
        assert test_db.get_workflow("wf-abc", ORG).breakpoint_template == ["B", "C"]

    def test_breakpoint_template_unknown_workflow(self, test_db):
        with pytest.raises(WorkflowNotFoundError):
            test_db.set_workflow_breakpoints("missing", ORG, ["B"])


# =============================================================================
# Debug Sessions
# =============================================================================


class TestSessionStore:
    """Tests for session snapshots."""

    def test_round_trip_keeps_call_stack(self, test_db):
        frame = DebugStackFrame(
            index=0,
            node_id="A",
            node_label="A",
            node_type="manual",
            input=[],
            output=[{"json": {"id": 1}}],
        )
        session = make_session(
            status=DebugSessionStatus.PAUSED,
            current_node_id="B",
            cursor=1,
            execution_order=["A", "B", "C"],
            call_stack=[frame],
            breakpoints=["B"],
        )
        test_db.save_session(session)

        loaded = test_db.get_session("s-1", ORG)
        assert loaded.status == DebugSessionStatus.PAUSED
        assert loaded.current_node_id == "B"
        assert loaded.call_stack[0].output == [{"json": {"id": 1}}]
        assert loaded.executed_count == 1

    def test_update_in_place(self, test_db):
        session = make_session()
        test_db.save_session(session)
        session.status = DebugSessionStatus.COMPLETED
        test_db.save_session(session)

        assert test_db.get_session("s-1", ORG).status == DebugSessionStatus.COMPLETED
        assert len(test_db.list_sessions(ORG)) == 1

    def test_not_found_for_other_organization(self, test_db):
        test_db.save_session(make_session())
        with pytest.raises(SessionNotFoundError):
            test_db.get_session("s-1", "org-2")

    def test_list_filters_and_orders(self, test_db):
        older = make_session("old")
        newer = make_session("new", status=DebugSessionStatus.PAUSED)
        newer.updated_at = older.updated_at + timedelta(seconds=5)
        other = make_session("other", workflow_id="wf-other")
        for session in (older, newer, other):
            test_db.save_session(session)

        assert [s.id for s in test_db.list_sessions(ORG, workflow_id="wf-abc")] == ["new", "old"]
        paused = test_db.list_sessions(ORG, status=DebugSessionStatus.PAUSED)
        assert [s.id for s in paused] == ["new"]
        assert len(test_db.list_sessions(ORG, limit=1)) == 1

    def test_persists_across_instances(self, tmp_path):
        Database(tmp_path / "state.db").save_session(make_session())
        assert Database(tmp_path / "state.db").get_session("s-1", ORG).id == "s-1"


# =============================================================================
# Event Log
# =============================================================================


class TestEventLog:
    """Tests for the append-only event log."""

    def test_append_and_get(self, test_db):
        event_id = test_db.append_event(
            Event(
                session_id="s-1",
                workflow_id="wf-abc",
                event_type=EventType.NODE_EXECUTED,
                node_id="B",
                payload={"items": 2},
            )
        )

        events = test_db.get_events("s-1")
        assert events[0].id == event_id
        assert events[0].event_type == EventType.NODE_EXECUTED
        assert events[0].payload == {"items": 2}

    def test_filter_by_type(self, test_db):
        for event_type in (EventType.SESSION_CREATED, EventType.SESSION_PAUSED, EventType.SESSION_COMPLETED):
            test_db.append_event(Event(session_id="s-1", workflow_id="wf-abc", event_type=event_type))
        test_db.append_event(Event(session_id="s-2", workflow_id="wf-abc", event_type=EventType.SESSION_PAUSED))

        events = test_db.get_events("s-1", [EventType.SESSION_PAUSED, EventType.SESSION_COMPLETED])
        assert [e.event_type for e in events] == [EventType.SESSION_PAUSED, EventType.SESSION_COMPLETED]

    def test_payload_serializes_models(self, test_db):
        test_db.append_event(
            Event(
                session_id="s-1",
                workflow_id="wf-abc",
                event_type=EventType.BREAKPOINT_TOGGLED,
                payload={"breakpoints": {"B"}, "session": make_session()},
            )
        )

        payload = test_db.get_events("s-1")[0].payload
        assert payload["breakpoints"] == ["B"]
        assert payload["session"]["id"] == "s-1"

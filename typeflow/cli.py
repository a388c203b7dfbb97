"""CLI entry point for Typeflow.

Commands:
- typeflow init: Create the .typeflow state directory
- typeflow nodes: List registered node types
- typeflow workflow import/list: Manage stored workflows
- typeflow run: Execute a workflow in batch mode
- typeflow debug ...: Drive debug sessions step by step
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, field
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from typeflow import __version__
from typeflow.core.config import Settings, load_settings
from typeflow.core.credentials import StaticCredentialProvider
from typeflow.core.debugger import DebugResult, DebugSessionController
from typeflow.core.engine import WorkflowEngine
from typeflow.core.errors import ConfigError, TypeflowError
from typeflow.core.models import DebugSessionStatus, Workflow
from typeflow.core.state import Database
from typeflow.nodes import default_registry

console = Console()

DEFAULT_ORG = "default"

STATUS_COLORS = {
    DebugSessionStatus.IDLE: "white",
    DebugSessionStatus.ACTIVE: "blue",
    DebugSessionStatus.PAUSED: "yellow",
    DebugSessionStatus.COMPLETED: "green",
    DebugSessionStatus.FAILED: "red",
    DebugSessionStatus.TERMINATED: "magenta",
}

DEFAULT_CONFIG = """# Typeflow configuration
# Every key can be overridden with TYPEFLOW_<KEY> environment variables.

log_level: INFO
http_timeout: 30
max_parallel_nodes: 4
max_subworkflow_depth: 10
frame_item_limit: 10
wait_max_seconds: 300
# node_paths: [path/to/declarative/nodes]
"""

DEFAULT_CREDENTIALS = """# Credentials per organization: <org> -> <credential type> -> data
# "kind: sqlite" creates a database handle usable by the database node.
organizations:
  default: {}
#   default:
#     exampleApi:
#       token: changeme
#     warehouse:
#       kind: sqlite
#       database: .typeflow/warehouse.db
"""


@dataclass
class AppContext:
    """Objects shared by commands of one CLI invocation."""

    settings: Settings
    controllers: list[DebugSessionController] = field(default_factory=list)

    def database(self) -> Database:
        self.settings.state_dir.mkdir(parents=True, exist_ok=True)
        return Database(self.settings.database_path)

    def engine(self, db: Database) -> WorkflowEngine:
        return WorkflowEngine(
            default_registry(self.settings),
            store=db,
            credential_provider=StaticCredentialProvider.from_file(self.settings.credentials_file),
            settings=self.settings,
        )

    def controller(self) -> DebugSessionController:
        db = self.database()
        controller = DebugSessionController(self.engine(db), db, self.settings)
        self.controllers.append(controller)
        return controller

    def close(self) -> None:
        """Release resources held by paused sessions before the process exits."""
        for controller in self.controllers:
            controller.close()
        self.controllers.clear()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {escape(message)}")
    sys.exit(1)


def _parse_data(data: str | None) -> Any:
    if data is None:
        return None
    try:
        return json.loads(data)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--data")


def _load_workflow_file(path: str, organization_id: str | None) -> Workflow:
    """Load a workflow from a YAML or JSON file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        _fail(f"Invalid YAML in '{path}': {e}")
    if not isinstance(data, dict):
        _fail(f"Workflow file '{path}' must contain a mapping")
    if organization_id is not None:
        data["organization_id"] = organization_id
    try:
        return Workflow.model_validate(data)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def _render_session(result: DebugResult, show_items: bool = False) -> None:
    session = result.session
    color = STATUS_COLORS.get(session.status, "white")
    lines = [
        f"[bold]Status:[/] [{color}]{session.status.value}[/]",
        f"[bold]Workflow:[/] {escape(session.workflow_id)}",
        f"[bold]Current node:[/] {escape(session.current_node_id or '-')}",
        f"[bold]Executed:[/] {session.executed_count}/{len(session.execution_order) or '-'}",
        f"[bold]Breakpoints:[/] {escape(', '.join(session.breakpoints) or '-')}",
    ]
    if session.error:
        lines.append(f"[bold]Error:[/] [red]{escape(session.error)}[/]")
    console.print(Panel("\n".join(lines), title=f"Debug session {escape(session.id)}"))

    if not result.call_stack:
        return
    table = Table(title="Call Stack")
    table.add_column("#", justify="right")
    table.add_column("Node", style="cyan")
    table.add_column("Type")
    table.add_column("In", justify="right")
    table.add_column("Out", justify="right")
    table.add_column("Error", style="red")
    for frame in result.call_stack:
        error = frame.error or ""
        if frame.source_location is not None:
            error += f" (line {frame.source_location.line})"
        table.add_row(
            str(frame.index),
            escape(frame.node_label),
            escape(frame.node_type),
            str(len(frame.input)),
            str(len(frame.output)),
            escape(error),
        )
    console.print(table)
    if show_items:
        last = result.call_stack[-1]
        console.print(f"\n[bold]Output of {escape(last.node_label)}:[/]")
        _print_json(last.output)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(), help="Config file (default .typeflow/config.yaml)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Typeflow - workflow execution and debug engine."""
    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        _fail(str(e))
    _setup_logging("DEBUG" if verbose else settings.log_level)
    ctx.obj = AppContext(settings)
    # Runs when the command finishes, including after _fail()
    ctx.call_on_close(ctx.obj.close)


@main.command()
@click.pass_obj
def init(app: AppContext) -> None:
    """Initialize the .typeflow state directory."""
    state_dir = app.settings.state_dir
    config_path = state_dir / "config.yaml"
    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    (state_dir / "nodes").mkdir(parents=True, exist_ok=True)
    app.settings.lock_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG)
    if not app.settings.credentials_file.exists():
        app.settings.credentials_file.write_text(DEFAULT_CREDENTIALS)
    app.database()

    console.print(
        Panel(
            f"[green]Initialized Typeflow in {escape(str(state_dir))}[/green]\n\n"
            "Next steps:\n"
            "  1. typeflow workflow import my-workflow.yaml\n"
            "  2. typeflow run <workflow-id>\n"
            "  3. typeflow debug create <workflow-id> -b <node-id>",
            title="Typeflow",
        )
    )


@main.command()
@click.pass_obj
def nodes(app: AppContext) -> None:
    """List registered node types."""
    registry = default_registry(app.settings)
    table = Table(title="Node Types")
    table.add_column("Type", style="cyan")
    table.add_column("Kind")
    table.add_column("Group")
    table.add_column("Description")
    for node_type in registry.all():
        desc = node_type.description
        kind = node_type.kind.value + (" (trigger)" if node_type.trigger else "")
        table.add_row(desc.name, kind, ", ".join(desc.group), escape(desc.description))
    console.print(table)


# --- Workflows ---


@main.group()
def workflow() -> None:
    """Manage stored workflows."""
    pass


@workflow.command("import")
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--org", "organization_id", help="Override the workflow's organization")
@click.pass_obj
def workflow_import(app: AppContext, workflow_file: str, organization_id: str | None) -> None:
    """Validate a YAML/JSON workflow file and store it."""
    wf = _load_workflow_file(workflow_file, organization_id)
    db = app.database()
    try:
        graph = app.engine(db).resolve_graph(wf)
    except TypeflowError as e:
        _fail(str(e))
    db.save_workflow(wf)
    console.print(f"[green]Imported workflow[/green] {escape(wf.id)} ({len(wf.nodes)} nodes)")
    console.print(f"  Order: {escape(' -> '.join(graph.order))}")


@workflow.command("list")
@click.option("--org", "organization_id", help="Only workflows of this organization")
@click.pass_obj
def workflow_list(app: AppContext, organization_id: str | None) -> None:
    """List stored workflows."""
    workflows = app.database().list_workflows(organization_id)
    if not workflows:
        console.print("[yellow]No workflows stored[/yellow]")
        return
    table = Table(title="Workflows")
    table.add_column("ID", style="cyan")
    table.add_column("Organization")
    table.add_column("Name")
    table.add_column("Nodes", justify="right")
    table.add_column("Breakpoints")
    for wf in workflows:
        table.add_row(
            escape(wf.id),
            escape(wf.organization_id),
            escape(wf.name),
            str(len(wf.nodes)),
            escape(", ".join(wf.breakpoint_template)),
        )
    console.print(table)


@main.command()
@click.argument("workflow_id")
@click.option("--data", help="Trigger payload as JSON")
@click.option("--org", "organization_id", default=DEFAULT_ORG, show_default=True)
@click.pass_obj
def run(app: AppContext, workflow_id: str, data: str | None, organization_id: str) -> None:
    """Execute a workflow in batch mode and print its output."""
    trigger_data = _parse_data(data)
    db = app.database()
    try:
        result = app.engine(db).run_workflow_by_id(workflow_id, organization_id, trigger_data)
    except TypeflowError as e:
        _fail(str(e))

    table = Table(title=f"Workflow {escape(workflow_id)}")
    table.add_column("Node", style="cyan")
    table.add_column("Status")
    table.add_column("Items", justify="right")
    table.add_column("ms", justify="right")
    for node_id in result.order:
        node_result = result.node_results.get(node_id)
        if node_result is None:
            table.add_row(escape(node_id), "[dim]skipped[/dim]", "-", "-")
            continue
        color = "green" if node_result.status.value == "success" else "red"
        table.add_row(
            escape(node_id),
            f"[{color}]{node_result.status.value}[/]",
            str(node_result.item_count),
            f"{node_result.duration_ms:.1f}",
        )
    console.print(table)

    if not result.success:
        failed = f" at node '{result.failed_node_id}'" if result.failed_node_id else ""
        _fail(f"Workflow failed{failed}: {result.error}")
    console.print(Panel("[green]Workflow completed[/green]", title="Status"))
    _print_json(result.output)


# --- Debugging ---


@main.group()
def debug() -> None:
    """Drive debug sessions."""
    pass


def _run_debug(operation) -> DebugResult:
    try:
        return operation()
    except TypeflowError as e:
        _fail(str(e))


@debug.command("create")
@click.argument("workflow_id")
@click.option("--breakpoint", "-b", "breakpoints", multiple=True, help="Node id to pause before")
@click.option("--data", help="Trigger payload as JSON")
@click.option("--org", "organization_id", default=DEFAULT_ORG, show_default=True)
@click.pass_obj
def debug_create(
    app: AppContext, workflow_id: str, breakpoints: tuple[str, ...], data: str | None, organization_id: str
) -> None:
    """Create an idle debug session."""
    controller = app.controller()
    result = _run_debug(
        lambda: controller.create_session(
            workflow_id,
            organization_id,
            breakpoints=list(breakpoints) if breakpoints else None,
            trigger_data=_parse_data(data),
        )
    )
    console.print(f"[green]Created session[/green] {result.session.id}")
    _render_session(result)


@debug.command("start")
@click.argument("session_id")
@click.option("--org", "organization_id", default=DEFAULT_ORG, show_default=True)
@click.pass_obj
def debug_start(app: AppContext, session_id: str, organization_id: str) -> None:
    """Run until the first breakpoint, completion or failure."""
    controller = app.controller()
    _render_session(_run_debug(lambda: controller.start(session_id, organization_id)))


@debug.command("step")
@click.argument("session_id")
@click.option("--org", "organization_id", default=DEFAULT_ORG, show_default=True)
@click.pass_obj
def debug_step(app: AppContext, session_id: str, organization_id: str) -> None:
    """Execute exactly one node."""
    controller = app.controller()
    _render_session(_run_debug(lambda: controller.step_over(session_id, organization_id)), show_items=True)


@debug.command("continue")
@click.argument("session_id")
@click.option("--org", "organization_id", default=DEFAULT_ORG, show_default=True)
@click.pass_obj
def debug_continue(app: AppContext, session_id: str, organization_id: str) -> None:
    """Resume until the next breakpoint, completion or failure."""
    controller = app.controller()
    _render_session(_run_debug(lambda: controller.continue_(session_id, organization_id)))


@debug.command("terminate")
@click.argument("session_id")
@click.option("--org", "organization_id", default=DEFAULT_ORG, show_default=True)
@click.pass_obj
def debug_terminate(app: AppContext, session_id: str, organization_id: str) -> None:
    """Stop a session and release its resources."""
    controller = app.controller()
    _render_session(_run_debug(lambda: controller.terminate(session_id, organization_id)))


@debug.command("breakpoint")
@click.argument("node_id")
@click.option("--session", "session_id", help="Session to change")
@click.option("--workflow", "workflow_id", help="Workflow template to change")
@click.option("--enable/--disable", default=True, help="Set or clear the breakpoint")
@click.option("--org", "organization_id", default=DEFAULT_ORG, show_default=True)
@click.pass_obj
def debug_breakpoint(
    app: AppContext,
    node_id: str,
    session_id: str | None,
    workflow_id: str | None,
    enable: bool,
    organization_id: str,
) -> None:
    """Toggle a breakpoint on a session or a workflow."""
    if (session_id is None) == (workflow_id is None):
        raise click.UsageError("Pass exactly one of --session or --workflow")
    controller = app.controller()
    points = _run_debug(
        lambda: controller.toggle_breakpoint(
            node_id, enable, organization_id, session_id=session_id, workflow_id=workflow_id
        )
    )
    state = "enabled" if enable else "disabled"
    console.print(f"Breakpoint on {escape(node_id)} {state}")
    console.print(f"  Breakpoints: {escape(', '.join(points) or '-')}")


@debug.command("breakpoints")
@click.option("--session", "session_id", help="Session to inspect")
@click.option("--workflow", "workflow_id", help="Workflow template to inspect")
@click.option("--org", "organization_id", default=DEFAULT_ORG, show_default=True)
@click.pass_obj
def debug_breakpoints(app: AppContext, session_id: str | None, workflow_id: str | None, organization_id: str) -> None:
    """Show the breakpoints of a session or a workflow."""
    if (session_id is None) == (workflow_id is None):
        raise click.UsageError("Pass exactly one of --session or --workflow")
    controller = app.controller()
    points = _run_debug(
        lambda: controller.get_breakpoints(organization_id, session_id=session_id, workflow_id=workflow_id)
    )
    if not points:
        console.print("[yellow]No breakpoints[/yellow]")
        return
    for node_id in points:
        console.print(f"  - {escape(node_id)}")


@debug.command("show")
@click.argument("session_id")
@click.option("--org", "organization_id", default=DEFAULT_ORG, show_default=True)
@click.option("--items", "show_items", is_flag=True, help="Print the last frame's output items")
@click.pass_obj
def debug_show(app: AppContext, session_id: str, organization_id: str, show_items: bool) -> None:
    """Show a session and its call stack."""
    controller = app.controller()
    _render_session(_run_debug(lambda: controller.get_session(session_id, organization_id)), show_items)


@debug.command("sessions")
@click.option("--workflow", "workflow_id", help="Only sessions of this workflow")
@click.option("--limit", default=10, show_default=True, help="Maximum sessions (at most 50)")
@click.option("--org", "organization_id", default=DEFAULT_ORG, show_default=True)
@click.pass_obj
def debug_sessions(app: AppContext, workflow_id: str | None, limit: int, organization_id: str) -> None:
    """List recent debug sessions."""
    sessions = app.controller().list_sessions(organization_id, workflow_id=workflow_id, limit=limit)
    if not sessions:
        console.print("[yellow]No debug sessions[/yellow]")
        return
    table = Table(title="Debug Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Workflow")
    table.add_column("Status")
    table.add_column("Node")
    table.add_column("Frames", justify="right")
    table.add_column("Updated")
    for session in sessions:
        color = STATUS_COLORS.get(session.status, "white")
        table.add_row(
            session.id,
            escape(session.workflow_id),
            f"[{color}]{session.status.value}[/]",
            escape(session.current_node_id or "-"),
            str(session.executed_count),
            session.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


if __name__ == "__main__":
    main()

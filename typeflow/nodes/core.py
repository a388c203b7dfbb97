"""Core nodes: triggers, pass-through, errors, waits and code."""

from __future__ import annotations

import logging
import math
import operator
import re
import textwrap
from datetime import UTC, datetime, timedelta
from typing import Any

from RestrictedPython import compile_restricted_exec, limited_builtins, safe_builtins, utility_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

from typeflow.core.errors import CodeExecutionError, NodeOperationError
from typeflow.core.items import ExecutionItem, make_item
from typeflow.core.models import SourceLocation
from typeflow.core.registry import NodeParameter, NodeParameterOption, NodeType, NodeTypeDescription

logger = logging.getLogger(__name__)

CODE_FILE_NAME = "<code>"
_CODE_FUNCTION = "run_code"
_WRAPPER_LINES = 1
_COMPILE_LINE_RE = re.compile(r"^Line (\d+)")


# --- Triggers and pass-through ---


def passthrough(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    return items


def _simple(name: str, display_name: str, description: str, group: str, trigger: bool = False) -> NodeType:
    return NodeType(
        description=NodeTypeDescription(
            name=name,
            display_name=display_name,
            group=[group],
            description=description,
            inputs=[] if trigger else ["main"],
        ),
        execute=passthrough,
        trigger=trigger,
    )


# --- Throw Error ---


def throw_error(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    message = params.get("error_message", 0)
    raise NodeOperationError(str(message) if message not in (None, "") else "An error occurred")


THROW_ERROR = NodeType(
    description=NodeTypeDescription(
        name="throwError",
        display_name="Throw Error",
        group=["control"],
        description="Fails the workflow with a custom message",
        parameters=[
            NodeParameter(
                name="error_message",
                display_name="Error Message",
                default="An error occurred",
                item_independent=True,
            )
        ],
    ),
    execute=throw_error,
)


# --- Wait ---

_WAIT_UNITS = {"seconds": 1, "minutes": 60, "hours": 3600}


def wait_node(max_seconds: float) -> NodeType:
    """Build the wait node with its upper bound on sleep time."""

    def wait(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
        amount = float(params.get("amount", 0, 1) or 0)
        unit = params.get("unit", 0, "seconds")
        if unit not in _WAIT_UNITS:
            raise NodeOperationError(f"Unknown wait unit '{unit}'")
        seconds = min(max(amount * _WAIT_UNITS[unit], 0.0), max_seconds)
        logger.debug(f"Node '{ctx.node.label}' waiting {seconds}s")
        ctx.sleep(seconds)
        return items

    return NodeType(
        description=NodeTypeDescription(
            name="wait",
            display_name="Wait",
            group=["control"],
            description=f"Pauses execution (at most {max_seconds:g}s)",
            parameters=[
                NodeParameter(name="amount", type="number", default=1, item_independent=True),
                NodeParameter(
                    name="unit",
                    type="options",
                    default="seconds",
                    item_independent=True,
                    options=[NodeParameterOption(name=u.title(), value=u) for u in _WAIT_UNITS],
                ),
            ],
        ),
        execute=wait,
    )


# --- Code ---

_INPLACE_OPS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "|=": operator.ior,
    "&=": operator.iand,
    "^=": operator.ixor,
}


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    try:
        return _INPLACE_OPS[op](x, y)
    except KeyError:
        raise SyntaxError(f"Operator '{op}' is not allowed")


class _LoggingPrintCollector(PrintCollector):
    """Routes print() output of code snippets to the logger."""

    def write(self, text: str) -> None:
        super().write(text)
        if text.strip():
            logger.info(f"[code] {text.rstrip()}")


def _builtins() -> dict[str, Any]:
    allowed = dict(safe_builtins)
    allowed.update(limited_builtins)
    allowed.update(utility_builtins)
    allowed.update(
        {
            "dict": dict,
            "list": list,
            "enumerate": enumerate,
            "filter": filter,
            "map": map,
            "min": min,
            "max": max,
            "sum": sum,
            "any": any,
            "all": all,
            "reversed": reversed,
        }
    )
    return allowed


def _source_line(code: str, line: int | None) -> str | None:
    lines = code.splitlines()
    if line is None or not 1 <= line <= len(lines):
        return None
    return lines[line - 1].strip()


def compile_snippet(code: str) -> Any:
    """Compile a snippet as the body of a function so it may use return.

    Raises:
        CodeExecutionError: compile errors, with the offending line
    """
    wrapped = f"def {_CODE_FUNCTION}():\n{textwrap.indent(code, '    ') or '    pass'}\n"
    result = compile_restricted_exec(wrapped, filename=CODE_FILE_NAME)
    if result.errors:
        message = result.errors[0]
        match = _COMPILE_LINE_RE.match(message)
        line = int(match.group(1)) - _WRAPPER_LINES if match else None
        location = (
            SourceLocation(line=line, code=_source_line(code, line), file_name=CODE_FILE_NAME)
            if line is not None
            else None
        )
        raise CodeExecutionError(f"Code compilation failed: {'; '.join(result.errors)}", location)
    return result.code


def run_snippet(code: str, variables: dict[str, Any]) -> Any:
    """Run a compiled snippet with the given globals and return its result.

    Raises:
        CodeExecutionError: any exception raised by the snippet, carrying
            the snippet line where it was raised
    """
    byte_code = compile_snippet(code)
    namespace: dict[str, Any] = {
        "__builtins__": _builtins(),
        "__name__": "typeflow_code",
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_print_": _LoggingPrintCollector,
        "math": math,
        "datetime": datetime,
        "timedelta": timedelta,
        "UTC": UTC,
    }
    namespace.update(variables)
    exec(byte_code, namespace)
    try:
        return namespace[_CODE_FUNCTION]()
    except Exception as e:
        line = None
        tb = e.__traceback__
        while tb is not None:
            if tb.tb_frame.f_code.co_filename == CODE_FILE_NAME:
                line = tb.tb_lineno - _WRAPPER_LINES
            tb = tb.tb_next
        location = None
        if line is not None:
            location = SourceLocation(line=line, code=_source_line(code, line), file_name=CODE_FILE_NAME)
        raise CodeExecutionError(f"{type(e).__name__}: {e}", location) from e


def _code_result(result: Any) -> list[ExecutionItem]:
    if result is None:
        return [make_item({"value": None})]
    if isinstance(result, (list, tuple)):
        return [v if isinstance(v, dict) and "json" in v else make_item(v) for v in result]
    return [make_item(result)]


def code(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    """Run a Python snippet once for all items, or once per item.

    Snippet globals: items, json (first item's json, or the current item's
    in per-item mode), item and index (per-item mode), nodes (label ->
    {"json", "items"}) and workflow.
    """
    source = params.raw("code", "") or ""
    if not source.strip():
        return items
    mode = params.get("mode", 0, "all")
    nodes = {
        label: {"json": out[0].get("json", {}) if out else {}, "items": out}
        for label, out in params.prior_outputs.items()
    }
    base = {"items": items, "nodes": nodes, "workflow": ctx.get_workflow()}

    if mode == "each":
        output: list[ExecutionItem] = []
        for index, item in enumerate(items):
            ctx.check_cancelled()
            result = run_snippet(source, {**base, "item": item, "json": item.get("json", {}), "index": index})
            for produced in _code_result(result):
                produced.setdefault("pairedItem", {"item": index})
                output.append(produced)
        return output

    first = items[0].get("json", {}) if items else {}
    return _code_result(run_snippet(source, {**base, "json": first}))


CODE = NodeType(
    description=NodeTypeDescription(
        name="code",
        display_name="Code",
        group=["transform"],
        description="Runs a restricted Python snippet",
        parameters=[
            NodeParameter(name="code", type="code", default="return items"),
            NodeParameter(
                name="mode",
                type="options",
                default="all",
                item_independent=True,
                options=[
                    NodeParameterOption(name="Run Once for All Items", value="all"),
                    NodeParameterOption(name="Run Once for Each Item", value="each"),
                ],
            ),
        ],
    ),
    execute=code,
)


def core_node_types(wait_max_seconds: float = 300.0) -> list[NodeType]:
    return [
        _simple("manual", "Manual Trigger", "Starts the workflow manually", "trigger", trigger=True),
        _simple("trigger", "Trigger", "Starts the workflow with the trigger payload", "trigger", trigger=True),
        _simple("webhook", "Webhook", "Starts the workflow from a webhook payload", "trigger", trigger=True),
        _simple("workflowInput", "Workflow Input", "Receives items from a parent workflow", "trigger", trigger=True),
        _simple("workflowOutput", "Workflow Output", "Marks the items returned to a parent workflow", "flow"),
        _simple("noOp", "No Operation", "Passes items through unchanged", "flow"),
        THROW_ERROR,
        wait_node(wait_max_seconds),
        CODE,
    ]

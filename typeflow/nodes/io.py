"""Nodes that talk to the outside world: HTTP, databases and other workflows."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from typeflow.core.errors import NodeOperationError
from typeflow.core.items import ExecutionItem, get_path, make_item
from typeflow.core.registry import NodeParameter, NodeParameterOption, NodeType, NodeTypeDescription
from typeflow.core.subworkflow import MODES

logger = logging.getLogger(__name__)

_JSON_PLACEHOLDER_RE = re.compile(r"\{\{\s*\$json\.([A-Za-z0-9_.\[\]]+)\s*\}\}")


def _mapping(value: Any, name: str) -> dict[str, Any]:
    """Accept a dict or a JSON object string."""
    if value in (None, ""):
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise NodeOperationError(f"'{name}' is not valid JSON: {e}")
    if not isinstance(value, dict):
        raise NodeOperationError(f"'{name}' must be an object")
    return value


def _response_items(body: Any, index: int) -> list[ExecutionItem]:
    if isinstance(body, list):
        return [make_item(element, paired_item={"item": index}) for element in body]
    if isinstance(body, dict):
        return [make_item(body, paired_item={"item": index})]
    return [make_item({"data": body}, paired_item={"item": index})]


# --- HTTP Request ---


def http_request(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    """Send one request per input item through the run's HTTP helper."""
    output: list[ExecutionItem] = []
    for index in range(len(items)):
        ctx.check_cancelled()
        options = {
            "method": params.get("method", index, "GET"),
            "url": params.get("url", index),
            "headers": _mapping(params.get("headers", index), "headers"),
            "qs": _mapping(params.get("qs", index), "qs"),
            "body": params.get("body", index),
            "timeout": params.get("timeout", index),
            "return_full_response": bool(params.get("full_response", index, False)),
            "ignore_http_status_errors": bool(params.get("ignore_http_status_errors", index, False)),
        }
        if isinstance(options["body"], str):
            # Text that is not JSON goes out unchanged
            options["raw_body"] = True
            if params.get("json_body", index, True):
                try:
                    options["body"] = json.loads(options["body"]) if options["body"].strip() else None
                    options["raw_body"] = False
                except json.JSONDecodeError:
                    pass

        credential_type = params.get("authentication", index)
        if credential_type:
            body = ctx.helpers.request_with_authentication(credential_type, options)
        else:
            body = ctx.helpers.request(options)
        output.extend(_response_items(body, index))
    return output


HTTP_REQUEST = NodeType(
    description=NodeTypeDescription(
        name="httpRequest",
        display_name="HTTP Request",
        group=["input", "output"],
        description="Makes an HTTP request",
        parameters=[
            NodeParameter(
                name="method",
                type="options",
                default="GET",
                options=[
                    NodeParameterOption(name=m, value=m)
                    for m in ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD")
                ],
            ),
            NodeParameter(name="url", required=True),
            NodeParameter(name="headers", type="json", default={}),
            NodeParameter(name="qs", type="json", default={}),
            NodeParameter(name="body", type="json"),
            NodeParameter(name="json_body", type="boolean", default=True),
            NodeParameter(name="timeout", type="number"),
            NodeParameter(name="authentication", description="Credential type used to authenticate"),
            NodeParameter(name="full_response", type="boolean", default=False),
            NodeParameter(name="ignore_http_status_errors", type="boolean", default=False),
        ],
    ),
    execute=http_request,
)


# --- Database ---


def bind_placeholders(query: str, item: ExecutionItem) -> tuple[str, list[Any]]:
    """Turn {{ $json.path }} placeholders into "?" bound parameters.

    Values never enter the SQL text, so item data cannot inject SQL.
    """
    values: list[Any] = []

    def bind(match: re.Match) -> str:
        value = get_path(item.get("json", {}), match.group(1))
        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        values.append(value)
        return "?"

    return _JSON_PLACEHOLDER_RE.sub(bind, query), values


def database(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    """Run a query through a connected credential handle.

    With execute_once (default) the query runs once against the first
    item; otherwise once per item. Row results become items; other
    statements give {row_count, success}.
    """
    credential_type = params.get("credential", 0)
    if not credential_type:
        raise NodeOperationError("No credential configured for database node")
    query = params.raw("query", "")
    if not query or not str(query).strip():
        raise NodeOperationError("Database node requires a query")

    handle = ctx.get_credential_handle(credential_type)
    targets = items[:1] if params.get("execute_once", 0, True) else items
    output: list[ExecutionItem] = []
    for index, item in enumerate(targets or [make_item({})]):
        ctx.check_cancelled()
        sql, values = bind_placeholders(str(query), item)
        logger.debug(f"Database node '{ctx.node.label}' running query with {len(values)} parameters")
        result = handle.query(sql, values)
        if isinstance(result, list):
            output.extend(make_item(row, paired_item={"item": index}) for row in result)
        else:
            row_count = result.get("row_count", 0) if isinstance(result, dict) else result
            output.append(make_item({"row_count": row_count, "success": True}, paired_item={"item": index}))
    return output


DATABASE = NodeType(
    description=NodeTypeDescription(
        name="database",
        display_name="Database",
        group=["input", "output"],
        description="Runs a SQL query using a database credential",
        parameters=[
            NodeParameter(name="credential", required=True, item_independent=True),
            NodeParameter(name="query", type="code", required=True),
            NodeParameter(name="execute_once", type="boolean", default=True, item_independent=True),
        ],
    ),
    execute=database,
)


# --- Execute Workflow ---


def execute_workflow(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    workflow_id = params.get("workflow_id", 0)
    mode = params.get("mode", 0, "once")
    if mode not in MODES:
        raise NodeOperationError(f"Unknown subworkflow mode '{mode}' (expected one of {', '.join(MODES)})")
    return ctx.execute_workflow(str(workflow_id), mode=mode, items=items)


EXECUTE_WORKFLOW = NodeType(
    description=NodeTypeDescription(
        name="executeWorkflow",
        display_name="Execute Workflow",
        group=["flow"],
        description="Runs another workflow once for all items or once per item",
        parameters=[
            NodeParameter(name="workflow_id", required=True, item_independent=True),
            NodeParameter(
                name="mode",
                type="options",
                default="once",
                item_independent=True,
                options=[NodeParameterOption(name=m, value=m) for m in MODES],
            ),
        ],
    ),
    execute=execute_workflow,
)


def io_node_types() -> list[NodeType]:
    return [HTTP_REQUEST, DATABASE, EXECUTE_WORKFLOW]

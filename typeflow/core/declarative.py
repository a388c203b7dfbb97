"""Declarative (routing-only) node execution.

A declarative node type has no code. Its description carries
request_defaults and, per parameter (or per selected option), routing
that says where the parameter's value goes in the HTTP request:

    routing:
      request: {method: POST, url: "=/users/{{ $value }}"}
      send: {type: body, property: user.name}
      output: {property: data}

One request is made per input item.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from typeflow.core.context import ExecutionContext
from typeflow.core.expressions import ExpressionResolver
from typeflow.core.items import ExecutionItem, get_path, make_item, set_path
from typeflow.core.registry import NodeParameter

logger = logging.getLogger(__name__)


class DeclarativeExecutor:
    """Builds and performs routing-described requests."""

    def __init__(self, resolver: ExpressionResolver | None = None):
        self.resolver = resolver or ExpressionResolver()

    def execute(self, ctx: ExecutionContext) -> list[ExecutionItem]:
        description = ctx.node_type.description
        credential_type = description.credentials[0] if description.credentials else None

        output: list[ExecutionItem] = []
        for index, item in enumerate(ctx.items):
            ctx.check_cancelled()
            options = self.build_request(ctx, index, item)
            output_property = options.pop("_output_property", None)
            logger.debug(
                f"Node '{ctx.node.label}' item {index}: {options['method']} {options['url']}"
            )
            if credential_type:
                response = ctx.helpers.request_with_authentication(credential_type, options)
            else:
                response = ctx.helpers.request(options)
            output.extend(self._to_items(response, output_property, index))
        return output

    def build_request(
        self, ctx: ExecutionContext, index: int, item: ExecutionItem
    ) -> dict[str, Any]:
        """Assemble request options for one item."""
        defaults = copy.deepcopy(ctx.node_type.description.request_defaults)
        options: dict[str, Any] = {
            "base_url": defaults.pop("base_url", None),
            "url": defaults.pop("url", ""),
            "method": defaults.pop("method", "GET"),
            "headers": defaults.pop("headers", {}) or {},
            "qs": defaults.pop("qs", {}) or {},
            "body": None,
        }
        if "timeout" in defaults:
            options["timeout"] = defaults.pop("timeout")

        raw_parameters = {
            p.name: ctx.params.get(p.name, index) for p in ctx.node_type.description.parameters
        }
        for param in ctx.node_type.description.parameters:
            value = raw_parameters[param.name]
            for routing in self._routings(param, value):
                self._apply_routing(routing, value, options, ctx, item, index, raw_parameters)

        # Expressions in the request defaults see the item and parameters
        context = self.resolver.build_context(
            item, ctx.params.prior_outputs, index, ctx.items, raw_parameters
        )
        for key in ("url", "base_url", "headers", "qs"):
            options[key] = self.resolver.resolve_value(options[key], context)
        return options

    def _routings(self, param: NodeParameter, value: Any) -> list[dict[str, Any]]:
        routings = []
        if param.routing and value is not None:
            routings.append(param.routing)
        for option in param.options:
            if option.routing and option.value == value:
                routings.append(option.routing)
        return routings

    def _apply_routing(
        self,
        routing: dict[str, Any],
        value: Any,
        options: dict[str, Any],
        ctx: ExecutionContext,
        item: ExecutionItem,
        index: int,
        parameters: dict[str, Any],
    ) -> None:
        context = self.resolver.build_context(
            item, ctx.params.prior_outputs, index, ctx.items, parameters, value=value
        )
        request = routing.get("request") or {}
        for key in ("method", "url"):
            if key in request:
                options[key] = self.resolver.resolve_value(request[key], context)
        for key in ("headers", "qs"):
            if key in request:
                options[key].update(self.resolver.resolve_value(request[key], context))
        if "body" in request:
            body = self.resolver.resolve_value(request["body"], context)
            if isinstance(body, dict) and isinstance(options["body"], dict):
                options["body"].update(body)
            else:
                options["body"] = body

        send = routing.get("send")
        if send:
            send_value = value
            if "value" in send:
                send_value = self.resolver.resolve_value(send["value"], context)
            prop = send.get("property")
            target = send.get("type", "body")
            if prop:
                if target == "query":
                    options["qs"][prop] = send_value
                elif target == "header":
                    options["headers"][prop] = send_value
                else:
                    if not isinstance(options["body"], dict):
                        options["body"] = {}
                    set_path(options["body"], prop, send_value)

        output = routing.get("output") or {}
        if output.get("property"):
            options["_output_property"] = output["property"]

    def _to_items(self, response: Any, output_property: str | None, index: int) -> list[ExecutionItem]:
        if output_property:
            response = get_path(response, output_property)
        values = response if isinstance(response, list) else [response]
        return [make_item(value, paired_item={"item": index}) for value in values]

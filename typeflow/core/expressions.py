"""Expression and parameter resolution.

Node config values are literals or expressions. Supported forms:

- "=<expr>" or "=<text with {{ expr }}>": explicit expression
- "text {{ expr }} text": template; a value that is exactly one
  "{{ expr }}" keeps the native result type
- "$json.a.b" / '$node["Label"].json.x': bare reference

Expressions are evaluated by a sandboxed jinja2 environment after the
"$" variables are rewritten to plain identifiers. Missing references
resolve to None instead of raising.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from jinja2 import ChainableUndefined
from jinja2.exceptions import SecurityError, TemplateSyntaxError, UndefinedError
from jinja2.sandbox import SandboxedEnvironment

from typeflow.core.errors import ParameterResolutionError
from typeflow.core.items import ExecutionItem
from typeflow.core.models import Node
from typeflow.core.registry import NodeParameter

_VARIABLES = ("json", "binary", "node", "items", "itemIndex", "parameter", "value", "workflow", "now")
_VARIABLE_RE = re.compile(r"\$(" + "|".join(_VARIABLES) + r")\b")
_TEMPLATE_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_BARE_REFERENCE_RE = re.compile(
    r"^\$(json|binary|node|items|parameter|itemIndex)"
    r"(\.[A-Za-z_][A-Za-z0-9_]*|\[\s*(\d+|\"[^\"]*\"|'[^']*')\s*\])*$"
)
_PREFIX = "tf_"

_MISSING = object()


class _ExpressionEnvironment(SandboxedEnvironment):
    """Sandbox where attribute access on dicts means key lookup.

    Without this, "$json.items" would return dict.items instead of the
    "items" field.
    """

    def getattr(self, obj: Any, attribute: str) -> Any:
        if isinstance(obj, Mapping):
            if attribute in obj:
                return obj[attribute]
            return self.undefined(obj=obj, name=attribute)
        return super().getattr(obj, attribute)


def is_expression(value: Any) -> bool:
    """True when a config value needs resolution."""
    if not isinstance(value, str):
        return False
    return value.startswith("=") or "{{" in value or bool(_BARE_REFERENCE_RE.match(value.strip()))


def _node_view(items: list[ExecutionItem]) -> dict[str, Any]:
    first = items[0] if items else {}
    return {
        "json": first.get("json", {}),
        "binary": first.get("binary", {}),
        "items": items,
        "first": first,
    }


class ExpressionResolver:
    """Resolves expression-valued config against one item and prior outputs."""

    def __init__(self) -> None:
        self._env = _ExpressionEnvironment(undefined=ChainableUndefined)
        self._compiled: dict[str, Any] = {}

    def build_context(
        self,
        item: ExecutionItem | None,
        prior_outputs: Mapping[str, list[ExecutionItem]] | None = None,
        item_index: int = 0,
        items: list[ExecutionItem] | None = None,
        parameters: Mapping[str, Any] | None = None,
        value: Any = None,
        workflow: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        item = item or {}
        nodes = {label: _node_view(out) for label, out in (prior_outputs or {}).items()}
        return {
            f"{_PREFIX}json": item.get("json", {}),
            f"{_PREFIX}binary": item.get("binary", {}),
            f"{_PREFIX}node": nodes,
            f"{_PREFIX}items": items or [],
            f"{_PREFIX}itemIndex": item_index,
            f"{_PREFIX}parameter": dict(parameters or {}),
            f"{_PREFIX}value": value,
            f"{_PREFIX}workflow": dict(workflow or {}),
            f"{_PREFIX}now": datetime.now(UTC),
        }

    def resolve(
        self,
        config: Any,
        item: ExecutionItem | None,
        prior_outputs: Mapping[str, list[ExecutionItem]] | None = None,
        item_index: int = 0,
        items: list[ExecutionItem] | None = None,
        parameters: Mapping[str, Any] | None = None,
        value: Any = None,
        workflow: Mapping[str, Any] | None = None,
    ) -> Any:
        """Resolve every expression inside config (dicts and lists walked recursively)."""
        context = self.build_context(
            item, prior_outputs, item_index, items, parameters, value, workflow
        )
        return self.resolve_value(config, context)

    def resolve_value(self, value: Any, context: dict[str, Any]) -> Any:
        if isinstance(value, dict):
            return {k: self.resolve_value(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v, context) for v in value]
        if not is_expression(value):
            return value

        text = value[1:] if value.startswith("=") else value
        stripped = text.strip()
        segments = list(_TEMPLATE_RE.finditer(text))

        if not segments:
            if value.startswith("=") or _BARE_REFERENCE_RE.match(stripped):
                return self.evaluate(stripped, context)
            return text

        # A single "{{ expr }}" with no surrounding text keeps its native type
        if len(segments) == 1 and segments[0].group(0) == stripped:
            return self.evaluate(segments[0].group(1), context)

        def render(match: re.Match) -> str:
            result = self.evaluate(match.group(1), context)
            return "" if result is None else str(result)

        return _TEMPLATE_RE.sub(render, text)

    def evaluate(self, expression: str, context: dict[str, Any]) -> Any:
        """Evaluate one expression. Undefined references give None."""
        source = _VARIABLE_RE.sub(lambda m: _PREFIX + m.group(1), expression.strip())
        if not source:
            return None
        try:
            compiled = self._compiled.get(source)
            if compiled is None:
                compiled = self._env.compile_expression(source, undefined_to_none=True)
                self._compiled[source] = compiled
            return compiled(**context)
        except UndefinedError:
            return None
        except TemplateSyntaxError as e:
            raise ParameterResolutionError(f"Invalid expression '{expression}': {e.message}")
        except SecurityError as e:
            raise ParameterResolutionError(f"Expression '{expression}' is not allowed: {e}")
        except Exception as e:
            raise ParameterResolutionError(f"Failed to evaluate '{expression}': {e}")


class ParameterAccessor:
    """Per-item access to a node's parameters.

    Parameters are re-resolved for every item unless declared
    item_independent. Declared required parameters that resolve to
    None or "" raise ParameterResolutionError.
    """

    def __init__(
        self,
        node: Node,
        items: list[ExecutionItem],
        prior_outputs: Mapping[str, list[ExecutionItem]] | None = None,
        declared: Mapping[str, NodeParameter] | None = None,
        resolver: ExpressionResolver | None = None,
        workflow: Mapping[str, Any] | None = None,
    ):
        self.node = node
        self.items = items
        self.prior_outputs = prior_outputs or {}
        self.declared = dict(declared or {})
        self.resolver = resolver or ExpressionResolver()
        self.workflow = workflow or {}
        self._independent_cache: dict[str, Any] = {}

    def raw(self, name: str, default: Any = None) -> Any:
        if name in self.node.config:
            return self.node.config[name]
        spec = self.declared.get(name)
        if spec is not None and spec.default is not None:
            return spec.default
        return default

    def get(self, name: str, item_index: int = 0, default: Any = None) -> Any:
        """Resolve one parameter for one item."""
        spec = self.declared.get(name)
        if spec is not None and spec.item_independent:
            if name not in self._independent_cache:
                self._independent_cache[name] = self._resolve(name, 0, default, spec)
            return self._independent_cache[name]
        return self._resolve(name, item_index, default, spec)

    def resolve_all(self, item_index: int = 0) -> dict[str, Any]:
        """Resolve every configured and declared parameter for one item."""
        names = list(self.node.config)
        names += [n for n in self.declared if n not in self.node.config]
        return {name: self.get(name, item_index) for name in names}

    def _resolve(self, name: str, item_index: int, default: Any, spec: NodeParameter | None) -> Any:
        raw = self.raw(name, _MISSING)
        if raw is _MISSING:
            value = default
        else:
            item = self.items[item_index] if 0 <= item_index < len(self.items) else None
            try:
                value = self.resolver.resolve(
                    raw,
                    item,
                    self.prior_outputs,
                    item_index=item_index,
                    items=self.items,
                    parameters=self.node.config,
                    workflow=self.workflow,
                )
            except ParameterResolutionError as e:
                raise ParameterResolutionError(
                    f"Node '{self.node.label}': parameter '{name}': {e}", parameter=name
                ) from e
            if value is None:
                value = default

        if spec is not None and spec.required and (value is None or value == ""):
            raise ParameterResolutionError(
                f"Node '{self.node.label}': required parameter '{name}' could not be resolved",
                parameter=name,
            )
        return value

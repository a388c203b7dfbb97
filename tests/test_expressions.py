"""Tests for expression and parameter resolution."""

from __future__ import annotations

import pytest

from conftest import make_node
from typeflow.core.errors import ParameterResolutionError
from typeflow.core.expressions import ExpressionResolver, ParameterAccessor, is_expression
from typeflow.core.items import make_item
from typeflow.core.registry import NodeParameter


@pytest.fixture
def resolver() -> ExpressionResolver:
    return ExpressionResolver()


# =============================================================================
# Expression Detection
# =============================================================================


class TestIsExpression:
    """Tests for is_expression()."""

    @pytest.mark.parametrize(
        "value",
        ["=1 + 1", "Hello {{ $json.name }}", "$json.user.id", '$node["Fetch"].json.id', "$items[0]"],
    )
    def test_expressions(self, value):
        assert is_expression(value)

    @pytest.mark.parametrize("value", ["plain text", "costs $5", 42, None, {"a": 1}, "$json is here"])
    def test_literals(self, value):
        assert not is_expression(value)


# =============================================================================
# Resolution
# =============================================================================


class TestResolve:
    """Tests for ExpressionResolver.resolve()."""

    def test_literal_passes_through(self, resolver):
        assert resolver.resolve("hello", make_item({"a": 1})) == "hello"
        assert resolver.resolve(5, make_item({})) == 5

    def test_bare_json_reference(self, resolver):
        item = make_item({"user": {"id": 7}})
        assert resolver.resolve("$json.user.id", item) == 7

    def test_single_template_keeps_native_type(self, resolver):
        item = make_item({"tags": ["a", "b"]})
        assert resolver.resolve("{{ $json.tags }}", item) == ["a", "b"]

    def test_mixed_template_interpolates(self, resolver):
        item = make_item({"name": "Ada", "age": 36})
        assert resolver.resolve("{{ $json.name }} is {{ $json.age }}", item) == "Ada is 36"

    def test_missing_reference_is_none(self, resolver):
        assert resolver.resolve("$json.missing.deep", make_item({})) is None
        assert resolver.resolve("x={{ $json.missing }}", make_item({})) == "x="

    def test_explicit_expression(self, resolver):
        assert resolver.resolve("=$json.a * 2", make_item({"a": 21})) == 42

    def test_node_reference_by_label(self, resolver):
        prior = {"Fetch": [make_item({"id": 1}), make_item({"id": 2})]}
        assert resolver.resolve('$node["Fetch"].json.id', make_item({}), prior) == 1
        assert resolver.resolve('{{ $node["Fetch"].items | length }}', make_item({}), prior) == 2

    def test_dict_key_named_like_method(self, resolver):
        """Attribute access on dicts reads keys, even 'items'."""
        item = make_item({"items": [1, 2, 3]})
        assert resolver.resolve("{{ $json.items }}", item) == [1, 2, 3]

    def test_nested_config_resolved_recursively(self, resolver):
        config = {"url": "/users/{{ $json.id }}", "headers": [{"x": "$json.token"}], "n": 3}
        resolved = resolver.resolve(config, make_item({"id": 9, "token": "t"}))
        assert resolved == {"url": "/users/9", "headers": [{"x": "t"}], "n": 3}

    def test_item_index_and_items(self, resolver):
        items = [make_item({"v": 1}), make_item({"v": 2})]
        assert resolver.resolve("{{ $itemIndex }}", items[1], item_index=1, items=items) == 1
        assert resolver.resolve("{{ $items[1].json.v }}", items[0], items=items) == 2

    def test_syntax_error_raises(self, resolver):
        with pytest.raises(ParameterResolutionError, match="Invalid expression"):
            resolver.resolve("{{ $json.a + }}", make_item({"a": 1}))

    def test_sandbox_hides_private_attributes(self, resolver):
        assert resolver.resolve("{{ ''.__class__ }}", make_item({})) is None


# =============================================================================
# Parameter Accessor
# =============================================================================


class TestParameterAccessor:
    """Tests for per-item parameter access."""

    def test_resolves_per_item(self):
        node = make_node("n", config={"greeting": "Hi {{ $json.name }}"})
        items = [make_item({"name": "A"}), make_item({"name": "B"})]
        params = ParameterAccessor(node, items)
        assert params.get("greeting", 0) == "Hi A"
        assert params.get("greeting", 1) == "Hi B"

    def test_item_independent_resolved_once(self):
        node = make_node("n", config={"mode": "$json.mode"})
        items = [make_item({"mode": "first"}), make_item({"mode": "second"})]
        declared = {"mode": NodeParameter(name="mode", item_independent=True)}
        params = ParameterAccessor(node, items, declared=declared)
        assert params.get("mode", 1) == "first"

    def test_declared_default_used_when_unset(self):
        node = make_node("n")
        declared = {"limit": NodeParameter(name="limit", default=10)}
        params = ParameterAccessor(node, [make_item({})], declared=declared)
        assert params.get("limit") == 10
        assert params.raw("limit") == 10
        assert params.get("other", 0, "fallback") == "fallback"

    def test_required_parameter_missing(self):
        node = make_node("n", label="Fetch", config={"url": "$json.missing"})
        declared = {"url": NodeParameter(name="url", required=True)}
        params = ParameterAccessor(node, [make_item({})], declared=declared)
        with pytest.raises(ParameterResolutionError) as exc_info:
            params.get("url")
        assert exc_info.value.parameter == "url"
        assert "Fetch" in str(exc_info.value)

    def test_resolve_all(self):
        node = make_node("n", config={"a": "$json.x", "b": "lit"})
        declared = {"c": NodeParameter(name="c", default=True)}
        params = ParameterAccessor(node, [make_item({"x": 1})], declared=declared)
        assert params.resolve_all() == {"a": 1, "b": "lit", "c": True}

    def test_error_names_parameter(self):
        node = make_node("n", config={"bad": "{{ $json. }}"})
        params = ParameterAccessor(node, [make_item({})])
        with pytest.raises(ParameterResolutionError, match="parameter 'bad'"):
            params.get("bad")

"""Execution item helpers.

An item is a dict {"json": {...}, "binary": {...}, "pairedItem": {...}}.
Items are copied, never aliased, when they cross from one node to the next.
"""

from __future__ import annotations

import copy
import re
from typing import Any, TypedDict


class ExecutionItem(TypedDict, total=False):
    """One unit of data flowing along an edge."""

    json: dict[str, Any]
    binary: dict[str, dict[str, Any]]
    pairedItem: dict[str, Any]


_PATH_TOKEN = re.compile(r"[^.\[\]]+|\[(\d+)\]")


def make_item(
    json_data: Any = None,
    binary: dict[str, dict[str, Any]] | None = None,
    paired_item: dict[str, Any] | None = None,
) -> ExecutionItem:
    """Build an item, wrapping non-dict payloads as {"value": payload}."""
    if json_data is None:
        json_data = {}
    elif not isinstance(json_data, dict):
        json_data = {"value": json_data}
    item: ExecutionItem = {"json": json_data}
    if binary:
        item["binary"] = binary
    if paired_item is not None:
        item["pairedItem"] = paired_item
    return item


def is_item(value: Any) -> bool:
    return isinstance(value, dict) and "json" in value and isinstance(value["json"], dict)


def copy_items(items: list[ExecutionItem] | None) -> list[ExecutionItem]:
    """Deep copy so downstream mutations never leak upstream."""
    return copy.deepcopy(list(items or []))


def truncate_items(items: list[ExecutionItem], limit: int) -> list[ExecutionItem]:
    return copy.deepcopy(items[: max(limit, 0)])


def trigger_items(trigger_data: Any) -> list[ExecutionItem]:
    """Turn a trigger payload into the initial item list.

    None gives one empty item, a dict gives one item, a list gives one
    item per element.
    """
    if trigger_data is None:
        return [make_item({})]
    if isinstance(trigger_data, list):
        if not trigger_data:
            return [make_item({})]
        return [copy.deepcopy(v) if is_item(v) else make_item(copy.deepcopy(v)) for v in trigger_data]
    if is_item(trigger_data):
        return [copy.deepcopy(trigger_data)]
    return [make_item(copy.deepcopy(trigger_data))]


def normalize_output(result: Any) -> list[ExecutionItem]:
    """Flatten node output into a single ordered item list.

    Accepts a list of output lists (multiple logical outputs), a list of
    items or plain values, a single item or dict, or None.
    """
    if result is None:
        return []
    if isinstance(result, tuple):
        result = list(result)
    if isinstance(result, list):
        if result and all(isinstance(branch, list) for branch in result):
            flattened: list[ExecutionItem] = []
            for branch in result:
                flattened.extend(normalize_output(branch))
            return flattened
        return [value if is_item(value) else make_item(value) for value in result]
    if is_item(result):
        return [result]
    return [make_item(result)]


def _tokens(path: str) -> list[str | int]:
    tokens: list[str | int] = []
    for match in _PATH_TOKEN.finditer(path):
        if match.group(1) is not None:
            tokens.append(int(match.group(1)))
        else:
            token = match.group(0)
            tokens.append(int(token) if token.isdigit() else token)
    return tokens


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Read a dotted path ("a.b[0].c" or "a.b.0.c"). Missing segments give default."""
    if not path:
        return data
    current = data
    for token in _tokens(path):
        if isinstance(token, int) and isinstance(current, list):
            if -len(current) <= token < len(current):
                current = current[token]
                continue
            return default
        if isinstance(current, dict):
            key = str(token)
            if key not in current:
                return default
            current = current[key]
            continue
        return default
    return current


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate dicts."""
    tokens = [str(t) for t in _tokens(path)]
    if not tokens:
        return
    current = data
    for token in tokens[:-1]:
        nxt = current.get(token)
        if not isinstance(nxt, dict):
            nxt = {}
            current[token] = nxt
        current = nxt
    current[tokens[-1]] = value


def delete_path(data: dict[str, Any], path: str) -> None:
    tokens = [str(t) for t in _tokens(path)]
    if not tokens:
        return
    current: Any = data
    for token in tokens[:-1]:
        if not isinstance(current, dict) or token not in current:
            return
        current = current[token]
    if isinstance(current, dict):
        current.pop(tokens[-1], None)

"""Data transformation nodes.

Every node reads its settings through the parameter accessor, so config
values may be expressions resolved against each item. Field references
are read raw (never resolved) and are dotted paths into item json; a
leading "$json." is accepted and ignored.
"""

from __future__ import annotations

import calendar
import json
import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from typeflow.core.errors import NodeOperationError
from typeflow.core.items import ExecutionItem, delete_path, get_path, make_item, set_path
from typeflow.core.registry import NodeParameter, NodeParameterOption, NodeType, NodeTypeDescription

logger = logging.getLogger(__name__)

_MISSING = object()


def field_path(path: str) -> str:
    path = (path or "").strip()
    if path == "$json":
        return ""
    if path.startswith("$json."):
        return path[len("$json.") :]
    return path


def field_value(item: ExecutionItem, path: str, default: Any = None) -> Any:
    return get_path(item.get("json", {}), field_path(path), default)


def field_list(value: Any) -> list[str]:
    """Accept a list of field names or a comma separated string."""
    if not value:
        return []
    if isinstance(value, str):
        return [f.strip() for f in value.split(",") if f.strip()]
    return [str(f) for f in value]


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def as_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return float("nan")


def evaluate_condition(value: Any, op: str, compare: Any) -> bool:
    """Compare one field value against a condition operand."""
    text = as_text(value)
    other = as_text(compare)
    if op in ("equals", "equal"):
        return text == other
    if op in ("notEquals", "notEqual"):
        return text != other
    if op == "contains":
        return other in text
    if op == "notContains":
        return other not in text
    if op == "startsWith":
        return text.startswith(other)
    if op == "endsWith":
        return text.endswith(other)
    if op == "greaterThan":
        return as_number(value) > as_number(compare)
    if op == "lessThan":
        return as_number(value) < as_number(compare)
    if op == "greaterThanOrEqual":
        return as_number(value) >= as_number(compare)
    if op == "lessThanOrEqual":
        return as_number(value) <= as_number(compare)
    if op == "isEmpty":
        return text == ""
    if op == "isNotEmpty":
        return text != ""
    if op == "isTrue":
        return value is True or text == "true"
    if op == "isFalse":
        return value is False or text == "false"
    if op == "regex":
        try:
            return re.search(other, text) is not None
        except re.error:
            return False
    raise NodeOperationError(f"Unknown condition operator '{op}'")


# --- Filter ---


def filter_items(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    raw_conditions = params.raw("conditions", []) or []
    if not raw_conditions:
        return items
    combine = params.get("combine_with", 0, "and")
    if combine not in ("and", "or"):
        raise NodeOperationError(f"combine_with must be 'and' or 'or', got '{combine}'")

    kept = []
    for index, item in enumerate(items):
        # Field paths stay literal; only the operands are resolved per item
        resolved = params.get("conditions", index, []) or []
        results = [
            evaluate_condition(
                field_value(item, raw.get("field", "")),
                raw.get("operator", "equals"),
                res.get("value"),
            )
            for raw, res in zip(raw_conditions, resolved)
        ]
        if (all(results) if combine == "and" else any(results)):
            kept.append(item)
    logger.debug(f"Filter '{ctx.node.label}' kept {len(kept)} of {len(items)} items")
    return kept


# --- Limit ---


def limit_items(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    max_items = int(params.get("max_items", 0, 10))
    if max_items < 0:
        raise NodeOperationError("max_items must not be negative")
    if max_items == 0:
        return []
    keep = params.get("keep", 0, "first")
    return items[:max_items] if keep == "first" else items[-max_items:]


# --- Remove Duplicates ---


def remove_duplicates(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    fields = field_list(params.raw("fields"))
    seen: set[str] = set()
    unique = []
    for item in items:
        if fields:
            key = as_text([field_value(item, f) for f in fields])
        else:
            key = as_text(item.get("json", {}))
        if key not in seen:
            seen.add(key)
            unique.append(item)
    return unique


# --- Split Out ---


def split_out(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    output = []
    for index, item in enumerate(items):
        path = field_path(params.raw("field", ""))
        if not path:
            raise NodeOperationError("splitOut requires 'field'")
        destination = params.get("destination_field", index) or path.split(".")[-1]
        include_other = params.get("include_other_fields", index, True)
        values = get_path(item.get("json", {}), path)
        if not isinstance(values, list):
            output.append(item)
            continue
        for element in values:
            if include_other:
                data = dict(item.get("json", {}))
                delete_path(data, path)
                set_path(data, destination, element)
            elif isinstance(element, dict):
                data = element
            else:
                data = {destination: element}
            output.append(make_item(data, paired_item={"item": index}))
    return output


# --- Aggregate ---


def aggregate(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    """Collect all items into one.

    No fields: output_field holds every item's json. One field: the list
    of that field's values. Several fields: one dict per item with just
    those fields.
    """
    fields = field_list(params.raw("fields"))
    output_field = params.get("output_field", 0, "data") or "data"
    if not fields:
        values: list[Any] = [item.get("json", {}) for item in items]
    elif len(fields) == 1:
        values = [field_value(item, fields[0]) for item in items]
    else:
        values = [{f: field_value(item, f) for f in fields} for item in items]
    return [make_item({output_field: values})]


# --- Merge ---


def group_by_input(items: list[ExecutionItem], input_count: int = 0) -> list[list[ExecutionItem]]:
    """Split concatenated input items back into per-input groups.

    Inputs that delivered no items keep their position as empty groups.
    """
    indexes = [int(item.get("pairedItem", {}).get("input", 0)) for item in items]
    groups: list[list[ExecutionItem]] = [[] for _ in range(max([input_count, *(i + 1 for i in indexes)]))]
    for index, item in zip(indexes, items):
        groups[index].append(item)
    return groups


def merge(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    mode = params.get("mode", 0, "append")
    if mode == "append":
        return items

    groups = group_by_input(items, ctx.input_count())
    if mode == "chooseBranch":
        branch = int(params.get("output", 0, 0) or 0)
        return groups[branch] if 0 <= branch < len(groups) else []

    if mode == "combineByPosition":
        if not groups:
            return []
        include_unpaired = params.get("include_unpaired", 0, False)
        length = max(map(len, groups)) if include_unpaired else min(map(len, groups))
        merged = []
        for position in range(length):
            data: dict[str, Any] = {}
            for group in groups:
                if position < len(group):
                    data.update(group[position].get("json", {}))
            merged.append(make_item(data, paired_item={"item": position}))
        return merged

    if mode == "combineByKey":
        join_field = params.raw("join_field")
        if not join_field:
            raise NodeOperationError("combineByKey requires 'join_field'")
        by_key: dict[str, dict[str, Any]] = {}
        for item in items:
            key = as_text(field_value(item, join_field))
            by_key.setdefault(key, {}).update(item.get("json", {}))
        return [make_item(data) for data in by_key.values()]

    raise NodeOperationError(f"Unknown merge mode '{mode}'")


# --- Summarize ---

_SUMMARY_TYPES = ("count", "sum", "average", "min", "max", "concatenate")


def _numbers(values: Iterable[Any]) -> list[float]:
    numbers = []
    for v in values:
        if isinstance(v, bool) or v is None:
            continue
        n = as_number(v)
        if n == n:
            numbers.append(n)
    return numbers


def _summarize_group(items: list[ExecutionItem], operations: list[dict[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for op in operations:
        op_type = op.get("type", "count")
        if op_type not in _SUMMARY_TYPES:
            raise NodeOperationError(f"Unknown summarize operation '{op_type}'")
        field = op.get("field")
        out = op.get("output_field") or (f"{op_type}_{field}" if field else op_type)
        values = [field_value(item, field) for item in items] if field else [i.get("json") for i in items]
        numbers = _numbers(values)
        if op_type == "count":
            result[out] = len([v for v in values if v is not None]) if field else len(items)
        elif op_type == "sum":
            result[out] = sum(numbers)
        elif op_type == "average":
            result[out] = sum(numbers) / len(numbers) if numbers else 0
        elif op_type == "min":
            result[out] = min(numbers) if numbers else None
        elif op_type == "max":
            result[out] = max(numbers) if numbers else None
        else:
            separator = op.get("separator", ", ")
            result[out] = separator.join(as_text(v) for v in values)
    return result


def summarize(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    operations = params.raw("operations") or [{"type": "count"}]
    group_by = field_list(params.raw("group_by"))
    if not group_by:
        return [make_item(_summarize_group(items, operations))]

    groups: dict[str, tuple[dict[str, Any], list[ExecutionItem]]] = {}
    for item in items:
        keys = {f: field_value(item, f) for f in group_by}
        groups.setdefault(as_text(list(keys.values())), (keys, []))[1].append(item)
    return [make_item({**keys, **_summarize_group(members, operations)}) for keys, members in groups.values()]


# --- Edit Fields ---


def convert_value(value: Any, value_type: str | None) -> Any:
    if value_type in (None, "", "auto"):
        return value
    if value_type == "string":
        return None if value is None else as_text(value)
    if value_type == "number":
        number = as_number(value)
        if number != number:
            raise NodeOperationError(f"Cannot convert '{value}' to number")
        return int(number) if number.is_integer() and not isinstance(value, float) else number
    if value_type == "boolean":
        return value if isinstance(value, bool) else as_text(value).lower() == "true"
    if value_type in ("object", "array"):
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value
    raise NodeOperationError(f"Unknown field type '{value_type}'")


def edit_fields(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    output = []
    keep_only_set = params.get("keep_only_set", 0, False)
    for index, item in enumerate(items):
        data: dict[str, Any] = {} if keep_only_set else dict(item.get("json", {}))
        for spec in params.get("fields", index, []) or []:
            set_path(data, spec["name"], convert_value(spec.get("value"), spec.get("type")))
        for path in field_list(params.raw("remove_fields")):
            delete_path(data, path)
        for rename in params.raw("rename_fields", []) or []:
            value = get_path(data, rename["from"], _MISSING)
            if value is not _MISSING:
                delete_path(data, rename["from"])
                set_path(data, rename["to"], value)
        new_item = make_item(data, item.get("binary"), {"item": index})
        output.append(new_item)
    return output


# --- Date & Time ---

_DATE_TOKEN_RE = re.compile(r"YYYY|MM|DD|HH|mm|ss")
_DATE_UNITS = ("seconds", "minutes", "hours", "days", "weeks", "months", "years")


def parse_date(value: Any) -> datetime:
    """Parse ISO strings and epoch milliseconds. Naive values are UTC."""
    if value is None or value == "":
        return datetime.now(UTC)
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value / 1000, UTC)
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            raise NodeOperationError(f"Invalid date '{value}'")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def format_date(value: datetime, fmt: str) -> str:
    tokens = {
        "YYYY": f"{value.year:04d}",
        "MM": f"{value.month:02d}",
        "DD": f"{value.day:02d}",
        "HH": f"{value.hour:02d}",
        "mm": f"{value.minute:02d}",
        "ss": f"{value.second:02d}",
    }
    return _DATE_TOKEN_RE.sub(lambda m: tokens[m.group(0)], fmt)


def add_to_date(value: datetime, amount: float, unit: str) -> datetime:
    if unit in ("months", "years"):
        months = int(amount) * (12 if unit == "years" else 1)
        total = value.year * 12 + value.month - 1 + months
        year, month = divmod(total, 12)
        day = min(value.day, calendar.monthrange(year, month + 1)[1])
        return value.replace(year=year, month=month + 1, day=day)
    if unit not in _DATE_UNITS:
        raise NodeOperationError(f"Unknown date unit '{unit}'")
    return value + timedelta(**{unit: amount})


def extract_part(value: datetime, part: str) -> int:
    if part == "dayOfWeek":
        return value.isoweekday() % 7  # Sunday is 0
    if part in ("year", "month", "day", "hour", "minute", "second"):
        return getattr(value, part)
    raise NodeOperationError(f"Unknown date part '{part}'")


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def date_time(items: list[ExecutionItem], params, ctx) -> list[ExecutionItem]:
    output = []
    for index, item in enumerate(items):
        operation = params.get("operation", index, "now")
        output_field = params.get("output_field", index, "date") or "date"
        input_field = params.raw("input_field")
        source = parse_date(field_value(item, input_field) if input_field else None)

        if operation == "now":
            result: Any = _iso(datetime.now(UTC))
        elif operation == "format":
            fmt = params.get("format", index)
            result = format_date(source, fmt) if fmt else _iso(source)
        elif operation in ("add", "subtract"):
            amount = as_number(params.get("amount", index, 0))
            if amount != amount:
                raise NodeOperationError("amount must be a number")
            sign = -1 if operation == "subtract" else 1
            result = _iso(add_to_date(source, sign * amount, params.get("unit", index, "days")))
        elif operation == "extract":
            result = extract_part(source, params.get("part", index, "year"))
        else:
            raise NodeOperationError(f"Unknown dateTime operation '{operation}'")

        data = dict(item.get("json", {}))
        set_path(data, output_field, result)
        output.append(make_item(data, item.get("binary"), {"item": index}))
    return output


# --- Registration ---


def _options(*values: str) -> list[NodeParameterOption]:
    return [NodeParameterOption(name=v, value=v) for v in values]


def _node(name: str, display_name: str, description: str, execute, parameters: list[NodeParameter]) -> NodeType:
    return NodeType(
        description=NodeTypeDescription(
            name=name,
            display_name=display_name,
            group=["transform"],
            description=description,
            parameters=parameters,
        ),
        execute=execute,
    )


def transform_node_types() -> list[NodeType]:
    return [
        _node(
            "filter",
            "Filter",
            "Keeps items matching conditions",
            filter_items,
            [
                NodeParameter(name="conditions", type="collection", default=[]),
                NodeParameter(
                    name="combine_with",
                    type="options",
                    default="and",
                    item_independent=True,
                    options=_options("and", "or"),
                ),
            ],
        ),
        _node(
            "limit",
            "Limit",
            "Keeps the first or last N items",
            limit_items,
            [
                NodeParameter(name="max_items", type="number", default=10, item_independent=True),
                NodeParameter(
                    name="keep",
                    type="options",
                    default="first",
                    item_independent=True,
                    options=_options("first", "last"),
                ),
            ],
        ),
        _node(
            "removeDuplicates",
            "Remove Duplicates",
            "Drops items whose compared fields were already seen",
            remove_duplicates,
            [NodeParameter(name="fields", type="string", item_independent=True)],
        ),
        _node(
            "splitOut",
            "Split Out",
            "Turns a list field into one item per element",
            split_out,
            [
                NodeParameter(name="field", required=True),
                NodeParameter(name="destination_field"),
                NodeParameter(name="include_other_fields", type="boolean", default=True),
            ],
        ),
        _node(
            "aggregate",
            "Aggregate",
            "Collects items into a single item",
            aggregate,
            [
                NodeParameter(name="fields", item_independent=True),
                NodeParameter(name="output_field", default="data", item_independent=True),
            ],
        ),
        _node(
            "merge",
            "Merge",
            "Combines items arriving on several inputs",
            merge,
            [
                NodeParameter(
                    name="mode",
                    type="options",
                    default="append",
                    item_independent=True,
                    options=_options("append", "combineByPosition", "combineByKey", "chooseBranch"),
                ),
                NodeParameter(name="join_field", item_independent=True),
                NodeParameter(name="output", type="number", default=0, item_independent=True),
                NodeParameter(name="include_unpaired", type="boolean", default=False, item_independent=True),
            ],
        ),
        _node(
            "summarize",
            "Summarize",
            "Computes count, sum, average, min, max or concatenation",
            summarize,
            [
                NodeParameter(name="operations", type="collection", item_independent=True),
                NodeParameter(name="group_by", item_independent=True),
            ],
        ),
        _node(
            "editFields",
            "Edit Fields",
            "Sets, removes and renames fields",
            edit_fields,
            [
                NodeParameter(name="fields", type="collection", default=[]),
                NodeParameter(name="remove_fields"),
                NodeParameter(name="rename_fields", type="collection", default=[]),
                NodeParameter(name="keep_only_set", type="boolean", default=False, item_independent=True),
            ],
        ),
        _node(
            "dateTime",
            "Date & Time",
            "Formats, shifts and extracts parts of dates",
            date_time,
            [
                NodeParameter(
                    name="operation",
                    type="options",
                    default="now",
                    options=_options("now", "format", "add", "subtract", "extract"),
                ),
                NodeParameter(name="input_field"),
                NodeParameter(name="output_field", default="date"),
                NodeParameter(name="format"),
                NodeParameter(name="amount", type="number", default=0),
                NodeParameter(name="unit", type="options", default="days", options=_options(*_DATE_UNITS)),
                NodeParameter(
                    name="part",
                    type="options",
                    default="year",
                    options=_options("year", "month", "day", "hour", "minute", "second", "dayOfWeek"),
                ),
            ],
        ),
    ]

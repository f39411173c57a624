"""Declarative filter evaluation over normalized item fields.

A source filter is a flat list of :class:`FilterCondition` combined with
logical AND. The filter used for a source is resolved in this order:

1. ``source.filter`` (user override)
2. ``metadata.default_filter`` (plugin default)
3. no filter (everything passes)
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping, Sequence
from functools import lru_cache
from typing import Any

from ..schemas.items import IngestItem
from ..schemas.plugin import FilterCondition, FilterOperator, ItemField
from ..schemas.results import ValidationResult

STRING_OPERATORS = frozenset(
    {"equals", "not_equals", "contains", "starts_with", "ends_with", "regex"}
)
NUMBER_OPERATORS = frozenset({"equals", "not_equals", "gt", "gte", "lt", "lte"})
ENUM_OPERATORS = frozenset({"equals", "not_equals", "in", "not_in"})
BOOLEAN_OPERATORS = frozenset({"equals", "not_equals"})

OPERATORS_BY_TYPE: dict[str, frozenset[str]] = {
    "string": STRING_OPERATORS,
    "number": NUMBER_OPERATORS,
    "enum": ENUM_OPERATORS,
    "boolean": BOOLEAN_OPERATORS,
}

# Operators that an absent field satisfies ("not equal to anything").
_NEGATIVE_OPERATORS = frozenset({"not_equals", "not_in"})


def _operator_name(operator: FilterOperator | str) -> str:
    return operator.value if isinstance(operator, FilterOperator) else str(operator)


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern)
    except re.error:
        return None


def _as_number(value: Any) -> float | None:
    """Numeric view of ``value``; ``None`` when it is not a real number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


def _as_collection(value: Any) -> list[Any]:
    if isinstance(value, list | tuple | set | frozenset):
        return list(value)
    if value is None:
        return []
    return [value]


def _same(left: Any, right: Any) -> bool:
    # Booleans never equal numbers.
    return isinstance(left, bool) == isinstance(right, bool) and left == right


def _compare(field_value: Any, operator: str, expected: Any) -> bool:
    left = _as_number(field_value)
    right = _as_number(expected)
    if left is None or right is None:
        return False
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    return left <= right


def evaluate_condition(field_value: Any, operator: FilterOperator | str, expected: Any) -> bool:
    """Evaluate one operator against a present field value."""
    op = _operator_name(operator)
    if op == "equals":
        return _same(field_value, expected)
    if op == "not_equals":
        return not _same(field_value, expected)
    if op == "contains":
        return str(expected) in str(field_value)
    if op == "starts_with":
        return str(field_value).startswith(str(expected))
    if op == "ends_with":
        return str(field_value).endswith(str(expected))
    if op == "regex":
        pattern = _compile(str(expected))
        return pattern is not None and pattern.search(str(field_value)) is not None
    if op in ("gt", "gte", "lt", "lte"):
        return _compare(field_value, op, expected)
    if op == "in":
        return any(_same(field_value, candidate) for candidate in _as_collection(expected))
    if op == "not_in":
        return not any(_same(field_value, candidate) for candidate in _as_collection(expected))
    return False


def matches(fields: Mapping[str, Any], condition: FilterCondition) -> bool:
    op = _operator_name(condition.operator)
    if condition.field not in fields:
        return op in _NEGATIVE_OPERATORS
    return evaluate_condition(fields[condition.field], op, condition.value)


def apply_filter(item: IngestItem, conditions: Sequence[FilterCondition] | None) -> bool:
    """
    Decide whether ``item`` passes every condition.

    Args:
        item: Normalized item whose ``fields`` are tested
        conditions: Conditions combined with AND; empty or None accepts all

    Returns:
        True if the item should be ingested
    """
    if not conditions:
        return True
    return all(matches(item.fields, condition) for condition in conditions)


def resolve_filter(
    source_filter: Sequence[FilterCondition] | None,
    default_filter: Sequence[FilterCondition] | None,
) -> list[FilterCondition] | None:
    if source_filter:
        return list(source_filter)
    if default_filter:
        return list(default_filter)
    return None


def validate_filter(
    conditions: Iterable[FilterCondition | Mapping[str, Any]] | None,
    item_fields: Sequence[ItemField],
) -> ValidationResult:
    """
    Check conditions against an adapter's declared item fields.

    Every referenced field must be declared, the operator must suit the field
    type and enum values must be among the declared values. All problems are
    reported together, separated by ``; ``.
    """
    if not conditions:
        return ValidationResult.ok()

    declared = {field.key: field for field in item_fields}
    errors: list[str] = []
    for index, raw in enumerate(conditions):
        prefix = f"filter[{index}]"
        if isinstance(raw, Mapping):
            if "value" not in raw:
                errors.append(f"{prefix}.value is required")
                continue
            try:
                condition = FilterCondition.model_validate(dict(raw))
            except ValueError as exc:
                errors.append(f"{prefix} is invalid: {exc}")
                continue
        else:
            condition = raw

        op = _operator_name(condition.operator)
        item_field = declared.get(condition.field)
        if item_field is None:
            errors.append(f'{prefix}.field "{condition.field}" does not match any declared item field')
            continue

        allowed = OPERATORS_BY_TYPE.get(item_field.type, frozenset())
        if op not in allowed:
            errors.append(f'{prefix}.operator "{op}" is not valid for field type "{item_field.type}"')

        if item_field.type == "enum" and item_field.values:
            candidates = _as_collection(condition.value) if op in ("in", "not_in") else [condition.value]
            for candidate in candidates:
                if candidate not in item_field.values:
                    errors.append(
                        f'{prefix}.value "{candidate}" is not a valid enum value for "{condition.field}" '
                        f"(allowed: {', '.join(item_field.values)})"
                    )

    if errors:
        return ValidationResult.fail("; ".join(errors))
    return ValidationResult.ok()

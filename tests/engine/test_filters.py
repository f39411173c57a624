"""Tests for filter evaluation, resolution and validation."""

from __future__ import annotations

import pytest

from relay_ingestor.engine.filters import (
    apply_filter,
    evaluate_condition,
    resolve_filter,
    validate_filter,
)
from relay_ingestor.schemas.items import IngestItem
from relay_ingestor.schemas.plugin import FilterCondition, ItemField


def _item(**fields) -> IngestItem:
    return IngestItem(id="t-1", title="t", timestamp="2024-01-01T00:00:00+00:00", fields=fields)


def _cond(field: str, operator: str, value=None) -> FilterCondition:
    return FilterCondition(field=field, operator=operator, value=value)


class TestApplyFilter:
    """Conditions over ``{priority: 1, status: "open"}``."""

    item = _item(priority=1, status="open")

    def test_numeric_lte_accepts(self) -> None:
        assert apply_filter(self.item, [_cond("priority", "lte", 2)])

    def test_equals_mismatch_rejects(self) -> None:
        assert not apply_filter(self.item, [_cond("status", "equals", "closed")])

    def test_absent_field_equals_rejects(self) -> None:
        assert not apply_filter(self.item, [_cond("assignee", "equals", "bob")])

    def test_absent_field_not_equals_accepts(self) -> None:
        assert apply_filter(self.item, [_cond("assignee", "not_equals", "bob")])

    def test_absent_field_not_in_accepts(self) -> None:
        assert apply_filter(self.item, [_cond("assignee", "not_in", ["bob"])])

    def test_conditions_are_anded(self) -> None:
        conditions = [_cond("priority", "lte", 2), _cond("status", "equals", "closed")]
        assert not apply_filter(self.item, conditions)

    def test_empty_filter_accepts_everything(self) -> None:
        assert apply_filter(self.item, None)
        assert apply_filter(self.item, [])


@pytest.mark.parametrize(
    ("value", "operator", "expected", "result"),
    [
        ("Deploy failed", "contains", "fail", True),
        ("Deploy failed", "starts_with", "Deploy", True),
        ("Deploy failed", "ends_with", "ok", False),
        ("ERR-42", "regex", r"^ERR-\d+$", True),
        ("anything", "regex", "([unclosed", False),
        (5, "gt", 4, True),
        ("5", "gte", 5, True),
        (True, "gt", 0, False),
        ("five", "lt", 10, False),
        (float("nan"), "lt", 10, False),
        ("open", "in", ["open", "new"], True),
        ("closed", "not_in", ["open", "new"], True),
        (True, "equals", 1, False),
        (False, "equals", False, True),
        (True, "not_equals", 1, True),
        (1, "in", [True], False),
        (1, "not_in", [True], True),
    ],
)
def test_evaluate_condition(value, operator, expected, result) -> None:
    assert evaluate_condition(value, operator, expected) is result


def test_resolve_filter_prefers_source_then_default() -> None:
    source_filter = [_cond("channel", "equals", "eng")]
    default_filter = [_cond("is_bot", "equals", False)]

    assert resolve_filter(source_filter, default_filter) == source_filter
    assert resolve_filter(None, default_filter) == default_filter
    assert resolve_filter([], None) is None


ITEM_FIELDS = [
    ItemField(key="channel", label="Channel", type="string"),
    ItemField(key="priority", label="Priority", type="number"),
    ItemField(key="status", label="Status", type="enum", values=["open", "closed"]),
    ItemField(key="is_bot", label="Bot", type="boolean"),
]


def test_validate_filter_accepts_legal_conditions() -> None:
    result = validate_filter(
        [
            {"field": "channel", "operator": "regex", "value": "^eng"},
            {"field": "priority", "operator": "lte", "value": 2},
            {"field": "status", "operator": "in", "value": ["open"]},
        ],
        ITEM_FIELDS,
    )

    assert result.valid
    assert result.error is None


def test_validate_filter_reports_every_problem() -> None:
    result = validate_filter(
        [
            {"field": "unknown", "operator": "equals", "value": 1},
            {"field": "is_bot", "operator": "contains", "value": "x"},
            {"field": "status", "operator": "equals", "value": "pending"},
            {"field": "channel", "operator": "equals"},
        ],
        ITEM_FIELDS,
    )

    assert not result.valid
    errors = result.error.split("; ")
    assert len(errors) == 4
    assert 'filter[0].field "unknown"' in errors[0]
    assert 'operator "contains" is not valid for field type "boolean"' in errors[1]
    assert '"pending" is not a valid enum value' in errors[2]
    assert errors[3] == "filter[3].value is required"


def test_validate_filter_rejects_unknown_operator() -> None:
    result = validate_filter([{"field": "channel", "operator": "like", "value": "x"}], ITEM_FIELDS)

    assert not result.valid
    assert "filter[0] is invalid" in result.error

"""Tests for repo_conductor/engine/guards.py."""

import pytest

from repo_conductor.engine.guards import (
    GuardCondition,
    GuardGroup,
    evaluate_guard,
    field_exists,
    parse_guard,
    resolve_field,
)
from repo_conductor.exceptions import GuardEvaluationError


def cond(field, operator, value):
    return {"field": field, "operator": operator, "value": value}


class TestParseGuard:
    """Tests for turning raw mappings into guard trees."""

    def test_parses_condition(self):
        guard = parse_guard(cond("status", "==", "done"))

        assert guard == GuardCondition(field="status", operator="==", value="done")

    def test_parses_nested_group(self):
        guard = parse_guard(
            {
                "logic": "or",
                "conditions": [
                    cond("a", ">", 1),
                    {"logic": "and", "conditions": [cond("b", "==", True)]},
                ],
            }
        )

        assert isinstance(guard, GuardGroup)
        assert guard.logic == "or"
        assert isinstance(guard.conditions[1], GuardGroup)

    def test_parsed_expression_is_returned_unchanged(self):
        guard = GuardCondition(field="x", operator="==", value=1)

        assert parse_guard(guard) is guard

    @pytest.mark.parametrize(
        "raw,message",
        [
            (cond("x", "~=", 1), "Unsupported guard operator"),
            ({"logic": "xor", "conditions": []}, "Unsupported guard logic"),
            ({"logic": "and", "conditions": "nope"}, "must be a list"),
            ({"field": "x", "operator": "=="}, "missing required keys: value"),
            (cond("", "==", 1), "non-empty string"),
            (cond("x", "==", [1, 2]), "string, number or boolean"),
            ("status == done", "must be a mapping"),
        ],
    )
    def test_rejects_malformed_guards(self, raw, message):
        with pytest.raises(GuardEvaluationError, match=message):
            parse_guard(raw)


class TestResolveField:
    """Tests for dotted field lookup."""

    def test_walks_nested_mappings(self):
        context = {"review": {"result": {"approved": True}}}

        assert resolve_field(context, "review.result.approved") is True

    def test_missing_segment(self):
        assert not field_exists({"review": {}}, "review.approved")

    def test_non_mapping_before_path_end(self):
        assert not field_exists({"review": "approved"}, "review.approved")

    def test_none_value_exists(self):
        assert field_exists({"value": None}, "value")


class TestEvaluateGuard:
    """Tests for guard evaluation semantics."""

    def test_equality(self):
        assert evaluate_guard(cond("status", "==", "done"), {"status": "done"})
        assert not evaluate_guard(cond("status", "==", "done"), {"status": "open"})

    def test_inequality(self):
        assert evaluate_guard(cond("status", "!=", "done"), {"status": "open"})

    def test_missing_field_never_equal(self):
        assert not evaluate_guard(cond("status", "==", "done"), {})

    def test_missing_field_is_not_equal(self):
        assert evaluate_guard(cond("status", "!=", "done"), {})

    def test_boolean_never_equals_number(self):
        assert not evaluate_guard(cond("flag", "==", 1), {"flag": True})
        assert not evaluate_guard(cond("count", "==", False), {"count": 0})
        assert evaluate_guard(cond("flag", "==", True), {"flag": True})

    def test_string_never_equals_number(self):
        assert not evaluate_guard(cond("count", "==", 3), {"count": "3"})

    def test_int_equals_float(self):
        assert evaluate_guard(cond("score", "==", 3), {"score": 3.0})

    @pytest.mark.parametrize(
        "operator,value,expected",
        [
            (">", 2, True),
            (">", 3, False),
            ("<", 4, True),
            (">=", 3, True),
            ("<=", 2, False),
        ],
    )
    def test_ordering_on_numbers(self, operator, value, expected):
        assert evaluate_guard(cond("attempts", operator, value), {"attempts": 3}) is expected

    def test_ordering_requires_numbers(self):
        assert not evaluate_guard(cond("attempts", ">", 1), {"attempts": "5"})
        assert not evaluate_guard(cond("attempts", ">", 0), {"attempts": True})
        assert not evaluate_guard(cond("attempts", ">", 0), {})

    def test_and_group(self):
        guard = {"logic": "and", "conditions": [cond("a", "==", 1), cond("b", "==", 2)]}

        assert evaluate_guard(guard, {"a": 1, "b": 2})
        assert not evaluate_guard(guard, {"a": 1, "b": 3})

    def test_or_group(self):
        guard = {"logic": "or", "conditions": [cond("a", "==", 1), cond("b", "==", 2)]}

        assert evaluate_guard(guard, {"a": 0, "b": 2})
        assert not evaluate_guard(guard, {"a": 0, "b": 0})

    def test_empty_groups(self):
        assert evaluate_guard({"logic": "and", "conditions": []}, {}) is True
        assert evaluate_guard({"logic": "or", "conditions": []}, {}) is False

    def test_malformed_guard_raises(self):
        with pytest.raises(GuardEvaluationError):
            evaluate_guard(cond("x", "contains", "y"), {"x": "xyz"})

    def test_context_is_not_modified(self):
        context = {"review": {"approved": True}}

        evaluate_guard(cond("review.approved", "==", True), context)

        assert context == {"review": {"approved": True}}

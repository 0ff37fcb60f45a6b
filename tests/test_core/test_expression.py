"""Tests for the restricted expression evaluator."""

from __future__ import annotations

import pytest

from stepforge.core.errors import ExpressionError
from stepforge.core.expression import (
    MAX_EXPRESSION_LENGTH,
    evaluate,
    evaluate_condition,
    get_member,
    normalize,
    strict_equals,
)


def squash(text):
    return " ".join(text.split())


class TestNormalize:
    def test_javascript_operators(self):
        assert squash(normalize("a === 1 && !b")) == "a == 1 and not b"

    def test_literals(self):
        assert squash(normalize("x === null || y === true")) == "x == None or y == True"

    def test_strings_untouched(self):
        assert normalize("'a && b' === s") == "'a && b' == s"

    def test_attribute_named_like_literal_untouched(self):
        assert normalize("flags.true") == "flags.true"

    def test_not_equal_preserved(self):
        assert normalize("a != b") == "a != b"


class TestFieldAccess:
    def test_nested(self):
        assert evaluate("a.b.c", {"a": {"b": {"c": 3}}}) == 3

    def test_missing_is_none(self):
        assert evaluate("a.b.c", {}) is None

    def test_index(self):
        assert evaluate("items[1]", {"items": [10, 20]}) == 20

    def test_string_key(self):
        assert evaluate("a['x-y']", {"a": {"x-y": 1}}) == 1

    def test_optional_chaining(self):
        assert evaluate("a?.b", {"a": None}) is None

    def test_length(self):
        assert evaluate("items.length", {"items": [1, 2, 3]}) == 3
        assert evaluate("name.length", {"name": "abcd"}) == 4

    def test_get_member_out_of_range(self):
        assert get_member([1, 2], 5) is None
        assert get_member({"a": 1}, "b") is None
        assert get_member(42, "a") is None


class TestComparisons:
    def test_strict_true(self):
        assert evaluate_condition("input.flag === true", {"input": {"flag": True}})

    def test_bool_never_equals_number(self):
        assert not evaluate_condition("input.flag === true", {"input": {"flag": 1}})
        assert not strict_equals(True, 1)
        assert strict_equals(1, 1.0)

    def test_not_equal(self):
        assert evaluate("a !== 1", {"a": 2}) is True

    def test_null_check(self):
        assert evaluate("x === null", {"x": None}) is True

    def test_incomparable_ordering_is_false(self):
        assert evaluate("x > 1", {"x": None}) is False
        assert evaluate("x < 'b'", {"x": 3}) is False

    def test_chained(self):
        assert evaluate("1 < x < 5", {"x": 3}) is True

    def test_membership(self):
        assert evaluate("'a' in tags", {"tags": ["a", "b"]}) is True
        assert evaluate("'z' not in tags", {"tags": ["a"]}) is True


class TestLogicAndArithmetic:
    def test_and_returns_deciding_value(self):
        assert evaluate("a && b", {"a": 1, "b": "z"}) == "z"
        assert evaluate("a || b", {"a": 0, "b": "fallback"}) == "fallback"

    def test_not(self):
        assert evaluate("!done", {"done": False}) is True

    def test_arithmetic(self):
        assert evaluate("item * 2 + 1", {"item": 3}) == 7
        assert evaluate("7 // 2", {}) == 3
        assert evaluate("7 % 4", {}) == 3

    def test_string_concatenation(self):
        assert evaluate("'id-' + n", {"n": 5}) == "id-5"

    def test_bad_arithmetic_is_none(self):
        assert evaluate("10 / 0", {}) is None
        assert evaluate("a - 1", {"a": None}) is None

    def test_conditional_expression(self):
        assert evaluate("'big' if n > 10 else 'small'", {"n": 11}) == "big"

    def test_literals(self):
        assert evaluate("[1, 2]", {}) == [1, 2]
        assert evaluate("{'a': 1}", {}) == {"a": 1}


class TestHelpers:
    def test_len(self):
        assert evaluate("len(items)", {"items": [1, 2, 3]}) == 3
        assert evaluate("len(missing)", {}) == 0

    def test_methods(self):
        assert evaluate("name.toUpperCase()", {"name": "bob"}) == "BOB"
        assert evaluate("tags.includes('x')", {"tags": ["x"]}) is True
        assert evaluate("s.startsWith('ab')", {"s": "abc"}) is True
        assert evaluate("s.trim()", {"s": "  a "}) == "a"

    def test_method_on_missing_is_none(self):
        assert evaluate("missing.toLowerCase()", {}) is None

    def test_risk_below(self):
        assert evaluate("riskBelow('low', 'high')", {}) is True
        assert evaluate("riskBelow('critical', 'high')", {}) is False
        assert evaluate("riskBelow('unknown', 'high')", {}) is False

    def test_dates(self):
        today = evaluate("today()", {})
        assert len(today) == 10
        assert evaluate("todayStart()", {}).startswith(today)

    def test_json(self):
        assert evaluate("json(x)", {"x": {"a": 1}}) == '{"a": 1}'


class TestSandbox:
    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os')",
            "open('/etc/passwd')",
            "a.__class__",
            "a['__class__']",
            "(lambda: 1)()",
            "[x for x in items]",
            "len(x=1)",
            "a.pop()",
            "a ===",
        ],
    )
    def test_rejected(self, expression):
        with pytest.raises(ExpressionError):
            evaluate(expression, {"a": {}, "items": []})

    def test_sequence_repetition_is_none(self):
        assert evaluate("'ab' * 3", {}) is None
        assert evaluate("'x' * 20000000 * 2", {}) is None
        assert evaluate("items * 1000000", {"items": [1, 2]}) is None
        assert evaluate("3 * [0]", {}) is None

    def test_arithmetic_needs_numbers(self):
        assert evaluate("[1] + [2]", {}) is None
        assert evaluate("flag + 1", {"flag": True}) is None
        assert evaluate("2.5 * 2", {}) == 5.0

    def test_length_limit(self):
        with pytest.raises(ExpressionError):
            evaluate("1 + " * MAX_EXPRESSION_LENGTH + "1", {})

    def test_empty(self):
        with pytest.raises(ExpressionError):
            evaluate("   ", {})

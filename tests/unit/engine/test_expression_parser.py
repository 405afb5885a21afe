# tests/unit/engine/test_expression_parser.py
"""Tests for the safe dispatch-predicate expression parser."""

import pytest

from cellflow.engine.expression_parser import (
    ExpressionEvaluationError,
    ExpressionParser,
    ExpressionSecurityError,
    ExpressionSyntaxError,
)


class TestExpressionParserBasicOperations:
    """Comparison and boolean operators."""

    def test_simple_equality(self) -> None:
        parser = ExpressionParser("data['status'] == 'active'")
        assert parser.evaluate({"status": "active"}) is True
        assert parser.evaluate({"status": "inactive"}) is False

    def test_chained_comparison(self) -> None:
        parser = ExpressionParser("500 <= data['score'] < 750")
        assert parser.evaluate({"score": 500}) is True
        assert parser.evaluate({"score": 750}) is False

    def test_and_or_not(self) -> None:
        parser = ExpressionParser("(data['a'] or data['b']) and not data['c']")
        assert parser.evaluate({"a": True, "b": False, "c": False}) is True
        assert parser.evaluate({"a": False, "b": False, "c": False}) is False
        assert parser.evaluate({"a": True, "b": True, "c": True}) is False

    def test_boolean_ops_short_circuit(self) -> None:
        parser = ExpressionParser("data.get('x') is not None and data['x'] > 3")
        assert parser.evaluate({}) is False

    def test_membership(self) -> None:
        parser = ExpressionParser("data['role'] in ['admin', 'owner'] and 'banned' not in data['flags']")
        assert parser.evaluate({"role": "admin", "flags": []}) is True
        assert parser.evaluate({"role": "guest", "flags": []}) is False

    def test_literal_true(self) -> None:
        assert ExpressionParser("True").evaluate({}) is True


class TestExpressionParserFieldAccess:
    def test_nested_subscript(self) -> None:
        parser = ExpressionParser("data['applicant']['age'] >= 18")
        assert parser.evaluate({"applicant": {"age": 30}}) is True

    def test_get_with_default(self) -> None:
        parser = ExpressionParser("data.get('tier', 'basic') == 'basic'")
        assert parser.evaluate({}) is True
        assert parser.evaluate({"tier": "gold"}) is False

    def test_get_result_subscript(self) -> None:
        parser = ExpressionParser("data.get('user', {})['name'] == 'ada'")
        assert parser.evaluate({"user": {"name": "ada"}}) is True

    def test_arithmetic_and_ternary(self) -> None:
        parser = ExpressionParser("(data['a'] * 2 + data['b'] // 3 if data['a'] else -1) > 10")
        assert parser.evaluate({"a": 5, "b": 4}) is True
        assert parser.evaluate({"a": 0, "b": 100}) is False

    def test_referenced_fields(self) -> None:
        parser = ExpressionParser("data['score'] > 3 and data.get('tier') == 'gold' and data['x']['y']")
        assert parser.referenced_fields() == {"score", "tier", "x"}


class TestExpressionParserSecurity:
    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os')",
            "open('/etc/passwd')",
            "data.__class__",
            "lambda: 1",
            "[x for x in data]",
            "row['a'] == 1",
            "data['a'][1:3]",
            "f'{data}'",
            "(y := 1)",
            "data.get",
            "data.get('a', 'b', 'c')",
            "data.keys()",
            "data['a'] is 1",
            "{**data}",
            "data['a'] ** 2",
        ],
    )
    def test_forbidden_constructs(self, expression: str) -> None:
        with pytest.raises(ExpressionSecurityError):
            ExpressionParser(expression)

    def test_violations_are_all_reported(self) -> None:
        with pytest.raises(ExpressionSecurityError) as exc_info:
            ExpressionParser("foo == bar")
        assert "'foo'" in str(exc_info.value)
        assert "'bar'" in str(exc_info.value)

    def test_syntax_error(self) -> None:
        with pytest.raises(ExpressionSyntaxError, match="Invalid syntax"):
            ExpressionParser("data['a'] ==")


class TestExpressionParserEvaluationErrors:
    def test_missing_field_lists_available(self) -> None:
        parser = ExpressionParser("data['score'] > 1")
        with pytest.raises(ExpressionEvaluationError, match="Available fields: \\['amount'\\]") as exc_info:
            parser.evaluate({"amount": 3})
        assert isinstance(exc_info.value.__cause__, KeyError)

    def test_type_mismatch(self) -> None:
        with pytest.raises(ExpressionEvaluationError, match="cannot compare str and int"):
            ExpressionParser("data['a'] > 1").evaluate({"a": "x"})

    def test_division_by_zero(self) -> None:
        with pytest.raises(ExpressionEvaluationError, match="division by zero"):
            ExpressionParser("data['a'] / data['b'] > 1").evaluate({"a": 1, "b": 0})


class TestExpressionParserIdentity:
    def test_equality_and_hash_follow_text(self) -> None:
        assert ExpressionParser("data['a']") == ExpressionParser("data['a']")
        assert len({ExpressionParser("data['a']"), ExpressionParser("data['a']")}) == 1

    def test_callable(self) -> None:
        assert ExpressionParser("data['a'] == 1")({"a": 1}) is True

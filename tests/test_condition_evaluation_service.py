"""Tests for condition rule evaluation."""

import pytest

from models.flow_data import ConditionNodeData, ConditionRule
from models.variable_store import VariableStore
from services.condition_evaluation_service import ConditionEvaluationService


@pytest.fixture
def evaluator(log_util):
    return ConditionEvaluationService(log_util=log_util)


def rule(field, operator, value=None):
    return ConditionRule(field=field, operator=operator, value=value)


class TestEvaluateRule:

    @pytest.mark.parametrize("operator,value,expected", [
        ("equals", "Gold", True),
        ("equals", "gold", False),
        ("not_equals", "Silver", True),
        ("contains", "ol", True),
        ("contains", "OL", False),
        ("not_contains", "x", True),
        ("exists", None, True),
        ("not_exists", None, False),
    ])
    def test_operators_compare_strings_exactly(self, evaluator, operator, value, expected):
        variables = VariableStore({"tier": "Gold"})
        assert evaluator.evaluate_rule(rule("tier", operator, value), variables) is expected

    def test_unset_variable_behaves_as_empty_string(self, evaluator):
        variables = VariableStore()
        assert evaluator.evaluate_rule(rule("email", "exists"), variables) is False
        assert evaluator.evaluate_rule(rule("email", "not_exists"), variables) is True
        assert evaluator.evaluate_rule(rule("email", "equals", ""), variables) is True

    def test_exists_and_not_exists_are_complementary(self, evaluator):
        for variables in (VariableStore(), VariableStore({"email": "a@b.c"})):
            exists = evaluator.evaluate_rule(rule("email", "exists"), variables)
            not_exists = evaluator.evaluate_rule(rule("email", "not_exists"), variables)
            assert exists != not_exists

    def test_non_string_values_are_compared_as_text(self, evaluator):
        assert evaluator.evaluate_rule(rule("count", "equals", "3"), VariableStore({"count": 3}))


class TestEvaluate:

    def test_all_is_conjunction(self, evaluator):
        data = ConditionNodeData(matchType="all", rules=[rule("a", "exists"), rule("b", "exists")])
        assert evaluator.evaluate(data, VariableStore({"a": "1", "b": "2"})) is True
        assert evaluator.evaluate(data, VariableStore({"a": "1"})) is False

    def test_any_is_disjunction(self, evaluator):
        data = ConditionNodeData(matchType="any", rules=[rule("a", "exists"), rule("b", "exists")])
        assert evaluator.evaluate(data, VariableStore({"b": "2"})) is True
        assert evaluator.evaluate(data, VariableStore()) is False

    def test_empty_rule_list(self, evaluator):
        assert evaluator.evaluate(ConditionNodeData(matchType="all"), VariableStore()) is True
        assert evaluator.evaluate(ConditionNodeData(matchType="any"), VariableStore()) is False

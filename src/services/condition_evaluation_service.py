"""
Condition Evaluation Service
Evaluates condition node rules against the variable store.
"""
from typing import List

from utils.log_utils import LogUtil
from models.flow_data import ConditionNodeData, ConditionRule
from models.variable_store import VariableStore

# Operators that only look at whether the variable is set
VALUELESS_OPERATORS = ("exists", "not_exists")


class ConditionEvaluationService:
    """
    Service for evaluating condition rules and combining them with the node's match type.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def evaluate_rule(self, rule: ConditionRule, variables: VariableStore) -> bool:
        """
        Evaluate one rule. Unset variables read as an empty string.
        """
        actual_value = variables.get_text(rule.field)
        expected_value = rule.value or ""

        if rule.operator == "equals":
            condition_met = actual_value == expected_value
        elif rule.operator == "not_equals":
            condition_met = actual_value != expected_value
        elif rule.operator == "contains":
            condition_met = expected_value in actual_value
        elif rule.operator == "not_contains":
            condition_met = expected_value not in actual_value
        elif rule.operator == "exists":
            condition_met = actual_value != ""
        elif rule.operator == "not_exists":
            condition_met = actual_value == ""
        else:
            self.log_util.warning(
                service_name="ConditionEvaluationService",
                message=f"[CONDITION] Unknown operator '{rule.operator}', defaulting to False"
            )
            condition_met = False

        self.log_util.debug(
            service_name="ConditionEvaluationService",
            message=f"[CONDITION] field='{rule.field}' operator='{rule.operator}' expected='{expected_value}' actual='{actual_value}' -> {condition_met}"
        )
        return condition_met

    def evaluate(self, condition: ConditionNodeData, variables: VariableStore) -> bool:
        """
        Combine rule results: 'all' is AND, 'any' is OR.
        """
        results: List[bool] = [self.evaluate_rule(rule, variables) for rule in condition.rules]

        if condition.matchType == "any":
            return any(results)
        return all(results)

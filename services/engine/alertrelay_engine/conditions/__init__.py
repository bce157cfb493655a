"""Alert condition evaluation."""

from alertrelay_engine.conditions.evaluator import ConditionEvaluator, compare
from alertrelay_engine.conditions.expression import SafeExpression, evaluate_expression
from alertrelay_engine.conditions.gates import TriggerGate, in_time_range

__all__ = [
    "ConditionEvaluator",
    "SafeExpression",
    "TriggerGate",
    "compare",
    "evaluate_expression",
    "in_time_range",
]

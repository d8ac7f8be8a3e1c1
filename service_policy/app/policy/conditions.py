"""
Condition evaluation.
"""

import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any, Iterable

from shared.logging import get_logger

from .models import Condition, ConditionOperator, PolicyContext
from .resolver import UNDEFINED, resolve

logger = get_logger("policy.conditions")

# Operators that hold for a missing attribute
_EXISTENCE_TOLERANT = (ConditionOperator.NE, ConditionOperator.NIN)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def strict_equals(left: Any, right: Any) -> bool:
    """Type-aware equality: ``1 != "1"`` and ``True != 1``."""
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if type(left) is not type(right):
        # Allow comparisons across container flavours (list vs tuple, dict vs proxy)
        if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
            return len(left) == len(right) and all(strict_equals(a, b) for a, b in zip(left, right))
        if isinstance(left, Mapping) and isinstance(right, Mapping):
            return left.keys() == right.keys() and all(strict_equals(left[key], right[key]) for key in left)
        if isinstance(left, str) or isinstance(right, str) or left is None or right is None:
            return False
    return left == right


def _member(value: Any, candidates: Iterable[Any]) -> bool:
    return any(strict_equals(value, candidate) for candidate in candidates)


@lru_cache(maxsize=512)
def _compile(pattern: str, case_sensitive: bool):
    return re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)


def compare(operator: ConditionOperator, actual: Any, expected: Any, case_sensitive: bool = False) -> bool:
    """Apply ``operator`` between a resolved value and a literal."""
    if actual is UNDEFINED:
        return operator in _EXISTENCE_TOLERANT

    if operator == ConditionOperator.EQ:
        return strict_equals(actual, expected)

    elif operator == ConditionOperator.NE:
        return not strict_equals(actual, expected)

    elif operator in (ConditionOperator.GT, ConditionOperator.GTE, ConditionOperator.LT, ConditionOperator.LTE):
        if not (_is_number(actual) and _is_number(expected)):
            return False
        if operator == ConditionOperator.GT:
            return actual > expected
        if operator == ConditionOperator.GTE:
            return actual >= expected
        if operator == ConditionOperator.LT:
            return actual < expected
        return actual <= expected

    elif operator == ConditionOperator.IN:
        return isinstance(expected, (list, tuple, set, frozenset)) and _member(actual, expected)

    elif operator == ConditionOperator.NIN:
        return isinstance(expected, (list, tuple, set, frozenset)) and not _member(actual, expected)

    elif operator == ConditionOperator.CONTAINS:
        if isinstance(actual, str):
            return isinstance(expected, str) and expected in actual
        if isinstance(actual, (list, tuple, set, frozenset)):
            return _member(expected, actual)
        return False

    elif operator == ConditionOperator.STARTS_WITH:
        return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)

    elif operator == ConditionOperator.ENDS_WITH:
        return isinstance(actual, str) and isinstance(expected, str) and actual.endswith(expected)

    elif operator == ConditionOperator.REGEX:
        if not (isinstance(actual, str) and isinstance(expected, str)):
            return False
        try:
            return _compile(expected, case_sensitive).search(actual) is not None
        except re.error as e:
            logger.warning("Invalid regex in condition", pattern=expected, error=str(e))
            return False

    logger.warning("Unknown condition operator", operator=str(operator))
    return False


def evaluate_condition(condition: Condition, context: PolicyContext) -> bool:
    """Evaluate a single condition against a context."""
    actual = resolve(condition.attribute, context)
    return compare(condition.operator, actual, condition.value, condition.case_sensitive)


def first_failing(conditions: Iterable[Condition], context: PolicyContext):
    """Return the first condition that does not hold, or ``None``."""
    for condition in conditions:
        if not evaluate_condition(condition, context):
            return condition
    return None


def evaluate_conditions(conditions: Iterable[Condition], context: PolicyContext) -> bool:
    """All conditions must hold; an empty list holds."""
    return first_failing(conditions, context) is None

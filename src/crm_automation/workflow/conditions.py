"""Condition evaluators for trigger filters and in-graph branches.

Every evaluator answers with a plain bool. Type mismatches (a non-numeric
value compared with greater_than, an operand that is not a collection, ...)
evaluate to False instead of raising, so callers always get a definite answer.
"""

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .models import FilterCondition, FilterOperator

logger = logging.getLogger(__name__)

_MISSING = object()

Comparable = Union[float, datetime]


def resolve_field(record: Mapping[str, Any], field: str) -> Any:
    """Look up a dotted field path on a record.

    A bare name that is not a top-level key falls back to ``custom_fields``,
    which is where CRM records keep user-defined properties.
    """
    value: Any = record
    for part in field.split("."):
        if isinstance(value, Mapping):
            value = value.get(part, _MISSING)
        else:
            value = getattr(value, part, _MISSING)
        if value is _MISSING or value is None:
            break

    if value is _MISSING and "." not in field:
        custom = record.get("custom_fields") if isinstance(record, Mapping) else None
        if isinstance(custom, Mapping):
            value = custom.get(field, _MISSING)

    return None if value is _MISSING else value


def to_text(value: Any) -> str:
    """String form used by the string operators."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def to_comparable(value: Any) -> Optional[Comparable]:
    """Coerce to a number or an aware datetime; None when neither applies."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return float(Decimal(text))
        except InvalidOperation:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _comparable_pair(left: Any, right: Any) -> Optional[tuple]:
    a, b = to_comparable(left), to_comparable(right)
    if a is None or b is None:
        return None
    # Numbers only compare with numbers, dates with dates
    if isinstance(a, datetime) != isinstance(b, datetime):
        return None
    return a, b


def _is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _as_operand_set(operand: Any) -> List[Any]:
    if _is_collection(operand):
        return list(operand)
    if operand is None:
        return []
    return [operand]


def _loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if left == right:
        return True
    return to_text(left) == to_text(right)


class OperatorEvaluator(ABC):
    """Base class for operator evaluators."""

    @abstractmethod
    def evaluate(self, value: Any, operand: Any) -> bool:
        """Evaluate ``value <operator> operand``."""
        pass


class EqualsOperator(OperatorEvaluator):
    """Equality with string-form fallback ("5" equals 5)."""

    def evaluate(self, value, operand) -> bool:
        return _loose_equals(value, operand)


class NotEqualsOperator(OperatorEvaluator):
    def evaluate(self, value, operand) -> bool:
        return not _loose_equals(value, operand)


class ContainsOperator(OperatorEvaluator):
    """Case-insensitive substring; membership when the field is a list (tags)."""

    def evaluate(self, value, operand) -> bool:
        needle = to_text(operand).lower()
        if _is_collection(value):
            return any(to_text(item).lower() == needle for item in value)
        if value is None:
            return False
        return needle in to_text(value).lower()


class NotContainsOperator(OperatorEvaluator):
    def evaluate(self, value, operand) -> bool:
        return not ContainsOperator().evaluate(value, operand)


class StartsWithOperator(OperatorEvaluator):
    def evaluate(self, value, operand) -> bool:
        if value is None or _is_collection(value):
            return False
        return to_text(value).lower().startswith(to_text(operand).lower())


class EndsWithOperator(OperatorEvaluator):
    def evaluate(self, value, operand) -> bool:
        if value is None or _is_collection(value):
            return False
        return to_text(value).lower().endswith(to_text(operand).lower())


class GreaterThanOperator(OperatorEvaluator):
    """Numeric or date comparison; fails closed on anything else."""

    def evaluate(self, value, operand) -> bool:
        pair = _comparable_pair(value, operand)
        return pair is not None and pair[0] > pair[1]


class LessThanOperator(OperatorEvaluator):
    def evaluate(self, value, operand) -> bool:
        pair = _comparable_pair(value, operand)
        return pair is not None and pair[0] < pair[1]


class IsEmptyOperator(OperatorEvaluator):
    """True for null, empty string and empty collections."""

    def evaluate(self, value, operand) -> bool:
        if value is None:
            return True
        if isinstance(value, str):
            return value == ""
        if isinstance(value, (list, tuple, set, frozenset, dict)):
            return len(value) == 0
        return False


class IsNotEmptyOperator(OperatorEvaluator):
    def evaluate(self, value, operand) -> bool:
        return not IsEmptyOperator().evaluate(value, operand)


class InOperator(OperatorEvaluator):
    """Membership of the field value in the operand set (scalar = one-item set)."""

    def evaluate(self, value, operand) -> bool:
        candidates = _as_operand_set(operand)
        if _is_collection(value):
            return any(_loose_equals(item, c) for item in value for c in candidates)
        return any(_loose_equals(value, c) for c in candidates)


class NotInOperator(OperatorEvaluator):
    def evaluate(self, value, operand) -> bool:
        return not InOperator().evaluate(value, operand)


def _default_evaluators() -> Dict[FilterOperator, OperatorEvaluator]:
    """Build a fresh evaluator map so ConditionRegistry.register() in tests
    doesn't pollute global state."""
    return {
        FilterOperator.EQUALS: EqualsOperator(),
        FilterOperator.NOT_EQUALS: NotEqualsOperator(),
        FilterOperator.CONTAINS: ContainsOperator(),
        FilterOperator.NOT_CONTAINS: NotContainsOperator(),
        FilterOperator.STARTS_WITH: StartsWithOperator(),
        FilterOperator.ENDS_WITH: EndsWithOperator(),
        FilterOperator.GREATER_THAN: GreaterThanOperator(),
        FilterOperator.LESS_THAN: LessThanOperator(),
        FilterOperator.IS_EMPTY: IsEmptyOperator(),
        FilterOperator.IS_NOT_EMPTY: IsNotEmptyOperator(),
        FilterOperator.IN: InOperator(),
        FilterOperator.NOT_IN: NotInOperator(),
    }


class ConditionRegistry:
    """Registry mapping filter operators to evaluators."""

    _evaluators: Dict[FilterOperator, OperatorEvaluator] = _default_evaluators()

    @classmethod
    def evaluate_operator(cls, value: Any, operator: Union[FilterOperator, str], operand: Any) -> bool:
        """Evaluate one operator; unknown operators and evaluator errors yield False."""
        try:
            op = FilterOperator(operator)
        except ValueError:
            logger.error(f"Unknown filter operator: {operator}")
            return False

        evaluator = cls._evaluators.get(op)
        if not evaluator:
            logger.error(f"No evaluator found for operator: {op.value}")
            return False

        try:
            return bool(evaluator.evaluate(value, operand))
        except Exception as e:
            logger.error(f"Error evaluating operator {op.value}: {e}")
            return False

    @classmethod
    def evaluate(cls, record: Mapping[str, Any], condition: FilterCondition) -> bool:
        """Evaluate a single condition against a record."""
        value = resolve_field(record, condition.field)
        return cls.evaluate_operator(value, condition.operator, condition.value)

    @classmethod
    def evaluate_all(
        cls,
        record: Mapping[str, Any],
        conditions: Iterable[FilterCondition],
        logic: str = "and",
    ) -> bool:
        """Combine conditions with and/or; an empty list is vacuously true."""
        results = [cls.evaluate(record, condition) for condition in conditions]
        if not results:
            return True
        return any(results) if logic == "or" else all(results)

    @classmethod
    def register(cls, operator: FilterOperator, evaluator: OperatorEvaluator):
        """Register a custom operator evaluator."""
        cls._evaluators[operator] = evaluator

    @classmethod
    def reset(cls):
        """Restore default evaluators (useful in tests)."""
        cls._evaluators = _default_evaluators()

"""Condition Evaluator - Safe evaluation of transition guards"""
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from ..domain.models import ConditionGroup, Condition
from ..domain.enums import ConditionOperator, ContextFieldType
from ..domain.errors import GuardEvaluationError
from ..utils.time import parse_iso, ensure_utc

_MISSING = object()

_TYPE_CHECKS: Dict[ContextFieldType, Callable[[Any], bool]] = {
    ContextFieldType.STRING: lambda v: isinstance(v, str),
    ContextFieldType.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    ContextFieldType.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    ContextFieldType.BOOLEAN: lambda v: isinstance(v, bool),
    ContextFieldType.DATE: lambda v: isinstance(v, (str, date, datetime)),
    ContextFieldType.LIST: lambda v: isinstance(v, (list, tuple)),
    ContextFieldType.OBJECT: lambda v: isinstance(v, dict),
    ContextFieldType.ANY: lambda v: True,
}


class ConditionEvaluator:
    """
    Evaluate transition guards safely

    Uses a simple DSL - no eval() or exec(). Unlike a fail-closed
    evaluator, malformed context raises GuardEvaluationError so the
    resolver can report a guard error instead of a silent mismatch.
    """

    def evaluate(
        self,
        condition_group: ConditionGroup,
        context: Mapping[str, Any],
        schema: Optional[Mapping[str, ContextFieldType]] = None
    ) -> bool:
        """
        Evaluate a condition group

        Args:
            condition_group: Group of conditions with AND/OR logic
            context: Instance context bag
            schema: Declared context field types, if any

        Returns:
            True if conditions are met

        Raises:
            GuardEvaluationError: If the context cannot satisfy the guard
        """
        if not condition_group.conditions:
            return True  # No conditions = always true

        # Every condition is evaluated so malformed context is always reported
        results = [
            self._evaluate_single(condition, context, schema or {})
            for condition in condition_group.conditions
        ]

        if condition_group.logic == "OR":
            return any(results)
        return all(results)

    def _evaluate_single(
        self,
        condition: Condition,
        context: Mapping[str, Any],
        schema: Mapping[str, ContextFieldType]
    ) -> bool:
        field_value = self._get_field_value(condition.field, context)
        operator = condition.operator

        if field_value is _MISSING:
            if operator.tolerates_missing:
                field_value = None
            else:
                raise GuardEvaluationError(
                    f"Context field '{condition.field}' is missing",
                    details={"field": condition.field, "operator": operator.value}
                )

        declared = schema.get(condition.field)
        if declared is not None and field_value is not None:
            if not _TYPE_CHECKS[declared](field_value):
                raise GuardEvaluationError(
                    f"Context field '{condition.field}' is not of type {declared.value}",
                    details={"field": condition.field, "value": repr(field_value)}
                )

        return self._compare(field_value, operator, condition.value, condition.field)

    def _get_field_value(self, field_path: str, context: Mapping[str, Any]) -> Any:
        """
        Get field value from context using dot notation

        Example: "site.zone" -> context["site"]["zone"]
        """
        value: Any = context
        for part in field_path.split("."):
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            else:
                return _MISSING
        return value

    def _compare(
        self,
        field_value: Any,
        operator: ConditionOperator,
        compare_value: Any,
        field: str
    ) -> bool:
        """Compare values using operator"""

        if operator == ConditionOperator.EQUALS:
            return field_value == compare_value

        elif operator == ConditionOperator.NOT_EQUALS:
            return field_value != compare_value

        elif operator == ConditionOperator.GREATER_THAN:
            return self._compare_ordered(field_value, compare_value, field, lambda a, b: a > b)

        elif operator == ConditionOperator.LESS_THAN:
            return self._compare_ordered(field_value, compare_value, field, lambda a, b: a < b)

        elif operator == ConditionOperator.GREATER_THAN_OR_EQUALS:
            return self._compare_ordered(field_value, compare_value, field, lambda a, b: a >= b)

        elif operator == ConditionOperator.LESS_THAN_OR_EQUALS:
            return self._compare_ordered(field_value, compare_value, field, lambda a, b: a <= b)

        elif operator == ConditionOperator.CONTAINS:
            if field_value is None:
                return False
            if isinstance(field_value, (list, tuple)):
                return compare_value in field_value
            return str(compare_value) in str(field_value)

        elif operator == ConditionOperator.NOT_CONTAINS:
            if field_value is None:
                return True
            if isinstance(field_value, (list, tuple)):
                return compare_value not in field_value
            return str(compare_value) not in str(field_value)

        elif operator == ConditionOperator.IN:
            if not isinstance(compare_value, (list, tuple)):
                compare_value = [compare_value]
            return field_value in compare_value

        elif operator == ConditionOperator.NOT_IN:
            if not isinstance(compare_value, (list, tuple)):
                compare_value = [compare_value]
            return field_value not in compare_value

        elif operator == ConditionOperator.IS_EMPTY:
            return field_value is None or field_value == "" or field_value == [] or field_value == {}

        elif operator == ConditionOperator.IS_NOT_EMPTY:
            return not (field_value is None or field_value == "" or field_value == [] or field_value == {})

        return False

    def _compare_ordered(
        self,
        field_value: Any,
        compare_value: Any,
        field: str,
        comparator: Callable[[Any, Any], bool]
    ) -> bool:
        """Compare numbers, or ISO dates when both sides parse as dates"""
        a = self._as_ordered(field_value)
        b = self._as_ordered(compare_value)
        try:
            return comparator(a, b)
        except TypeError:
            raise GuardEvaluationError(
                f"Cannot order context field '{field}' against {compare_value!r}",
                details={"field": field, "value": repr(field_value)}
            )

    def _as_ordered(self, value: Any) -> Any:
        if isinstance(value, bool) or value is None:
            return value
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, datetime):
            return ensure_utc(value)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                pass
            try:
                return parse_iso(value)
            except (ValueError, OverflowError):
                return value
        return value

"""Assignment Resolver - Map a step to its responsible actor"""
from datetime import datetime
from typing import Any, Mapping, Optional

from ..domain.models import Step, Assignee
from ..domain.enums import AssigneeKind
from ..utils.time import calculate_due_at


class AssignmentResolver:
    """
    Resolve who owns the work at a step

    Pure functions over the step's static rule and the instance context;
    no datastore or directory lookups happen here.
    """

    def resolve_assignee(
        self,
        step: Step,
        context: Mapping[str, Any]
    ) -> Optional[Assignee]:
        """Resolve a role or user for ``step``, or None when unassigned"""
        rule = step.assignee

        if rule.kind == AssigneeKind.ROLE:
            return Assignee(role=rule.role)

        if rule.kind == AssigneeKind.USER:
            return Assignee(user_id=rule.user_id)

        if rule.kind in (AssigneeKind.CONTEXT_USER, AssigneeKind.CONTEXT_ROLE):
            value = self._lookup(rule.field, context)
            if value in (None, ""):
                return Assignee(role=rule.fallback_role) if rule.fallback_role else None
            if rule.kind == AssigneeKind.CONTEXT_USER:
                return Assignee(user_id=str(value))
            return Assignee(role=str(value))

        return None

    def compute_due_at(self, step: Step, start_time: datetime) -> Optional[datetime]:
        """Due time from the step's due_in_minutes / due_in_days"""
        minutes = 0
        if step.due_in_days is not None:
            minutes += step.due_in_days * 24 * 60
        if step.due_in_minutes is not None:
            minutes += step.due_in_minutes
        if step.due_in_days is None and step.due_in_minutes is None:
            return None
        return calculate_due_at(start_time, minutes)

    def _lookup(self, field_path: str, context: Mapping[str, Any]) -> Any:
        value: Any = context
        for part in field_path.split("."):
            if not isinstance(value, Mapping):
                return None
            value = value.get(part)
        return value

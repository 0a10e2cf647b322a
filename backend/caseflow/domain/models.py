"""Domain Models - Pydantic schemas for all entities"""
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from pydantic import (
    BaseModel, Field, ConfigDict, AliasChoices, PrivateAttr, field_validator, model_validator
)

from .enums import (
    InstanceStatus, TaskStatus, HistoryEventType, AssigneeKind, ContextFieldType,
    ConditionOperator, NotificationStatus
)


REASON_NO_MATCH = "no matching transition"
REASON_GUARD_ERROR = "guard error"


# ============================================================================
# Condition & Guard
# ============================================================================

class Condition(BaseModel):
    """Single guard condition over a context field"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    field: str = Field(..., min_length=1, description="Context field path (dot notation)")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Value to compare against")

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def root_field(self) -> str:
        return self.field.split(".", 1)[0]


class ConditionGroup(BaseModel):
    """Group of conditions with AND/OR logic"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    logic: str = Field("AND", description="AND or OR")
    conditions: Tuple[Condition, ...] = Field(default_factory=tuple)

    @model_validator(mode="before")
    @classmethod
    def _accept_single_condition(cls, data: Any) -> Any:
        # A bare {field, operator, value} mapping is a one-condition group
        if isinstance(data, dict) and "field" in data and "conditions" not in data:
            return {"logic": "AND", "conditions": [data]}
        return data

    @field_validator("logic")
    @classmethod
    def _validate_logic(cls, value: str) -> str:
        value = value.upper()
        if value not in ("AND", "OR"):
            raise ValueError("logic must be AND or OR")
        return value


# ============================================================================
# Assignment
# ============================================================================

class AssigneeRule(BaseModel):
    """Static rule describing who is responsible for a step"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: AssigneeKind = Field(default=AssigneeKind.NONE)
    role: Optional[str] = Field(None, description="Role or queue for ROLE")
    user_id: Optional[str] = Field(None, description="User for USER")
    field: Optional[str] = Field(None, description="Context path for CONTEXT_USER / CONTEXT_ROLE")
    fallback_role: Optional[str] = Field(None, description="Role used when the context field is empty")

    @model_validator(mode="before")
    @classmethod
    def _parse_shorthand(cls, data: Any) -> Any:
        """
        Accept configuration shorthand

        "role:reviewer", "user:u-17", "context:inspector_id",
        "context_role:team_role" or a bare role name.
        """
        if data is None:
            return {"kind": AssigneeKind.NONE}
        if not isinstance(data, str):
            return data

        prefix, sep, rest = data.partition(":")
        if not sep:
            return {"kind": AssigneeKind.ROLE, "role": data}
        prefix = prefix.strip().lower()
        rest = rest.strip()
        if prefix == "role":
            return {"kind": AssigneeKind.ROLE, "role": rest}
        if prefix == "user":
            return {"kind": AssigneeKind.USER, "user_id": rest}
        if prefix in ("context", "context_user"):
            return {"kind": AssigneeKind.CONTEXT_USER, "field": rest}
        if prefix == "context_role":
            return {"kind": AssigneeKind.CONTEXT_ROLE, "field": rest}
        raise ValueError(f"Unknown assignee shorthand: {data}")

    @model_validator(mode="after")
    def _check_kind_attributes(self) -> "AssigneeRule":
        required = {
            AssigneeKind.ROLE: "role",
            AssigneeKind.USER: "user_id",
            AssigneeKind.CONTEXT_USER: "field",
            AssigneeKind.CONTEXT_ROLE: "field",
        }.get(self.kind)
        if required and not getattr(self, required):
            raise ValueError(f"assignee of kind '{self.kind.value}' requires '{required}'")
        return self


class Assignee(BaseModel):
    """Resolved responsible actor for a step"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    role: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def recipient(self) -> str:
        return self.user_id or self.role or ""


# ============================================================================
# Workflow Definition
# ============================================================================

class SideEffect(BaseModel):
    """Notification to dispatch after an accepted transition"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    template_key: str = Field(..., min_length=1)
    recipients: Tuple[str, ...] = Field(
        default=("assignee",),
        description="assignee, actor, context:<path>, or a literal recipient"
    )

    @model_validator(mode="before")
    @classmethod
    def _accept_template_key(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"template_key": data}
        return data


class Transition(BaseModel):
    """Transition rule: (trigger, guard) -> target step"""
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    trigger: str = Field(..., min_length=1, description="Event name, e.g. 'approve'")
    target: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("target", "target_step_id", "to"),
        description="Target step ID, or None for a terminal transition"
    )
    guard: Optional[ConditionGroup] = Field(None, description="Condition over instance context")
    side_effects: Tuple[SideEffect, ...] = Field(default_factory=tuple)


class Step(BaseModel):
    """Named step in a workflow definition"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1, description="Step ID, unique within the definition")
    display_name: Optional[str] = None
    assignee: AssigneeRule = Field(default_factory=AssigneeRule)
    form_id: Optional[str] = None
    initial: bool = Field(default=False)
    due_in_minutes: Optional[int] = Field(None, ge=0)
    due_in_days: Optional[int] = Field(None, ge=0)
    transitions: Tuple[Transition, ...] = Field(default_factory=tuple)

    @property
    def name(self) -> str:
        return self.display_name or self.id

    @property
    def is_terminal(self) -> bool:
        """A step with no outgoing transitions completes the instance on entry"""
        return not self.transitions

    @property
    def has_terminal_transition(self) -> bool:
        return any(t.target is None for t in self.transitions)


class WorkflowDefinition(BaseModel):
    """Immutable graph of steps for one named workflow"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., min_length=1, description="Unique workflow name")
    display_name: Optional[str] = None
    description: Optional[str] = None
    version: str = Field(default="1")
    initial_step_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("initial_step_id", "initial"),
        description="Initial step (alternative to flagging a step)"
    )
    context_fields: Dict[str, ContextFieldType] = Field(
        default_factory=dict,
        description="Typed schema for the context bag; empty means untyped"
    )
    steps: Tuple[Step, ...] = Field(default_factory=tuple)

    _checksum: str = PrivateAttr(default="")

    def model_post_init(self, __context: Any) -> None:
        # Fields are frozen, so the shape hash is computed once
        canonical = json.dumps(
            self.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        )
        self._checksum = hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        """Find step by ID"""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def get_initial_step_id(self) -> Optional[str]:
        """Initial step ID from the explicit field or the flagged step"""
        if self.initial_step_id:
            return self.initial_step_id
        flagged = [s.id for s in self.steps if s.initial]
        return flagged[0] if len(flagged) == 1 else None

    @property
    def checksum(self) -> str:
        """SHA-256 of the canonical JSON shape"""
        return self._checksum

    def validate_graph(self) -> List[str]:
        """
        Structural checks the registry enforces at registration

        Returns a list of error messages; empty means valid.
        """
        errors: List[str] = []
        step_ids = set()

        if not self.steps:
            errors.append("Workflow must have at least one step")

        for step in self.steps:
            if step.id in step_ids:
                errors.append(f"Duplicate step id: {step.id}")
            step_ids.add(step.id)

        flagged = [s.id for s in self.steps if s.initial]
        if len(flagged) > 1:
            errors.append(f"More than one initial step: {', '.join(flagged)}")
        if self.initial_step_id:
            if self.initial_step_id not in step_ids:
                errors.append(f"Initial step {self.initial_step_id} not found in steps")
            if flagged and flagged != [self.initial_step_id]:
                errors.append(
                    f"initial_step_id {self.initial_step_id} disagrees with flagged step {flagged[0]}"
                )
        elif not flagged:
            errors.append("Workflow must mark exactly one initial step")

        for step in self.steps:
            for transition in step.transitions:
                if transition.target is not None and transition.target not in step_ids:
                    errors.append(
                        f"Transition '{transition.trigger}' from {step.id} "
                        f"references non-existent step: {transition.target}"
                    )

        if self.steps and not any(s.is_terminal or s.has_terminal_transition for s in self.steps):
            errors.append("Workflow must have at least one terminal step")

        errors.extend(self._validate_guard_schema())
        return errors

    def _validate_guard_schema(self) -> List[str]:
        if not self.context_fields:
            return []

        errors: List[str] = []
        ordered_types = (
            ContextFieldType.INTEGER, ContextFieldType.NUMBER,
            ContextFieldType.DATE, ContextFieldType.ANY,
        )
        for step in self.steps:
            for transition in step.transitions:
                if transition.guard is None:
                    continue
                for condition in transition.guard.conditions:
                    declared = self.context_fields.get(condition.root_field)
                    if declared is None:
                        errors.append(
                            f"Guard on {step.id}/{transition.trigger} uses undeclared "
                            f"context field: {condition.root_field}"
                        )
                    elif (
                        condition.operator.is_ordering
                        and condition.field == condition.root_field
                        and declared not in ordered_types
                    ):
                        errors.append(
                            f"Guard on {step.id}/{transition.trigger} applies "
                            f"{condition.operator.value} to {declared.value} field {condition.field}"
                        )
        return errors

    def find_unreachable_steps(self) -> List[str]:
        """Steps not reachable from the initial step (warning only)"""
        start = self.get_initial_step_id()
        if not start:
            return []
        reachable = {start}
        to_visit = [start]
        while to_visit:
            step = self.get_step(to_visit.pop())
            if step is None:
                continue
            for transition in step.transitions:
                if transition.target and transition.target not in reachable:
                    reachable.add(transition.target)
                    to_visit.append(transition.target)
        return [s.id for s in self.steps if s.id not in reachable]


# ============================================================================
# Runtime Entities
# ============================================================================

class WorkflowInstance(BaseModel):
    """Live binding of one case to one workflow definition"""
    model_config = ConfigDict(extra="ignore")  # Allow extra fields from DB

    instance_id: str
    definition_name: str
    definition_checksum: Optional[str] = None
    current_step_id: str
    context: Dict[str, Any] = Field(default_factory=dict)
    status: InstanceStatus = Field(default=InstanceStatus.ACTIVE)
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int = Field(default=1, description="Optimistic concurrency version")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class HistoryEntry(BaseModel):
    """Immutable audit record of one accepted transition"""
    model_config = ConfigDict(extra="ignore", frozen=True)

    history_id: str
    instance_id: str
    definition_name: str
    sequence: int = Field(..., description="Instance version produced by this write")
    event_type: HistoryEventType
    from_step_id: Optional[str] = None
    to_step_id: Optional[str] = None
    trigger: str
    actor_id: str
    timestamp: datetime
    notes: Optional[str] = None


class PendingTask(BaseModel):
    """Unit of work created when an instance enters a step with an assignee"""
    model_config = ConfigDict(extra="ignore")

    task_id: str
    instance_id: str
    definition_name: str
    step_id: str
    assignee_role: Optional[str] = None
    assignee_user_id: Optional[str] = None
    status: TaskStatus = Field(default=TaskStatus.OPEN)
    created_at: datetime
    due_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    closed_reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status != TaskStatus.DONE


# ============================================================================
# Results
# ============================================================================

class TransitionRejected(BaseModel):
    """Expected, non-exceptional outcome: no transition accepted the trigger"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    reason: str
    trigger: str
    step_id: str


class TransitionResult(BaseModel):
    """Outcome of WorkflowEngine.fire"""
    model_config = ConfigDict(extra="forbid")

    accepted: bool
    instance_id: str
    trigger: str
    from_step_id: str
    to_step_id: Optional[str] = None
    status: InstanceStatus
    reason: Optional[str] = None
    history_entry: Optional[HistoryEntry] = None
    tasks_created: List[PendingTask] = Field(default_factory=list)


class InstanceStatusView(BaseModel):
    """Read model: instance with its open tasks and available triggers"""
    model_config = ConfigDict(extra="forbid")

    instance: WorkflowInstance
    current_step_name: str
    open_tasks: List[PendingTask] = Field(default_factory=list)
    available_triggers: List[str] = Field(default_factory=list)


# ============================================================================
# Notification Outbox
# ============================================================================

class NotificationOutbox(BaseModel):
    """Notification in outbox"""
    model_config = ConfigDict(extra="ignore")  # Allow extra fields from DB

    notification_id: str
    instance_id: Optional[str] = None
    template_key: str
    recipient: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: NotificationStatus = Field(default=NotificationStatus.PENDING)
    retry_count: int = Field(default=0)
    created_at: datetime
    sent_at: Optional[datetime] = None

"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class InstanceStatus(str, Enum):
    """Workflow instance status"""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not InstanceStatus.ACTIVE


class TaskStatus(str, Enum):
    """Pending task status"""
    OPEN = "open"
    CLAIMED = "claimed"
    DONE = "done"


class HistoryEventType(str, Enum):
    """Kinds of history entries"""
    STARTED = "started"
    TRANSITIONED = "transitioned"
    COMPLETED = "completed"  # transition into a terminal step
    CANCELLED = "cancelled"


class AssigneeKind(str, Enum):
    """How a step's responsible actor is determined"""
    NONE = "none"
    ROLE = "role"  # static role / queue
    USER = "user"  # static user id
    CONTEXT_USER = "context_user"  # user id read from instance context
    CONTEXT_ROLE = "context_role"  # role name read from instance context


class ContextFieldType(str, Enum):
    """Declared types for context bag fields"""
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    LIST = "list"
    OBJECT = "object"
    ANY = "any"


class ConditionOperator(str, Enum):
    """Operators for guard conditions"""
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    GREATER_THAN_OR_EQUALS = "GREATER_THAN_OR_EQUALS"
    LESS_THAN_OR_EQUALS = "LESS_THAN_OR_EQUALS"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    IN = "IN"
    NOT_IN = "NOT_IN"
    IS_EMPTY = "IS_EMPTY"
    IS_NOT_EMPTY = "IS_NOT_EMPTY"

    @property
    def is_ordering(self) -> bool:
        return self in (
            ConditionOperator.GREATER_THAN,
            ConditionOperator.LESS_THAN,
            ConditionOperator.GREATER_THAN_OR_EQUALS,
            ConditionOperator.LESS_THAN_OR_EQUALS,
        )

    @property
    def tolerates_missing(self) -> bool:
        return self in (ConditionOperator.IS_EMPTY, ConditionOperator.IS_NOT_EMPTY)


class NotificationStatus(str, Enum):
    """Notification outbox status"""
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"

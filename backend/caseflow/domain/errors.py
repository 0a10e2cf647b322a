"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a response dict for the calling module"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class DefinitionError(ValidationError):
    """Workflow definition is malformed or inconsistent (fatal at startup)"""
    error_code = "DEFINITION_ERROR"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class DefinitionNotFoundError(NotFoundError):
    """Workflow definition not registered"""
    error_code = "DEFINITION_NOT_FOUND"


class InstanceNotFoundError(NotFoundError):
    """Workflow instance not found"""
    error_code = "INSTANCE_NOT_FOUND"


class TaskNotFoundError(NotFoundError):
    """Pending task not found"""
    error_code = "TASK_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class TerminalStateError(ConflictError):
    """Instance is completed or cancelled and accepts no further events"""
    error_code = "TERMINAL_STATE"


class ConcurrentModificationError(ConflictError):
    """Optimistic concurrency conflict persisted after retries"""
    error_code = "CONCURRENT_MODIFICATION"


class InvalidStateError(ConflictError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"


# Engine Errors
class EngineError(DomainError):
    """Workflow engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500


class GuardEvaluationError(EngineError):
    """Guard could not be evaluated against the instance context"""
    error_code = "GUARD_ERROR"
    http_status = 400


class PersistenceError(EngineError):
    """Datastore call failed (after retry when raised by the engine)"""
    error_code = "PERSISTENCE_ERROR"
    http_status = 503


class VersionConflictError(EngineError):
    """Conditional instance write found a different version"""
    error_code = "VERSION_CONFLICT"
    http_status = 409

"""Domain Errors - Centralized Exception Hierarchy

Five families reach callers: ValidationError, PermissionDeniedError,
StateError, ConflictError and NotFoundError. Only ConflictError is meant
to be retried automatically.
"""
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
        """Convert error to a serializable dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Validation Errors
class ValidationError(DomainError):
    """Malformed input"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class WorkflowValidationError(ValidationError):
    """Workflow definition validation failed"""
    error_code = "WORKFLOW_VALIDATION_ERROR"


class MetadataValidationError(ValidationError):
    """Instance metadata does not match the payload of the workflow kind"""
    error_code = "METADATA_VALIDATION_ERROR"


# Authorization Errors
class AuthorizationError(DomainError):
    """Actor lacks permission for action"""
    error_code = "AUTHORIZATION_ERROR"
    http_status = 403


class PermissionDeniedError(AuthorizationError):
    """Actor is not eligible for the role the action requires"""
    error_code = "PERMISSION_DENIED"


# State Errors
class StateError(DomainError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"
    http_status = 409


class TerminalStateError(StateError):
    """Record already reached a terminal status"""
    error_code = "TERMINAL_STATE"


class AlreadyRunningError(StateError):
    """A live instance or open round already exists for the subject"""
    error_code = "ALREADY_RUNNING"


class DefinitionInactiveError(StateError):
    """Workflow definition is not active"""
    error_code = "DEFINITION_INACTIVE"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class ConcurrencyError(ConflictError):
    """Optimistic concurrency conflict"""
    error_code = "CONCURRENCY_CONFLICT"


class AlreadyExistsError(ConflictError):
    """Resource already exists"""
    error_code = "ALREADY_EXISTS"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class DefinitionNotFoundError(NotFoundError):
    """Workflow definition not found"""
    error_code = "DEFINITION_NOT_FOUND"


class InstanceNotFoundError(NotFoundError):
    """Workflow instance not found"""
    error_code = "INSTANCE_NOT_FOUND"


class StepNotFoundError(NotFoundError):
    """Step execution not found"""
    error_code = "STEP_NOT_FOUND"


class MemberNotFoundError(NotFoundError):
    """Committee member not found"""
    error_code = "MEMBER_NOT_FOUND"


class RoundNotFoundError(NotFoundError):
    """No review round for the subject"""
    error_code = "ROUND_NOT_FOUND"


class ReviewNotFoundError(NotFoundError):
    """No pending review for the member in the current round"""
    error_code = "REVIEW_NOT_FOUND"

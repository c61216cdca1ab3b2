"""
Workflow Error Hierarchy

Typed exceptions raised by the approval engine. Every error is a
recoverable-by-caller condition; the engine validates before it mutates, so
catching one of these means no state was written.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base exception for all approval engine errors.

    A single ``except WorkflowError`` in the surrounding application layer
    catches the whole hierarchy.
    """

    error_code = "workflow_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for API error responses"""
        return {
            'error_code': self.error_code,
            'message': self.message,
            'details': self.details
        }


class NotFoundError(WorkflowError):
    """Raised when a definition or instance does not exist."""

    error_code = "not_found"


class ConflictError(WorkflowError):
    """Raised when an action conflicts with existing state (e.g. a second in-flight instance)."""

    error_code = "conflict"


class InvalidStateError(WorkflowError):
    """Raised when an operation is illegal for the instance's current status."""

    error_code = "invalid_state"


class StepNotActiveError(WorkflowError):
    """Raised when a decision targets a step that is not currently actionable."""

    error_code = "step_not_active"


class UnauthorizedActionError(WorkflowError):
    """Raised when the actor fails the step's approver rule."""

    error_code = "unauthorized_action"


class ValidationError(WorkflowError, ValueError):
    """Raised for malformed input: bad definitions, unknown actions, bad delegation targets."""

    error_code = "validation_error"


class PersistenceError(WorkflowError):
    """Raised when committing a state transition fails; the caller may retry."""

    error_code = "persistence_error"

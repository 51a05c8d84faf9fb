"""Error taxonomy for change workflow operations.

- InvalidStateError: operation not valid for the change's current status
- ForbiddenError: actor lacks the role or ownership the operation requires
- NotFoundError: change (or related entity) does not exist
- InternalError: storage failure while applying an operation

User-facing callers return these unchanged; the scheduler records them on
the automation row instead of retrying.
"""
from typing import Optional

from .models import ChangeStatus


class ChangeWorkflowError(Exception):
    """Base class for change workflow errors."""

    error_code = "workflow_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict:
        """Structured error body for API responses."""
        return {"error": self.error_code, "message": self.message}


class InvalidStateError(ChangeWorkflowError):
    """Raised when an operation is not valid for the change's current status."""

    error_code = "invalid_state"

    def __init__(
        self,
        message: str,
        current_status: Optional[ChangeStatus] = None,
        allowed_statuses: Optional[list[ChangeStatus]] = None,
    ):
        super().__init__(message)
        self.current_status = current_status
        self.allowed_statuses = allowed_statuses or []

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["current_status"] = self.current_status.value if self.current_status else None
        detail["allowed_statuses"] = [s.value for s in self.allowed_statuses]
        return detail


class ForbiddenError(ChangeWorkflowError):
    """Raised when the actor lacks the role or ownership for an operation."""

    error_code = "permission_denied"

    def __init__(
        self,
        message: str,
        required_role: Optional[str] = None,
        current_role: Optional[str] = None,
    ):
        super().__init__(message)
        self.required_role = required_role
        self.current_role = current_role

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["required_role"] = self.required_role
        detail["current_role"] = self.current_role
        return detail


class NotFoundError(ChangeWorkflowError):
    """Raised when a change or related entity does not exist."""

    error_code = "not_found"

    def __init__(self, resource_type: str, resource_id):
        super().__init__(f"{resource_type.capitalize()} not found: {resource_id}")
        self.resource_type = resource_type
        self.resource_id = resource_id


class InternalError(ChangeWorkflowError):
    """Raised when the store fails while applying an operation."""

    error_code = "internal_error"

"""State machine validation for change lifecycle status transitions.

Enforces valid status transitions to maintain workflow integrity:
- Changes must be approved before they can start (draft → pending → approved)
- Only the automation scheduler moves approved changes to in_progress
- Completed, failed and cancelled changes are terminal
- Provides clear error messages for blocked transitions

Lifecycle: draft -> pending -> approved -> in_progress -> completed | failed
Rejection: pending | in_progress -> cancelled
"""
import logging

from .models import ChangeStatus

logger = logging.getLogger("changeflow-core.state_machine")


class ChangeStateTransitionError(Exception):
    """Raised when an invalid change state transition is attempted."""

    def __init__(
        self,
        message: str,
        current_status: ChangeStatus,
        requested_status: ChangeStatus,
        allowed_transitions: list[ChangeStatus]
    ):
        super().__init__(message)
        self.message = message
        self.current_status = current_status
        self.requested_status = requested_status
        self.allowed_transitions = allowed_transitions


# Change state machine transition matrix
# Maps current status → list of allowed next statuses
CHANGE_TRANSITION_MATRIX: dict[ChangeStatus, list[ChangeStatus]] = {
    ChangeStatus.DRAFT: [
        ChangeStatus.DRAFT,         # No-op (allowed)
        ChangeStatus.PENDING,       # Forward: approval requested
    ],
    ChangeStatus.PENDING: [
        ChangeStatus.PENDING,       # No-op (allowed)
        ChangeStatus.APPROVED,      # Forward: approved by a manager
        ChangeStatus.CANCELLED,     # Terminal: rejected
    ],
    ChangeStatus.APPROVED: [
        ChangeStatus.APPROVED,      # No-op (allowed)
        ChangeStatus.IN_PROGRESS,   # Forward: auto-started at scheduled time
    ],
    ChangeStatus.IN_PROGRESS: [
        ChangeStatus.IN_PROGRESS,   # No-op (allowed)
        ChangeStatus.COMPLETED,     # Terminal: assignee reports success
        ChangeStatus.FAILED,        # Terminal: assignee reports failure
        ChangeStatus.CANCELLED,     # Terminal: rejection landing after auto-start
    ],
    ChangeStatus.COMPLETED: [
        ChangeStatus.COMPLETED,     # No-op (allowed)
    ],
    ChangeStatus.FAILED: [
        ChangeStatus.FAILED,        # No-op (allowed)
    ],
    ChangeStatus.CANCELLED: [
        ChangeStatus.CANCELLED,     # No-op (allowed)
    ],
}

TERMINAL_STATUSES = frozenset({ChangeStatus.COMPLETED, ChangeStatus.FAILED, ChangeStatus.CANCELLED})


def is_change_transition_valid(
    current_status: ChangeStatus,
    new_status: ChangeStatus
) -> bool:
    """
    Check if a change status transition is valid.

    Args:
        current_status: Current lifecycle status
        new_status: Requested new lifecycle status

    Returns:
        True if transition is allowed, False otherwise
    """
    allowed_transitions = CHANGE_TRANSITION_MATRIX.get(current_status, [])
    return new_status in allowed_transitions


def validate_change_transition(
    current_status: ChangeStatus,
    new_status: ChangeStatus
) -> None:
    """
    Validate a change status transition and raise exception if invalid.

    Args:
        current_status: Current lifecycle status
        new_status: Requested new lifecycle status

    Raises:
        ChangeStateTransitionError: If the transition is not allowed
    """
    # No-op transitions are always allowed (setting same status)
    if current_status == new_status:
        logger.debug(f"No-op change transition: {current_status.value} → {new_status.value}")
        return

    if not is_change_transition_valid(current_status, new_status):
        allowed_transitions = CHANGE_TRANSITION_MATRIX.get(current_status, [])
        allowed_names = [s.value for s in allowed_transitions if s != current_status]

        error_msg = f"Invalid change status transition: {current_status.value} → {new_status.value}."
        if allowed_names:
            error_msg += f" From {current_status.value}, you can only transition to: {', '.join(allowed_names)}."

        # Add helpful guidance based on the attempted transition
        if current_status in TERMINAL_STATUSES:
            error_msg += f" {current_status.value.capitalize()} changes are terminal. Create a new change for additional work."
        elif current_status == ChangeStatus.DRAFT:
            error_msg += " Request approval first."
        elif current_status == ChangeStatus.PENDING and new_status == ChangeStatus.IN_PROGRESS:
            error_msg += " Changes must be approved before they can start."
        elif current_status == ChangeStatus.APPROVED and new_status in (ChangeStatus.COMPLETED, ChangeStatus.FAILED):
            error_msg += " Changes must be in progress before an outcome can be reported."

        logger.warning(f"Blocked change transition: {error_msg}")
        raise ChangeStateTransitionError(
            message=error_msg,
            current_status=current_status,
            requested_status=new_status,
            allowed_transitions=allowed_transitions
        )

    logger.debug(f"Valid change transition: {current_status.value} → {new_status.value}")


def get_allowed_change_transitions(current_status: ChangeStatus) -> list[ChangeStatus]:
    """
    Get list of allowed transitions from current status.

    Args:
        current_status: Current lifecycle status

    Returns:
        List of allowed next statuses (excluding no-op same status)
    """
    all_transitions = CHANGE_TRANSITION_MATRIX.get(current_status, [])
    # Filter out the no-op transition (same status)
    return [s for s in all_transitions if s != current_status]


def is_terminal_status(status: ChangeStatus) -> bool:
    """Check if a change status is terminal (no further transitions)."""
    return status in TERMINAL_STATUSES


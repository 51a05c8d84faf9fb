"""CRUD operations for changes and their approval, automation and completion ledgers.

These functions never commit: the lifecycle engine and the scheduler own the
transaction boundaries so that a status write and its ledger writes succeed
or fail together.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import case
from sqlalchemy.orm import Session

from . import models
from .principals import Actor

logger = logging.getLogger("changeflow-core.crud")


# =============================================================================
# Users
# =============================================================================

def get_user(db: Session, user_id: UUID) -> Optional[models.User]:
    """Get a user by UUID."""
    return db.query(models.User).filter(models.User.id == user_id).first()


def list_approvers(db: Session, organization_id: UUID) -> list[models.User]:
    """Get all users in an organization holding an approver role."""
    return (
        db.query(models.User)
        .filter(
            models.User.organization_id == organization_id,
            models.User.role.in_(list(models.APPROVER_ROLES)),
        )
        .order_by(models.User.created_at)
        .all()
    )


# =============================================================================
# Changes
# =============================================================================

def get_change(db: Session, change_id: UUID) -> Optional[models.Change]:
    """Get a change by UUID."""
    return db.query(models.Change).filter(models.Change.id == change_id).first()


def create_change(
    db: Session,
    organization_id: UUID,
    title: str,
    requested_by: UUID,
    description: Optional[str] = None,
    assigned_to: Optional[UUID] = None,
    scheduled_for: Optional[datetime] = None,
    estimated_end_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> models.Change:
    """
    Create a new change in draft status.

    Args:
        db: Database session
        organization_id: Owning organization
        title: Change title
        requested_by: UUID of the requesting user
        description: Optional description
        assigned_to: UUID of the user carrying the change out
        scheduled_for: When an approved change should auto-start
        estimated_end_time: When a completion check should fire
        now: Creation timestamp (defaults to current UTC time)

    Returns:
        Created Change object (flushed, not committed)
    """
    now = now or models.utcnow()
    change = models.Change(
        organization_id=organization_id,
        title=title,
        description=description,
        status=models.ChangeStatus.DRAFT,
        requested_by=requested_by,
        assigned_to=assigned_to,
        scheduled_for=scheduled_for,
        estimated_end_time=estimated_end_time,
        created_at=now,
        updated_at=now,
    )
    db.add(change)
    db.flush()

    db.add(models.ChangeStatusHistory(
        change_id=change.id,
        from_status=None,
        to_status=models.ChangeStatus.DRAFT,
        changed_by=requested_by,
        changed_by_system=False,
        reason="Change created",
        changed_at=now,
    ))
    return change


def update_change_status(
    db: Session,
    change: models.Change,
    expected_status: models.ChangeStatus,
    new_status: models.ChangeStatus,
    actor: Actor,
    now: datetime,
    reason: Optional[str] = None,
    **extra_fields,
) -> bool:
    """
    Conditionally move a change from expected_status to new_status.

    The UPDATE carries `WHERE status = expected_status`, so of two writers
    racing on the same change only the first applies. A status history row is
    appended in the same transaction when the write applies.

    Args:
        db: Database session
        change: Change being transitioned (used for its id)
        expected_status: Status the caller validated against
        new_status: Target status
        actor: Actor causing the transition
        now: Transition timestamp
        reason: Optional audit reason
        **extra_fields: Additional column values written with the status

    Returns:
        True if the row was updated, False if its status had already moved
    """
    values = {"status": new_status, "updated_at": now}
    values.update(extra_fields)

    updated = (
        db.query(models.Change)
        .filter(
            models.Change.id == change.id,
            models.Change.status == expected_status,
        )
        .update(values, synchronize_session=False)
    )
    if not updated:
        return False

    db.add(models.ChangeStatusHistory(
        change_id=change.id,
        from_status=expected_status,
        to_status=new_status,
        changed_by=actor.user_id,
        changed_by_system=actor.is_system,
        reason=reason,
        changed_at=now,
    ))
    return True


def read_change_status(db: Session, change_id: UUID) -> Optional[models.ChangeStatus]:
    """Read the stored status of a change without loading the entity."""
    row = (
        db.query(models.Change.status)
        .filter(models.Change.id == change_id)
        .first()
    )
    return row[0] if row else None


def get_status_history(db: Session, change_id: UUID) -> list[models.ChangeStatusHistory]:
    """Get the status history of a change, oldest first."""
    return (
        db.query(models.ChangeStatusHistory)
        .filter(models.ChangeStatusHistory.change_id == change_id)
        .order_by(models.ChangeStatusHistory.changed_at.asc())
        .all()
    )


# =============================================================================
# Approval ledger
# =============================================================================

def get_approval(db: Session, change_id: UUID) -> Optional[models.ChangeApproval]:
    """Get the approval record of a change."""
    return (
        db.query(models.ChangeApproval)
        .filter(models.ChangeApproval.change_id == change_id)
        .first()
    )


def upsert_approval(
    db: Session,
    change: models.Change,
    status: models.ApprovalStatus,
    now: datetime,
    requested_by: Optional[UUID] = None,
    approved_by: Optional[UUID] = None,
    comments: Optional[str] = None,
) -> models.ChangeApproval:
    """
    Create the approval record of a change, or update the existing one.

    A pending upsert (new request) resets the decision fields; a decision
    upsert records who responded and when.
    """
    approval = get_approval(db, change.id)
    if approval is None:
        approval = models.ChangeApproval(
            organization_id=change.organization_id,
            change_id=change.id,
            requested_by=requested_by or change.requested_by,
            requested_at=now,
        )
        db.add(approval)

    approval.status = status
    if status == models.ApprovalStatus.PENDING:
        if requested_by:
            approval.requested_by = requested_by
        approval.requested_at = now
        approval.approved_by = None
        approval.comments = None
        approval.responded_at = None
    else:
        approval.approved_by = approved_by
        approval.comments = comments
        approval.responded_at = now

    db.flush()
    return approval


# =============================================================================
# Automation ledger
# =============================================================================

def create_automation(
    db: Session,
    change: models.Change,
    automation_type: models.AutomationType,
    scheduled_for: datetime,
    now: datetime,
) -> models.ChangeAutomation:
    """Append a scheduled action for a change."""
    automation = models.ChangeAutomation(
        organization_id=change.organization_id,
        change_id=change.id,
        automation_type=automation_type,
        scheduled_for=scheduled_for,
        executed=False,
        created_at=now,
    )
    db.add(automation)
    db.flush()
    return automation


def get_outstanding_automation(
    db: Session,
    change_id: UUID,
    automation_type: models.AutomationType,
) -> Optional[models.ChangeAutomation]:
    """Get an unexecuted automation of the given type for a change, if any."""
    return (
        db.query(models.ChangeAutomation)
        .filter(
            models.ChangeAutomation.change_id == change_id,
            models.ChangeAutomation.automation_type == automation_type,
            models.ChangeAutomation.executed == False,  # noqa: E712
        )
        .first()
    )


# A change starts before anyone is asked whether it finished
_automation_type_rank = case(
    (models.ChangeAutomation.automation_type == models.AutomationType.AUTO_START, 0),
    else_=1,
)


def list_automations(db: Session, change_id: UUID) -> list[models.ChangeAutomation]:
    """Get every automation record of a change, in creation order."""
    return (
        db.query(models.ChangeAutomation)
        .filter(models.ChangeAutomation.change_id == change_id)
        .order_by(models.ChangeAutomation.created_at.asc(), _automation_type_rank)
        .all()
    )


def list_due_automations(db: Session, now: datetime, limit: int) -> list[models.ChangeAutomation]:
    """
    Get unexecuted automations whose scheduled time has arrived.

    Most-due first; ties fall back to insertion order. Records of one approval
    share a creation time, so auto_start sorts ahead of completion_prompt.
    """
    return (
        db.query(models.ChangeAutomation)
        .filter(
            models.ChangeAutomation.executed == False,  # noqa: E712
            models.ChangeAutomation.scheduled_for <= now,
        )
        .order_by(
            models.ChangeAutomation.scheduled_for.asc(),
            models.ChangeAutomation.created_at.asc(),
            _automation_type_rank,
        )
        .limit(limit)
        .all()
    )


def claim_automation(
    db: Session,
    automation_id: UUID,
    now: datetime,
    error_message: Optional[str] = None,
) -> bool:
    """
    Mark an automation executed if nobody else has.

    Conditional on `executed = false`: among concurrent sweeps only the first
    writer gets True and may apply the action.
    """
    values = {"executed": True, "executed_at": now}
    if error_message is not None:
        values["error_message"] = error_message

    claimed = (
        db.query(models.ChangeAutomation)
        .filter(
            models.ChangeAutomation.id == automation_id,
            models.ChangeAutomation.executed == False,  # noqa: E712
        )
        .update(values, synchronize_session=False)
    )
    return bool(claimed)


def record_automation_error(db: Session, automation_id: UUID, error_message: str) -> None:
    """Attach an explanation to an automation record."""
    (
        db.query(models.ChangeAutomation)
        .filter(models.ChangeAutomation.id == automation_id)
        .update({"error_message": error_message}, synchronize_session=False)
    )


def supersede_automations(
    db: Session,
    change_id: UUID,
    now: datetime,
    reason: str,
    automation_type: Optional[models.AutomationType] = None,
) -> int:
    """
    Mark every outstanding automation of a change executed.

    Args:
        db: Database session
        change_id: Change UUID
        now: Execution timestamp to record
        reason: Stored as error_message to explain why nothing ran
        automation_type: Restrict to one automation type (all types if None)

    Returns:
        Number of records marked executed
    """
    query = db.query(models.ChangeAutomation).filter(
        models.ChangeAutomation.change_id == change_id,
        models.ChangeAutomation.executed == False,  # noqa: E712
    )
    if automation_type is not None:
        query = query.filter(models.ChangeAutomation.automation_type == automation_type)

    return query.update(
        {"executed": True, "executed_at": now, "error_message": reason},
        synchronize_session=False,
    )


def list_pending_automations(db: Session, limit: int = 200) -> list[models.ChangeAutomation]:
    """Get unexecuted automations, soonest first."""
    return (
        db.query(models.ChangeAutomation)
        .filter(models.ChangeAutomation.executed == False)  # noqa: E712
        .order_by(models.ChangeAutomation.scheduled_for.asc())
        .limit(limit)
        .all()
    )


def list_recent_automations(db: Session, since: datetime, limit: int = 50) -> list[models.ChangeAutomation]:
    """Get automations executed since the given time, newest first."""
    return (
        db.query(models.ChangeAutomation)
        .filter(
            models.ChangeAutomation.executed == True,  # noqa: E712
            models.ChangeAutomation.executed_at >= since,
        )
        .order_by(models.ChangeAutomation.executed_at.desc())
        .limit(limit)
        .all()
    )


# =============================================================================
# Completion responses
# =============================================================================

def create_completion_response(
    db: Session,
    change: models.Change,
    responded_by: UUID,
    outcome: models.CompletionOutcome,
    notes: Optional[str],
    now: datetime,
) -> models.ChangeCompletionResponse:
    """Append a completion response for a change."""
    response = models.ChangeCompletionResponse(
        organization_id=change.organization_id,
        change_id=change.id,
        responded_by=responded_by,
        outcome=outcome,
        notes=notes,
        responded_at=now,
    )
    db.add(response)
    db.flush()
    return response


def get_latest_completion_response(
    db: Session,
    change_id: UUID,
) -> Optional[models.ChangeCompletionResponse]:
    """Get the most recent completion response of a change."""
    return (
        db.query(models.ChangeCompletionResponse)
        .filter(models.ChangeCompletionResponse.change_id == change_id)
        .order_by(models.ChangeCompletionResponse.responded_at.desc())
        .first()
    )

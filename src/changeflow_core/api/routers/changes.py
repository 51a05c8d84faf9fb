"""API endpoints for the change approval and completion workflow.

Change Lifecycle: draft -> pending -> approved -> in_progress -> completed | failed
Rejection: pending | in_progress -> cancelled

Approval and completion endpoints return 4xx with a precise reason for state
and permission violations; notification delivery never affects the response.
"""
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from changeflow_core import crud, lifecycle, schemas
from changeflow_core.clock import Clock, system_clock
from changeflow_core.database import get_db
from changeflow_core.errors import (
    ChangeWorkflowError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from changeflow_core.models import ApprovalDecision
from changeflow_core.principals import Actor

from ..dependencies import get_current_actor

logger = logging.getLogger("changeflow-core.changes")

router = APIRouter(tags=["changes"])


def get_clock() -> Clock:
    """Time source for workflow operations (overridden in tests)."""
    return system_clock


def _handle_workflow_error(e: ChangeWorkflowError) -> HTTPException:
    """Convert a workflow error to an HTTPException with a structured detail."""
    if isinstance(e, InvalidStateError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(e, ForbiddenError):
        status_code = status.HTTP_403_FORBIDDEN
    elif isinstance(e, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=status_code, detail=e.to_detail())


def _get_visible_change(db: Session, change_id: UUID, actor: Actor):
    change = crud.get_change(db, change_id)
    if not change or change.organization_id != actor.organization_id:
        raise _handle_workflow_error(NotFoundError("change", change_id))
    return change


@router.post("/", response_model=schemas.ChangeResponse, status_code=status.HTTP_201_CREATED)
def create_change(
    change_data: schemas.ChangeCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Create a new change in draft status.

    The caller becomes the requester. Set scheduled_for to have the change
    start automatically once approved, and estimated_end_time to have the
    assignee asked for an outcome.
    """
    if change_data.assigned_to:
        assignee = crud.get_user(db, change_data.assigned_to)
        if not assignee or assignee.organization_id != actor.organization_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Assignee not found in organization: {change_data.assigned_to}",
            )

    if (
        change_data.scheduled_for
        and change_data.estimated_end_time
        and change_data.estimated_end_time < change_data.scheduled_for
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="estimated_end_time must not be before scheduled_for",
        )

    try:
        change = crud.create_change(
            db,
            organization_id=actor.organization_id,
            title=change_data.title,
            requested_by=actor.user_id,
            description=change_data.description,
            assigned_to=change_data.assigned_to,
            scheduled_for=change_data.scheduled_for,
            estimated_end_time=change_data.estimated_end_time,
            now=clock.now(),
        )
        db.commit()
        db.refresh(change)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating change: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create change")

    logger.info(f"Created change {change.id}: {change.title}")
    return change


@router.get("/{change_id}", response_model=schemas.ChangeResponse)
def get_change(
    change_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Get a change by UUID."""
    return _get_visible_change(db, change_id, actor)


@router.get("/{change_id}/status-history", response_model=schemas.StatusHistoryResponse)
def get_status_history(
    change_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Get every status transition of a change, oldest first."""
    _get_visible_change(db, change_id, actor)
    history = crud.get_status_history(db, change_id)
    return schemas.StatusHistoryResponse(
        change_id=change_id,
        status_history=[schemas.StatusHistoryEntry.model_validate(h) for h in history],
    )


@router.post("/{change_id}/approval", response_model=schemas.ApprovalRequestResult)
def request_approval(
    change_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Request approval for a draft change (draft -> pending).

    Only the requester or the assignee may request approval. Every manager
    in the organization is notified.
    """
    try:
        result = lifecycle.request_approval(db, change_id, actor, clock=clock)
    except ChangeWorkflowError as e:
        raise _handle_workflow_error(e)

    return schemas.ApprovalRequestResult(
        message="Approval requested successfully",
        approval=schemas.ApprovalResponse.model_validate(result.approval),
        managers_notified=result.dispatch.notifications,
    )


@router.get("/{change_id}/approval", response_model=schemas.ApprovalEnvelope)
def get_approval(
    change_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Get the approval record of a change, or null if approval was never requested."""
    _get_visible_change(db, change_id, actor)
    approval = crud.get_approval(db, change_id)
    return schemas.ApprovalEnvelope(
        approval=schemas.ApprovalResponse.model_validate(approval) if approval else None
    )


@router.put("/{change_id}/approval", response_model=schemas.ApprovalDecisionResult)
def decide_approval(
    change_id: UUID,
    decision: schemas.ApprovalDecisionRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Approve or reject a pending change.

    Requires the manager role or above. Approving schedules the auto-start
    (at scheduled_for) and the completion prompt (at estimated_end_time).
    A change the scheduler already started keeps its in_progress status; the
    decision is still recorded. Rejecting cancels the change.
    """
    try:
        result = lifecycle.decide_approval(
            db, change_id, actor, decision.action, comments=decision.comments, clock=clock
        )
    except ChangeWorkflowError as e:
        raise _handle_workflow_error(e)

    verb = "approved" if decision.action == ApprovalDecision.APPROVE else "rejected"
    return schemas.ApprovalDecisionResult(
        message=f"Change {verb} successfully",
        action=decision.action,
        change_status=result.change.status,
        approval=schemas.ApprovalResponse.model_validate(result.approval),
        automations_scheduled=len(result.automations),
    )


@router.post("/{change_id}/completion", response_model=schemas.CompletionResult)
def report_completion(
    change_id: UUID,
    report: schemas.CompletionReport,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Report the outcome of an in-progress change (assignee only).

    Moves the change to completed or failed and supersedes any pending
    completion prompt.
    """
    try:
        result = lifecycle.report_completion(
            db, change_id, actor, report.outcome, notes=report.notes, clock=clock
        )
    except ChangeWorkflowError as e:
        raise _handle_workflow_error(e)

    return schemas.CompletionResult(
        message=f"Change marked as {report.outcome.value} successfully",
        response=schemas.CompletionResponseItem.model_validate(result.completion),
        new_status=result.change.status,
    )


@router.get("/{change_id}/completion", response_model=schemas.CompletionEnvelope)
def get_completion(
    change_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Get the latest completion response of a change, or null."""
    _get_visible_change(db, change_id, actor)
    response = crud.get_latest_completion_response(db, change_id)
    return schemas.CompletionEnvelope(
        response=schemas.CompletionResponseItem.model_validate(response) if response else None
    )


@router.delete("/{change_id}/automations", response_model=schemas.AutomationCancelResult)
def cancel_automations(
    change_id: UUID,
    body: schemas.AutomationCancelRequest = schemas.AutomationCancelRequest(),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Cancel the scheduled automations of a change that have not run yet.

    Requires the manager role or above. The change status is not modified.
    """
    try:
        result = lifecycle.cancel_pending_automations(
            db, change_id, actor, reason=body.reason, clock=clock
        )
    except ChangeWorkflowError as e:
        raise _handle_workflow_error(e)

    return schemas.AutomationCancelResult(
        message=f"Cancelled {result.cancelled_automations} pending automation(s)",
        cancelled=result.cancelled_automations,
    )

"""Change lifecycle engine: guarded transitions for user actions and automation.

Every operation follows the same shape: read the change, validate the actor
and the current status, apply a conditional status write together with its
ledger writes, commit, and only then hand notifications and comments to the
side-effect dispatcher.

User operations:
- request_approval: draft -> pending (requester or assignee)
- decide_approval: pending -> approved | cancelled, in_progress stays (approver)
- report_completion: in_progress -> completed | failed (assignee)
- cancel_pending_automations: drops scheduled actions, status untouched (approver)

Scheduler operations (system principal only):
- auto_start: approved -> in_progress
- prompt_completion: asks the assignee for an outcome, status untouched
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, models, side_effects
from .clock import Clock, system_clock
from .errors import (
    ChangeWorkflowError,
    ForbiddenError,
    InternalError,
    InvalidStateError,
    NotFoundError,
)
from .models import ApprovalDecision, ApprovalStatus, AutomationType, ChangeStatus, CompletionOutcome
from .principals import Actor
from .side_effects import DispatchReport, EffectBuilder, SideEffectDispatcher, default_dispatcher
from .state_machine import ChangeStateTransitionError, validate_change_transition

logger = logging.getLogger("changeflow-core.lifecycle")


@dataclass
class TransitionResult:
    """What an engine operation did."""

    change: models.Change
    previous_status: ChangeStatus
    approval: Optional[models.ChangeApproval] = None
    automations: list[models.ChangeAutomation] = field(default_factory=list)
    completion: Optional[models.ChangeCompletionResponse] = None
    cancelled_automations: int = 0
    dispatch: DispatchReport = field(default_factory=DispatchReport)

    @property
    def status_changed(self) -> bool:
        return self.change.status != self.previous_status


# =============================================================================
# Internal helpers
# =============================================================================

@contextmanager
def _unit_of_work(db: Session, operation: str, change_id: UUID):
    """Commit on success; roll back on any failure, mapping storage errors to InternalError."""
    try:
        yield
        db.commit()
    except ChangeWorkflowError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Storage failure during {operation} for change {change_id}: {e}", exc_info=True)
        raise InternalError(f"Failed to {operation}: storage error") from e


def _load_change(db: Session, change_id: UUID, actor: Actor) -> models.Change:
    change = crud.get_change(db, change_id)
    if change is None:
        raise NotFoundError("change", change_id)
    # Users only see changes of their own organization
    if not actor.is_system and actor.organization_id and change.organization_id != actor.organization_id:
        raise NotFoundError("change", change_id)
    return change


def _require_status(change: models.Change, allowed: Iterable[ChangeStatus], message: str) -> None:
    allowed = list(allowed)
    if change.status not in allowed:
        logger.warning(f"Blocked operation on change {change.id} in status {change.status.value}: {message}")
        raise InvalidStateError(message, current_status=change.status, allowed_statuses=allowed)


def _require_user(actor: Actor, operation: str) -> None:
    if actor.is_system or actor.user_id is None:
        raise ForbiddenError(
            f"The automation principal cannot {operation}",
            required_role="user",
            current_role=actor.role_name,
        )


def _require_system(actor: Actor, operation: str) -> None:
    if not actor.is_system:
        raise ForbiddenError(
            f"Only the automation scheduler can {operation}",
            required_role="system",
            current_role=actor.role_name,
        )


def _require_approver(actor: Actor) -> None:
    if not actor.can_approve:
        raise ForbiddenError(
            "Insufficient permissions. Manager role required.",
            required_role=models.MemberRole.MANAGER.value,
            current_role=actor.role_name,
        )


def _apply_status(
    db: Session,
    change: models.Change,
    new_status: ChangeStatus,
    actor: Actor,
    clock: Clock,
    reason: Optional[str] = None,
    **extra_fields,
) -> None:
    """Validate against the transition matrix and write conditionally on the status just read."""
    expected = change.status
    try:
        validate_change_transition(expected, new_status)
    except ChangeStateTransitionError as e:
        raise InvalidStateError(e.message, current_status=expected, allowed_statuses=e.allowed_transitions) from e

    applied = crud.update_change_status(
        db, change, expected, new_status, actor, clock.now(), reason=reason, **extra_fields
    )
    if not applied:
        current = crud.read_change_status(db, change.id)
        logger.warning(
            f"Lost status race on change {change.id}: expected {expected.value}, "
            f"found {current.value if current else 'missing'}"
        )
        raise InvalidStateError(
            f"Change status changed concurrently (now {current.value if current else 'unknown'})",
            current_status=current,
        )


def _dispatch(dispatcher: SideEffectDispatcher, db: Session, build: EffectBuilder) -> DispatchReport:
    """Build and write the effects of a committed transition; storage failures land in the report."""
    report = dispatcher.dispatch(db, build)
    if not report.ok:
        logger.warning(f"{report.failed} side effect(s) not delivered: {report.error}")
    return report


# =============================================================================
# User operations
# =============================================================================

def request_approval(
    db: Session,
    change_id: UUID,
    actor: Actor,
    clock: Clock = system_clock,
    dispatcher: SideEffectDispatcher = default_dispatcher,
) -> TransitionResult:
    """
    Submit a draft change for approval.

    Args:
        db: Database session
        change_id: Change UUID
        actor: Requester or assignee of the change
        clock: Time source
        dispatcher: Side-effect dispatcher

    Returns:
        TransitionResult with the pending approval record

    Raises:
        NotFoundError: Change does not exist
        ForbiddenError: Actor is neither requester nor assignee
        InvalidStateError: Change is not in draft
        InternalError: Storage failure
    """
    with _unit_of_work(db, "request approval", change_id):
        _require_user(actor, "request approval")
        change = _load_change(db, change_id, actor)

        if actor.user_id not in (change.requested_by, change.assigned_to):
            raise ForbiddenError(
                "Unauthorized to request approval for this change",
                required_role="requester_or_assignee",
                current_role=actor.role_name,
            )
        _require_status(change, [ChangeStatus.DRAFT], "Can only request approval for draft changes")

        previous = change.status
        now = clock.now()
        _apply_status(db, change, ChangeStatus.PENDING, actor, clock, reason="Approval requested")
        approval = crud.upsert_approval(
            db, change, ApprovalStatus.PENDING, now, requested_by=actor.user_id
        )

    logger.info(f"Approval requested for change {change_id} by {actor.display_name}")
    return TransitionResult(
        change=change,
        previous_status=previous,
        approval=approval,
        dispatch=_dispatch(dispatcher, db, lambda: side_effects.approval_requested_effects(db, change, actor)),
    )


def decide_approval(
    db: Session,
    change_id: UUID,
    actor: Actor,
    decision: ApprovalDecision,
    comments: Optional[str] = None,
    clock: Clock = system_clock,
    dispatcher: SideEffectDispatcher = default_dispatcher,
) -> TransitionResult:
    """
    Record an approval decision on a pending (or already auto-started) change.

    Approve moves pending to approved and schedules the change's automations.
    If the scheduler already moved the change to in_progress the status is
    left alone; the decision is still recorded. Reject cancels the change.
    The approval write, the status write and the automation inserts commit
    together or not at all.

    Raises:
        NotFoundError: Change does not exist
        ForbiddenError: Actor does not hold an approver role
        InvalidStateError: Change is neither pending nor in_progress
        InternalError: Storage failure
    """
    with _unit_of_work(db, "record approval decision", change_id):
        _require_approver(actor)
        change = _load_change(db, change_id, actor)
        _require_status(
            change,
            [ChangeStatus.PENDING, ChangeStatus.IN_PROGRESS],
            "Can only approve/reject pending changes",
        )

        previous = change.status
        now = clock.now()
        approve = decision == ApprovalDecision.APPROVE

        approval = crud.upsert_approval(
            db,
            change,
            ApprovalStatus.APPROVED if approve else ApprovalStatus.REJECTED,
            now,
            approved_by=actor.user_id,
            comments=comments,
        )

        automations: list[models.ChangeAutomation] = []
        if approve:
            if previous == ChangeStatus.PENDING:
                _apply_status(db, change, ChangeStatus.APPROVED, actor, clock, reason="Approved")
            automations = _schedule_automations(db, change, previous, now)
        else:
            _apply_status(db, change, ChangeStatus.CANCELLED, actor, clock, reason="Rejected")

    logger.info(
        f"Change {change_id} {'approved' if approve else 'rejected'} by {actor.display_name} "
        f"({len(automations)} automation(s) scheduled)"
    )
    return TransitionResult(
        change=change,
        previous_status=previous,
        approval=approval,
        automations=automations,
        dispatch=_dispatch(
            dispatcher, db, lambda: side_effects.approval_decided_effects(change, actor, decision, comments)
        ),
    )


def _schedule_automations(
    db: Session,
    change: models.Change,
    previous: ChangeStatus,
    now,
) -> list[models.ChangeAutomation]:
    """Create the auto-start and completion-prompt records an approval implies."""
    created = []

    # An already started change has nothing left to auto-start
    if change.scheduled_for and previous == ChangeStatus.PENDING:
        if not crud.get_outstanding_automation(db, change.id, AutomationType.AUTO_START):
            created.append(crud.create_automation(
                db, change, AutomationType.AUTO_START, change.scheduled_for, now
            ))

    if change.estimated_end_time:
        if not crud.get_outstanding_automation(db, change.id, AutomationType.COMPLETION_PROMPT):
            created.append(crud.create_automation(
                db, change, AutomationType.COMPLETION_PROMPT, change.estimated_end_time, now
            ))

    return created


def report_completion(
    db: Session,
    change_id: UUID,
    actor: Actor,
    outcome: CompletionOutcome,
    notes: Optional[str] = None,
    clock: Clock = system_clock,
    dispatcher: SideEffectDispatcher = default_dispatcher,
) -> TransitionResult:
    """
    Record the outcome of an in-progress change.

    Only the assignee may report. Any outstanding completion prompt for the
    change is marked executed, since the answer it would ask for is in.

    Raises:
        NotFoundError: Change does not exist
        ForbiddenError: Actor is not the assignee
        InvalidStateError: Change is not in progress
        InternalError: Storage failure
    """
    with _unit_of_work(db, "record completion", change_id):
        _require_user(actor, "report completion")
        change = _load_change(db, change_id, actor)

        if change.assigned_to is None or actor.user_id != change.assigned_to:
            raise ForbiddenError(
                "Only the assigned user can mark change completion",
                required_role="assignee",
                current_role=actor.role_name,
            )
        _require_status(
            change,
            [ChangeStatus.IN_PROGRESS],
            "Can only mark completion for in-progress changes",
        )

        previous = change.status
        now = clock.now()
        if outcome == CompletionOutcome.COMPLETED:
            _apply_status(db, change, ChangeStatus.COMPLETED, actor, clock,
                          reason=notes or "Completed", completed_at=now)
        else:
            _apply_status(db, change, ChangeStatus.FAILED, actor, clock, reason=notes or "Failed")

        completion = crud.create_completion_response(db, change, actor.user_id, outcome, notes, now)
        superseded = crud.supersede_automations(
            db,
            change.id,
            now,
            reason=f"Superseded by completion report ({outcome.value})",
            automation_type=AutomationType.COMPLETION_PROMPT,
        )

    logger.info(
        f"Change {change_id} marked {outcome.value} by {actor.display_name} "
        f"({superseded} completion prompt(s) superseded)"
    )
    return TransitionResult(
        change=change,
        previous_status=previous,
        completion=completion,
        cancelled_automations=superseded,
        dispatch=_dispatch(
            dispatcher, db, lambda: side_effects.completion_reported_effects(db, change, actor, outcome, notes)
        ),
    )


def cancel_pending_automations(
    db: Session,
    change_id: UUID,
    actor: Actor,
    reason: Optional[str] = None,
    clock: Clock = system_clock,
    dispatcher: SideEffectDispatcher = default_dispatcher,
) -> TransitionResult:
    """
    Stop every scheduled action of a change that has not run yet.

    The records are marked executed with an explanation; the change status is
    not touched, so an approved change stays approved and must be started by
    hand (or re-scheduled by a later approval).

    Raises:
        NotFoundError: Change does not exist
        ForbiddenError: Actor does not hold an approver role
        InternalError: Storage failure
    """
    with _unit_of_work(db, "cancel automations", change_id):
        _require_approver(actor)
        change = _load_change(db, change_id, actor)
        previous = change.status

        message = f"Cancelled by {actor.display_name}"
        if reason:
            message += f": {reason}"
        cancelled = crud.supersede_automations(db, change.id, clock.now(), reason=message)

    logger.info(f"Cancelled {cancelled} pending automation(s) for change {change_id}")

    def build():
        if not cancelled:
            return []
        return side_effects.automations_cancelled_effects(change, actor, cancelled, reason)

    return TransitionResult(
        change=change,
        previous_status=previous,
        cancelled_automations=cancelled,
        dispatch=_dispatch(dispatcher, db, build),
    )


# =============================================================================
# Scheduler operations
# =============================================================================

def auto_start(
    db: Session,
    change_id: UUID,
    actor: Actor,
    clock: Clock = system_clock,
    dispatcher: SideEffectDispatcher = default_dispatcher,
) -> TransitionResult:
    """
    Start an approved change whose scheduled time has arrived.

    The approved status is re-checked now, not when the action was scheduled;
    a change that has moved on (or was started by an overlapping sweep) is
    left untouched and InvalidStateError explains why.

    Raises:
        NotFoundError: Change no longer exists
        ForbiddenError: Actor is not the system principal
        InvalidStateError: Change is not approved
        InternalError: Storage failure
    """
    with _unit_of_work(db, "auto-start change", change_id):
        _require_system(actor, "auto-start changes")
        change = _load_change(db, change_id, actor)
        _require_status(
            change,
            [ChangeStatus.APPROVED],
            f"Change status is {change.status.value}, expected 'approved'",
        )
        previous = change.status
        _apply_status(db, change, ChangeStatus.IN_PROGRESS, actor, clock, reason="Auto-started as scheduled")

    logger.info(f"Auto-started change {change_id}")
    return TransitionResult(
        change=change,
        previous_status=previous,
        dispatch=_dispatch(dispatcher, db, lambda: side_effects.auto_started_effects(change, actor)),
    )


def prompt_completion(
    db: Session,
    change_id: UUID,
    actor: Actor,
    clock: Clock = system_clock,
    dispatcher: SideEffectDispatcher = default_dispatcher,
) -> TransitionResult:
    """
    Ask the assignee of an in-progress change to report its outcome.

    No status is written; the returned dispatch report tells the caller
    whether the prompt was delivered.

    Raises:
        NotFoundError: Change no longer exists
        ForbiddenError: Actor is not the system principal
        InvalidStateError: Change is not in progress or has no assignee
        InternalError: Storage failure
    """
    with _unit_of_work(db, "prompt completion", change_id):
        _require_system(actor, "send completion prompts")
        change = _load_change(db, change_id, actor)
        if change.status != ChangeStatus.IN_PROGRESS or change.assigned_to is None:
            raise InvalidStateError(
                f"Change status is {change.status.value} or no assigned user, "
                f"expected 'in_progress' with assigned user",
                current_status=change.status,
                allowed_statuses=[ChangeStatus.IN_PROGRESS],
            )
        previous = change.status

    logger.info(f"Sending completion prompt for change {change_id}")
    return TransitionResult(
        change=change,
        previous_status=previous,
        dispatch=_dispatch(dispatcher, db, lambda: side_effects.completion_prompt_effects(change)),
    )

"""Side-effect dispatch for committed change transitions.

Notifications and audit comments are written after the transition has been
committed, in a transaction of their own. A failure here is logged and
reported back, never raised: delivery is best-effort and at-least-once, and it
never turns a successful transition into a failed one.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Union
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, models
from .principals import Actor

logger = logging.getLogger("changeflow-core.side_effects")


@dataclass(frozen=True)
class NotificationIntent:
    """A notification to insert for one user."""

    organization_id: UUID
    user_id: UUID
    change_id: UUID
    type: models.NotificationType
    title: str
    message: str
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CommentIntent:
    """An audit comment to append to a change."""

    organization_id: UUID
    change_id: UUID
    content: str
    author_id: Optional[UUID] = None
    is_system: bool = False


SideEffect = Union[NotificationIntent, CommentIntent]
EffectBuilder = Callable[[], list[SideEffect]]


@dataclass
class DispatchReport:
    """Outcome of one dispatch call."""

    delivered: int = 0
    failed: int = 0
    error: Optional[str] = None
    notifications: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0


class SideEffectDispatcher:
    """Writes notification and comment intents; never raises."""

    def dispatch(self, db: Session, effects: Union[list[SideEffect], EffectBuilder]) -> DispatchReport:
        """
        Write the effects in their own transaction.

        Args:
            db: Database session (the transition must already be committed)
            effects: The intents, or a builder returning them; a builder runs
                inside the guard

        Returns:
            DispatchReport; a builder failure counts as one failed effect
        """
        try:
            if callable(effects):
                effects = effects()
            if not effects:
                return DispatchReport()
            for effect in effects:
                db.add(self._to_row(effect))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            failed = len(effects) if isinstance(effects, list) else 1
            logger.warning(
                f"Failed to dispatch {failed} side effect(s); transition already committed",
                exc_info=True,
            )
            return DispatchReport(delivered=0, failed=failed, error=str(e))

        notifications = sum(1 for effect in effects if isinstance(effect, NotificationIntent))
        logger.debug(f"Dispatched {len(effects)} side effect(s), {notifications} notification(s)")
        return DispatchReport(delivered=len(effects), notifications=notifications)

    @staticmethod
    def _to_row(effect: SideEffect):
        if isinstance(effect, NotificationIntent):
            return models.Notification(
                organization_id=effect.organization_id,
                user_id=effect.user_id,
                change_id=effect.change_id,
                type=effect.type,
                title=effect.title,
                message=effect.message,
                data=effect.data,
            )
        return models.Comment(
            organization_id=effect.organization_id,
            change_id=effect.change_id,
            author_id=effect.author_id,
            is_system=effect.is_system,
            content=effect.content,
        )


default_dispatcher = SideEffectDispatcher()


# =============================================================================
# Intent builders (one per workflow event)
# =============================================================================

def _comment(change: models.Change, actor: Actor, label: str, text: str) -> CommentIntent:
    return CommentIntent(
        organization_id=change.organization_id,
        change_id=change.id,
        content=f"**{label}** | {text}",
        author_id=actor.user_id,
        is_system=actor.is_system,
    )


def _notify(change: models.Change, user_id: UUID, type_: models.NotificationType,
            title: str, message: str, data: dict) -> NotificationIntent:
    return NotificationIntent(
        organization_id=change.organization_id,
        user_id=user_id,
        change_id=change.id,
        type=type_,
        title=title,
        message=message,
        data={"changeId": str(change.id), **data},
    )


def approval_requested_effects(db: Session, change: models.Change, actor: Actor) -> list[SideEffect]:
    """Notify every approver in the organization, plus an audit comment."""
    effects: list[SideEffect] = []
    for approver in crud.list_approvers(db, change.organization_id):
        if approver.id == actor.user_id:
            continue
        effects.append(_notify(
            change, approver.id, models.NotificationType.CHANGE_APPROVAL_REQUEST,
            "Change Approval Required",
            f"{actor.display_name} has requested approval for change: {change.title}",
            {"changeTitle": change.title},
        ))
    effects.append(_comment(change, actor, "APPROVAL REQUESTED", "Submitted for manager review"))
    return effects


def approval_decided_effects(
    change: models.Change,
    actor: Actor,
    decision: models.ApprovalDecision,
    comments: Optional[str],
) -> list[SideEffect]:
    """Notify the requester of the decision, plus an audit comment."""
    approved = decision == models.ApprovalDecision.APPROVE
    label = "APPROVED" if approved else "REJECTED"
    verb = "approved" if approved else "rejected"

    effects: list[SideEffect] = []
    if change.requested_by:
        message = f'Your change "{change.title}" has been {verb} by {actor.display_name}'
        if comments:
            message += f". Comments: {comments}"
        effects.append(_notify(
            change, change.requested_by,
            models.NotificationType.CHANGE_APPROVED if approved else models.NotificationType.CHANGE_REJECTED,
            "Change Approved" if approved else "Change Rejected",
            message,
            {"action": decision.value, "approvedBy": str(actor.user_id), "comments": comments},
        ))
    effects.append(_comment(change, actor, label, comments or f"{verb.capitalize()} by manager"))
    return effects


def auto_started_effects(change: models.Change, actor: Actor) -> list[SideEffect]:
    """Notify the assignee and the requester (once each), plus a system comment."""
    recipients = []
    for user_id in (change.assigned_to, change.requested_by):
        if user_id and user_id not in recipients:
            recipients.append(user_id)

    effects: list[SideEffect] = [
        _notify(
            change, user_id, models.NotificationType.CHANGE_AUTO_STARTED,
            "Change Started Automatically",
            f'Change "{change.title}" has been automatically started as scheduled.',
            {"autoStarted": True},
        )
        for user_id in recipients
    ]
    effects.append(_comment(change, actor, "AUTO-STARTED", "Change automatically started as scheduled"))
    return effects


def completion_prompt_effects(change: models.Change) -> list[SideEffect]:
    """Ask the assignee to confirm the outcome of the change."""
    return [_notify(
        change, change.assigned_to, models.NotificationType.CHANGE_COMPLETION_PROMPT,
        "Change Completion Check Required",
        f'The estimated end time for change "{change.title}" has been reached. '
        f"Please confirm if the change was completed successfully or if it failed.",
        {
            "estimatedEndTime": change.estimated_end_time.isoformat() if change.estimated_end_time else None,
            "requiresResponse": True,
        },
    )]


def completion_reported_effects(
    db: Session,
    change: models.Change,
    actor: Actor,
    outcome: models.CompletionOutcome,
    notes: Optional[str],
) -> list[SideEffect]:
    """Notify the requester and approvers (except the reporter), plus an audit comment."""
    completed = outcome == models.CompletionOutcome.COMPLETED
    recipients = []
    if change.requested_by:
        recipients.append(change.requested_by)
    for approver in crud.list_approvers(db, change.organization_id):
        if approver.id not in recipients:
            recipients.append(approver.id)

    message = f'Change "{change.title}" has been marked as {outcome.value} by {actor.display_name}'
    if notes:
        message += f". Notes: {notes}"

    effects: list[SideEffect] = [
        _notify(
            change, user_id,
            models.NotificationType.CHANGE_COMPLETED if completed else models.NotificationType.CHANGE_FAILED,
            "Change Completed Successfully" if completed else "Change Failed",
            message,
            {"outcome": outcome.value, "respondedBy": str(actor.user_id), "notes": notes},
        )
        for user_id in recipients
        if user_id != actor.user_id
    ]
    effects.append(_comment(
        change, actor,
        "COMPLETED" if completed else "FAILED",
        notes or f"Change marked as {outcome.value}",
    ))
    return effects


def automations_cancelled_effects(change: models.Change, actor: Actor, count: int,
                                  reason: Optional[str]) -> list[SideEffect]:
    """Tell the assignee their change will no longer start by itself, plus an audit comment."""
    text = f"{count} scheduled automation(s) cancelled"
    if reason:
        text += f": {reason}"

    effects: list[SideEffect] = []
    if change.assigned_to and change.assigned_to != actor.user_id:
        effects.append(_notify(
            change, change.assigned_to, models.NotificationType.CHANGE_AUTOMATION_CANCELLED,
            "Change Automation Cancelled",
            f'Scheduled automation for change "{change.title}" was cancelled by {actor.display_name}'
            + (f". Reason: {reason}" if reason else ""),
            {"cancelledBy": str(actor.user_id), "reason": reason},
        ))
    effects.append(_comment(change, actor, "AUTOMATION CANCELLED", text))
    return effects

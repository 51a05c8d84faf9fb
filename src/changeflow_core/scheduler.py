"""Automation scheduler: one sweep over the due automation ledger.

A sweep is invoked from outside (the /automation/sweep endpoint, driven by
cron or the poller). It loads a capped batch of due, unexecuted records and
applies each through the lifecycle engine as the system principal.

Per record:
1. Claim it with `UPDATE ... WHERE executed = false` in the same transaction
   as the engine call; a sweep that loses the claim skips the record.
2. Run auto_start / prompt_completion; the engine re-checks the change's
   current status, so a stale record is a no-op.
3. A record whose action cannot apply is still marked executed, with the
   reason in error_message. Nothing is retried; one bad record never aborts
   the batch.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, lifecycle
from .clock import Clock, system_clock
from .errors import ChangeWorkflowError
from .models import AutomationType
from .principals import SYSTEM_ACTOR
from .side_effects import SideEffectDispatcher, default_dispatcher

logger = logging.getLogger("changeflow-core.scheduler")


@dataclass
class SweepResult:
    """Counts and per-record problems from one sweep."""

    timestamp: datetime
    auto_started: int = 0
    completion_prompts: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "autoStarted": self.auto_started,
            "completionPrompts": self.completion_prompts,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "timestamp": self.timestamp.isoformat(),
        }


class AutomationScheduler:
    """Processes due automation records against the lifecycle engine."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        batch_size: int = 100,
        dispatcher: Optional[SideEffectDispatcher] = None,
    ):
        self._clock = clock or system_clock
        self._batch_size = batch_size
        self._dispatcher = dispatcher or default_dispatcher

    def sweep(self, db: Session) -> SweepResult:
        """Run one pass over the due records (at most batch_size of them)."""
        now = self._clock.now()
        result = SweepResult(timestamp=now)

        try:
            due = [
                (automation.id, automation.change_id, automation.automation_type)
                for automation in crud.list_due_automations(db, now, self._batch_size)
            ]
            db.rollback()  # end the read transaction; each record gets its own
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to load due automations: {e}", exc_info=True)
            result.errors.append("Failed to fetch due automations")
            return result

        logger.info(f"Automation sweep at {now.isoformat()}: {len(due)} due record(s)")

        for automation_id, change_id, automation_type in due:
            self.process(db, automation_id, change_id, automation_type, result)

        logger.info(
            f"Automation sweep finished: {result.auto_started} started, "
            f"{result.completion_prompts} prompt(s), {result.skipped} skipped, "
            f"{len(result.errors)} error(s)"
        )
        return result

    def process(
        self,
        db: Session,
        automation_id,
        change_id,
        automation_type: AutomationType,
        result: SweepResult,
    ) -> None:
        """Claim and apply a single automation record, recording the outcome in result."""
        now = self._clock.now()

        try:
            if not crud.claim_automation(db, automation_id, now):
                db.rollback()
                result.skipped += 1
                logger.debug(f"Automation {automation_id} already executed by another sweep")
                return

            if automation_type == AutomationType.AUTO_START:
                lifecycle.auto_start(db, change_id, SYSTEM_ACTOR, clock=self._clock, dispatcher=self._dispatcher)
                result.auto_started += 1
            else:
                outcome = lifecycle.prompt_completion(
                    db, change_id, SYSTEM_ACTOR, clock=self._clock, dispatcher=self._dispatcher
                )
                if outcome.dispatch.ok:
                    result.completion_prompts += 1
                else:
                    self._record_delivery_failure(db, automation_id, change_id, outcome.dispatch.error, result)

        except ChangeWorkflowError as e:
            # The engine rolled back, releasing the claim; mark executed with the reason
            self._mark_failed(db, automation_id, change_id, automation_type, e.message, result)
        except SQLAlchemyError as e:
            db.rollback()
            self._mark_failed(db, automation_id, change_id, automation_type, f"Storage error: {e}", result)
        except Exception as e:
            db.rollback()
            logger.error(f"Unexpected error processing automation {automation_id}: {e}", exc_info=True)
            self._mark_failed(db, automation_id, change_id, automation_type, f"Unexpected error: {e}", result)

    def _mark_failed(
        self,
        db: Session,
        automation_id,
        change_id,
        automation_type: AutomationType,
        message: str,
        result: SweepResult,
    ) -> None:
        try:
            claimed = crud.claim_automation(db, automation_id, self._clock.now(), error_message=message)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.error(f"Could not record failure on automation {automation_id}", exc_info=True)
            result.errors.append(f"Failed to record outcome of automation {automation_id}")
            return

        if not claimed:
            result.skipped += 1
            return

        logger.warning(f"Automation {automation_type.value} for change {change_id} not applied: {message}")
        result.errors.append(f"{automation_type.value} for change {change_id}: {message}")

    def _record_delivery_failure(self, db: Session, automation_id, change_id, error, result: SweepResult) -> None:
        message = f"Failed to create notification: {error}"
        try:
            crud.record_automation_error(db, automation_id, message)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.error(f"Could not record delivery failure on automation {automation_id}", exc_info=True)
        result.errors.append(f"Failed to create completion prompt for change {change_id}")


def automation_status(db: Session, clock: Optional[Clock] = None, recent_hours: int = 24) -> dict:
    """Pending records and records executed within the recent window."""
    now = (clock or system_clock).now()
    pending = crud.list_pending_automations(db)
    recent = crud.list_recent_automations(db, since=now - timedelta(hours=recent_hours))
    return {"pending": pending, "recent": recent, "timestamp": now}

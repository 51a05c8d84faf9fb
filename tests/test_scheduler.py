"""Tests for the automation scheduler sweep."""
from datetime import timedelta

import pytest

from changeflow_core import crud, lifecycle, models
from changeflow_core.models import AutomationType, ChangeStatus
from changeflow_core.principals import Actor, SYSTEM_ACTOR
from changeflow_core.scheduler import AutomationScheduler, SweepResult, automation_status


@pytest.fixture
def scheduler(clock):
    return AutomationScheduler(clock=clock)


def _in_progress_rows(db, change_id):
    return [h for h in crud.get_status_history(db, change_id) if h.to_status == ChangeStatus.IN_PROGRESS]


class TestSweep:
    """Test due-record processing."""

    def test_auto_start_waits_until_due(self, db, clock, scheduler, make_change, requester, manager):
        """Test that an auto-start fires only once its scheduled time arrives."""
        change = make_change(scheduled_for=clock.now() + timedelta(hours=1))
        lifecycle.request_approval(db, change.id, Actor.from_user(requester), clock=clock)
        assert crud.get_approval(db, change.id).status == models.ApprovalStatus.PENDING
        lifecycle.decide_approval(
            db, change.id, Actor.from_user(manager), models.ApprovalDecision.APPROVE, clock=clock
        )

        early = scheduler.sweep(db)

        assert early.auto_started == 0
        assert early.errors == []
        assert crud.read_change_status(db, change.id) == ChangeStatus.APPROVED
        assert crud.list_automations(db, change.id)[0].executed is False

        clock.advance(timedelta(hours=1))
        result = scheduler.sweep(db)

        assert result.auto_started == 1
        assert result.errors == []
        assert crud.read_change_status(db, change.id) == ChangeStatus.IN_PROGRESS
        automation = crud.list_automations(db, change.id)[0]
        assert automation.executed is True
        assert automation.executed_at == clock.now()
        assert automation.error_message is None

    def test_start_then_prompt_in_one_sweep(self, db, clock, scheduler, approved_change, assignee):
        """Test that a due start and a due prompt both apply in one sweep, start first."""
        change = approved_change(
            scheduled_for=clock.now() - timedelta(minutes=2),
            estimated_end_time=clock.now() - timedelta(minutes=1),
        )

        result = scheduler.sweep(db)

        assert result.auto_started == 1
        assert result.completion_prompts == 1
        assert result.errors == []
        assert crud.read_change_status(db, change.id) == ChangeStatus.IN_PROGRESS
        assert all(a.executed for a in crud.list_automations(db, change.id))
        prompts = (
            db.query(models.Notification)
            .filter(
                models.Notification.user_id == assignee.id,
                models.Notification.type == models.NotificationType.CHANGE_COMPLETION_PROMPT,
            )
            .all()
        )
        assert len(prompts) == 1

    def test_prompt_for_unstarted_change_is_moot(self, db, clock, scheduler, approved_change):
        """
        Test that a prompt for an approved, never-started change is recorded as moot.

        This departs from the walkthrough where an approved change past its
        estimated end still prompts its assignee: a prompt requires in_progress
        with an assignee, so no notification is sent and the sweep reports it.
        """
        change = approved_change(estimated_end_time=clock.now() - timedelta(minutes=1))

        result = scheduler.sweep(db)

        assert result.completion_prompts == 0
        assert len(result.errors) == 1
        assert result.errors[0].startswith(f"completion_prompt for change {change.id}")
        assert crud.read_change_status(db, change.id) == ChangeStatus.APPROVED
        automation = crud.list_automations(db, change.id)[0]
        assert automation.executed is True
        assert "expected 'in_progress' with assigned user" in automation.error_message

    def test_auto_start_after_manual_progress_is_moot(self, db, clock, scheduler, approved_change):
        """Test that an auto-start for a change already in progress is recorded as moot."""
        change = approved_change(scheduled_for=clock.now() + timedelta(hours=1))
        lifecycle.auto_start(db, change.id, SYSTEM_ACTOR, clock=clock)
        clock.advance(timedelta(hours=1))

        result = scheduler.sweep(db)

        assert result.auto_started == 0
        assert result.errors == [
            f"auto_start for change {change.id}: Change status is in_progress, expected 'approved'"
        ]
        automation = crud.list_automations(db, change.id)[0]
        assert automation.executed is True
        assert automation.error_message == "Change status is in_progress, expected 'approved'"
        assert len(_in_progress_rows(db, change.id)) == 1

    def test_duplicate_auto_start_records_start_once(self, db, clock, scheduler, approved_change):
        """Test that duplicate auto-start records start the change only once."""
        change = approved_change(scheduled_for=clock.now())
        crud.create_automation(db, change, AutomationType.AUTO_START, clock.now(), clock.now())
        db.commit()

        result = scheduler.sweep(db)

        assert result.auto_started == 1
        assert len(result.errors) == 1
        assert all(a.executed for a in crud.list_automations(db, change.id))
        assert len(_in_progress_rows(db, change.id)) == 1

    def test_executed_records_are_not_reprocessed(self, db, clock, scheduler, approved_change):
        """Test that a second sweep ignores records the first one executed."""
        approved_change(scheduled_for=clock.now())

        first = scheduler.sweep(db)
        second = scheduler.sweep(db)

        assert first.auto_started == 1
        assert second.auto_started == 0
        assert second.skipped == 0
        assert second.errors == []

    def test_batch_size_caps_one_sweep(self, db, clock, approved_change):
        """Test that one sweep processes at most batch_size records."""
        changes = [approved_change(scheduled_for=clock.now(), title=f"Patch host {i}") for i in range(3)]
        scheduler = AutomationScheduler(clock=clock, batch_size=2)

        assert scheduler.sweep(db).auto_started == 2
        assert scheduler.sweep(db).auto_started == 1
        assert scheduler.sweep(db).auto_started == 0
        assert {crud.read_change_status(db, c.id) for c in changes} == {ChangeStatus.IN_PROGRESS}

    def test_one_bad_record_does_not_abort_batch(self, db, clock, scheduler, approved_change, monkeypatch):
        """Test that an unexpected error on one record leaves the rest of the batch running."""
        broken = approved_change(scheduled_for=clock.now(), title="Broken")
        healthy = approved_change(scheduled_for=clock.now(), title="Healthy")
        real_auto_start = lifecycle.auto_start

        def flaky_auto_start(db, change_id, actor, **kwargs):
            if change_id == broken.id:
                raise RuntimeError("boom")
            return real_auto_start(db, change_id, actor, **kwargs)

        monkeypatch.setattr(lifecycle, "auto_start", flaky_auto_start)

        result = scheduler.sweep(db)

        assert result.auto_started == 1
        assert result.errors == [f"auto_start for change {broken.id}: Unexpected error: boom"]
        assert crud.read_change_status(db, healthy.id) == ChangeStatus.IN_PROGRESS
        assert crud.read_change_status(db, broken.id) == ChangeStatus.APPROVED
        assert crud.list_automations(db, broken.id)[0].executed is True


class TestOverlappingSweeps:
    """Test the executed=false claim."""

    def test_claim_succeeds_once(self, db, clock, approved_change):
        """Test that only the first claim of a record succeeds."""
        change = approved_change(scheduled_for=clock.now())
        automation_id = crud.list_automations(db, change.id)[0].id

        assert crud.claim_automation(db, automation_id, clock.now()) is True
        assert crud.claim_automation(db, automation_id, clock.now()) is False
        db.commit()

    def test_record_claimed_elsewhere_is_skipped(self, db, clock, scheduler, approved_change):
        """Test that a record claimed by another sweep is counted as skipped."""
        change = approved_change(scheduled_for=clock.now())
        automation = crud.list_automations(db, change.id)[0]
        automation_id, automation_type = automation.id, automation.automation_type

        # Another sweep claimed the record after this one listed it
        crud.claim_automation(db, automation_id, clock.now())
        db.commit()

        result = SweepResult(timestamp=clock.now())
        scheduler.process(db, automation_id, change.id, automation_type, result)

        assert result.skipped == 1
        assert result.auto_started == 0
        assert result.errors == []
        assert crud.read_change_status(db, change.id) == ChangeStatus.APPROVED

    def test_due_records_are_most_due_first(self, db, clock, approved_change):
        """Test that due records come back oldest scheduled time first."""
        later = approved_change(scheduled_for=clock.now() - timedelta(minutes=1), title="Later")
        sooner = approved_change(scheduled_for=clock.now() - timedelta(minutes=5), title="Sooner")

        due = crud.list_due_automations(db, clock.now(), limit=10)

        assert [a.change_id for a in due] == [sooner.id, later.id]

    def test_equal_times_run_auto_start_before_prompt(self, db, clock, scheduler, pending_change, manager):
        """Test that a start and a prompt sharing due and creation times run start first."""
        change = pending_change()
        lifecycle.decide_approval(db, change.id, Actor.from_user(manager), models.ApprovalDecision.APPROVE, clock=clock)
        # Prompt inserted first so row order alone would run it first
        crud.create_automation(db, change, AutomationType.COMPLETION_PROMPT, clock.now(), clock.now())
        crud.create_automation(db, change, AutomationType.AUTO_START, clock.now(), clock.now())
        db.commit()

        due = crud.list_due_automations(db, clock.now(), limit=10)
        assert [a.automation_type for a in due] == [AutomationType.AUTO_START, AutomationType.COMPLETION_PROMPT]

        result = scheduler.sweep(db)

        assert result.auto_started == 1
        assert result.completion_prompts == 1
        assert result.errors == []
        assert crud.read_change_status(db, change.id) == ChangeStatus.IN_PROGRESS


class TestSweepReporting:
    """Test sweep result shape and the status listing."""

    def test_sweep_result_serializes_camel_case(self, clock):
        """Test the camelCase sweep response body."""
        result = SweepResult(timestamp=clock.now(), auto_started=2, completion_prompts=1, skipped=3, errors=["x"])

        assert result.to_dict() == {
            "autoStarted": 2,
            "completionPrompts": 1,
            "skipped": 3,
            "errors": ["x"],
            "timestamp": clock.now().isoformat(),
        }

    def test_automation_status_lists_pending_and_recent(self, db, clock, scheduler, approved_change):
        """Test that status lists pending records and recently executed ones."""
        started = approved_change(scheduled_for=clock.now())
        waiting = approved_change(scheduled_for=clock.now() + timedelta(days=2), title="Later")
        scheduler.sweep(db)

        status = automation_status(db, clock=clock)

        assert [a.change_id for a in status["pending"]] == [waiting.id]
        assert [a.change_id for a in status["recent"]] == [started.id]
        assert status["timestamp"] == clock.now()

        clock.advance(timedelta(hours=25))
        assert automation_status(db, clock=clock)["recent"] == []

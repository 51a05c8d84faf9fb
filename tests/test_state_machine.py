"""Tests for change state machine validation."""
import pytest
from changeflow_core.models import ChangeStatus
from changeflow_core.state_machine import (
    ChangeStateTransitionError,
    TERMINAL_STATUSES,
    get_allowed_change_transitions,
    is_change_transition_valid,
    is_terminal_status,
    validate_change_transition,
)


class TestChangeStateTransitions:
    """Test change state machine transition validation."""

    def test_valid_forward_transitions(self):
        """Test that the approval and execution path is allowed."""
        # Draft → Pending
        assert is_change_transition_valid(ChangeStatus.DRAFT, ChangeStatus.PENDING)
        validate_change_transition(ChangeStatus.DRAFT, ChangeStatus.PENDING)  # Should not raise

        # Pending → Approved
        assert is_change_transition_valid(ChangeStatus.PENDING, ChangeStatus.APPROVED)
        validate_change_transition(ChangeStatus.PENDING, ChangeStatus.APPROVED)

        # Approved → In Progress
        assert is_change_transition_valid(ChangeStatus.APPROVED, ChangeStatus.IN_PROGRESS)
        validate_change_transition(ChangeStatus.APPROVED, ChangeStatus.IN_PROGRESS)

        # In Progress → Completed / Failed
        assert is_change_transition_valid(ChangeStatus.IN_PROGRESS, ChangeStatus.COMPLETED)
        assert is_change_transition_valid(ChangeStatus.IN_PROGRESS, ChangeStatus.FAILED)

    def test_rejection_transitions(self):
        """Test that rejection can cancel a pending or already started change."""
        assert is_change_transition_valid(ChangeStatus.PENDING, ChangeStatus.CANCELLED)
        assert is_change_transition_valid(ChangeStatus.IN_PROGRESS, ChangeStatus.CANCELLED)

        assert not is_change_transition_valid(ChangeStatus.DRAFT, ChangeStatus.CANCELLED)
        assert not is_change_transition_valid(ChangeStatus.APPROVED, ChangeStatus.CANCELLED)

    def test_noop_transitions_allowed(self):
        """Test that no-op transitions (same status) are always allowed."""
        for status in ChangeStatus:
            assert is_change_transition_valid(status, status)
            validate_change_transition(status, status)  # Should not raise

    def test_no_backward_transitions(self):
        """Test that a change never moves back toward draft."""
        assert not is_change_transition_valid(ChangeStatus.PENDING, ChangeStatus.DRAFT)
        assert not is_change_transition_valid(ChangeStatus.APPROVED, ChangeStatus.PENDING)
        assert not is_change_transition_valid(ChangeStatus.IN_PROGRESS, ChangeStatus.APPROVED)

    def test_invalid_skip_approval_transition(self):
        """Test that starting a pending change (skipping approval) is blocked."""
        assert not is_change_transition_valid(ChangeStatus.PENDING, ChangeStatus.IN_PROGRESS)

        with pytest.raises(ChangeStateTransitionError) as exc_info:
            validate_change_transition(ChangeStatus.PENDING, ChangeStatus.IN_PROGRESS)

        error = exc_info.value
        assert error.current_status == ChangeStatus.PENDING
        assert error.requested_status == ChangeStatus.IN_PROGRESS
        assert "must be approved before they can start" in str(error).lower()

    def test_invalid_draft_transitions(self):
        """Test that a draft can only be submitted for approval."""
        for target_status in ChangeStatus:
            if target_status in (ChangeStatus.DRAFT, ChangeStatus.PENDING):
                continue
            assert not is_change_transition_valid(ChangeStatus.DRAFT, target_status)

            with pytest.raises(ChangeStateTransitionError) as exc_info:
                validate_change_transition(ChangeStatus.DRAFT, target_status)

            assert "request approval first" in str(exc_info.value).lower()

    def test_outcome_requires_in_progress(self):
        """Test that an approved change cannot report an outcome before starting."""
        with pytest.raises(ChangeStateTransitionError) as exc_info:
            validate_change_transition(ChangeStatus.APPROVED, ChangeStatus.COMPLETED)

        assert "must be in progress" in str(exc_info.value).lower()

    def test_terminal_statuses_are_final(self):
        """Test that completed, failed and cancelled changes cannot move."""
        for terminal in TERMINAL_STATUSES:
            assert is_terminal_status(terminal)
            assert get_allowed_change_transitions(terminal) == []

            for status in ChangeStatus:
                if status == terminal:
                    continue
                assert not is_change_transition_valid(terminal, status)

                with pytest.raises(ChangeStateTransitionError) as exc_info:
                    validate_change_transition(terminal, status)

                assert "terminal" in str(exc_info.value).lower()

        assert not is_terminal_status(ChangeStatus.IN_PROGRESS)

    def test_get_allowed_transitions(self):
        """Test getting allowed transitions from each state."""
        assert get_allowed_change_transitions(ChangeStatus.DRAFT) == [ChangeStatus.PENDING]
        assert set(get_allowed_change_transitions(ChangeStatus.PENDING)) == {
            ChangeStatus.APPROVED,
            ChangeStatus.CANCELLED,
        }
        assert get_allowed_change_transitions(ChangeStatus.APPROVED) == [ChangeStatus.IN_PROGRESS]
        assert set(get_allowed_change_transitions(ChangeStatus.IN_PROGRESS)) == {
            ChangeStatus.COMPLETED,
            ChangeStatus.FAILED,
            ChangeStatus.CANCELLED,
        }

    def test_state_transition_error_attributes(self):
        """Test that ChangeStateTransitionError contains all required attributes."""
        with pytest.raises(ChangeStateTransitionError) as exc_info:
            validate_change_transition(ChangeStatus.DRAFT, ChangeStatus.COMPLETED)

        error = exc_info.value
        assert error.current_status == ChangeStatus.DRAFT
        assert error.requested_status == ChangeStatus.COMPLETED
        assert isinstance(error.allowed_transitions, list)
        assert error.message == str(error)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

"""Tests for payroll record and correction state machines."""

import pytest

from hr_payroll.errors import InvalidTransitionError, StateConflict
from hr_payroll.services.state_machine import (
    CorrectionStateMachine,
    CorrectionStatus,
    PayrollRecordStateMachine,
    PayrollRecordStatus,
)


class TestPayrollRecordStateMachine:
    """Test state machine transitions."""

    def test_valid_transitions(self):
        """Test that valid transitions are allowed."""
        # draft → calculated
        assert PayrollRecordStateMachine.can_transition("draft", "calculated") is True

        # calculated → calculated (recalculate in place)
        assert PayrollRecordStateMachine.can_transition("calculated", "calculated") is True

        # calculated → pending_approval
        assert PayrollRecordStateMachine.can_transition("calculated", "pending_approval") is True

        # pending_approval → pending_approval (next level)
        assert (
            PayrollRecordStateMachine.can_transition("pending_approval", "pending_approval")
            is True
        )

        # pending_approval → draft (rejected)
        assert PayrollRecordStateMachine.can_transition("pending_approval", "draft") is True

        # approved → released, released → corrected
        assert PayrollRecordStateMachine.can_transition("approved", "released") is True
        assert PayrollRecordStateMachine.can_transition("released", "corrected") is True

    def test_invalid_transitions(self):
        """Test that invalid transitions are blocked."""
        # Can't skip approval
        assert PayrollRecordStateMachine.can_transition("calculated", "approved") is False
        assert PayrollRecordStateMachine.can_transition("calculated", "released") is False

        # Released records never go back
        assert PayrollRecordStateMachine.can_transition("released", "draft") is False
        assert PayrollRecordStateMachine.can_transition("released", "calculated") is False

        # Corrected is terminal
        assert PayrollRecordStateMachine.get_next_statuses("corrected") == []

    def test_validate_transition_raises(self):
        """Test that validate_transition raises for invalid transitions."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            PayrollRecordStateMachine.validate_transition("draft", "released")

        assert exc_info.value.from_status == "draft"
        assert exc_info.value.to_status == "released"
        assert isinstance(exc_info.value, StateConflict)
        assert exc_info.value.retryable is False

    def test_accepts_enum_members(self):
        assert PayrollRecordStateMachine.can_transition(
            PayrollRecordStatus.APPROVED, PayrollRecordStatus.RELEASED
        )

    def test_can_recalculate(self):
        """Test recalculation allowed statuses."""
        assert PayrollRecordStateMachine.can_recalculate("draft") is True
        assert PayrollRecordStateMachine.can_recalculate("calculated") is True
        assert PayrollRecordStateMachine.can_recalculate("pending_approval") is False
        assert PayrollRecordStateMachine.can_recalculate("released") is False

    def test_is_released(self):
        assert PayrollRecordStateMachine.is_released("released") is True
        assert PayrollRecordStateMachine.is_released("corrected") is True
        assert PayrollRecordStateMachine.is_released("approved") is False


class TestCorrectionStateMachine:
    def test_transitions(self):
        assert CorrectionStateMachine.can_transition("requested", "approved") is True
        assert CorrectionStateMachine.can_transition("approved", "processed") is True
        assert CorrectionStateMachine.can_transition("requested", "processed") is False
        assert CorrectionStateMachine.can_transition("rejected", "approved") is False

    def test_cancellable_until_processed(self):
        assert CorrectionStateMachine.can_cancel(CorrectionStatus.REQUESTED) is True
        assert CorrectionStateMachine.can_cancel("approved") is True
        assert CorrectionStateMachine.can_cancel("processed") is False
        assert CorrectionStateMachine.can_cancel("rejected") is False

    @pytest.mark.parametrize("status", ["rejected", "processed", "cancelled"])
    def test_terminal_statuses(self, status):
        assert CorrectionStateMachine.is_terminal(status) is True

    def test_requested_is_not_terminal(self):
        assert CorrectionStateMachine.is_terminal("requested") is False

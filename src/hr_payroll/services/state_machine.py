"""Payroll record and error correction state machines."""

from __future__ import annotations

from enum import Enum

from hr_payroll.errors import InvalidTransitionError


class PayrollRecordStatus(str, Enum):
    """Payroll record status values."""

    DRAFT = "draft"
    CALCULATED = "calculated"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    RELEASED = "released"
    CORRECTED = "corrected"


class CorrectionStatus(str, Enum):
    """Error correction status values."""

    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSED = "processed"
    CANCELLED = "cancelled"


class ApprovalDecision(str, Enum):
    """Decision recorded on an approval step."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PayrollRecordStateMachine:
    """State machine for payroll record status transitions.

    Allowed transitions:
    - draft → calculated
    - calculated → calculated (recalculate in place)
    - calculated → draft (recalculation failed)
    - calculated → pending_approval
    - pending_approval → pending_approval (next level)
    - pending_approval → approved (final level)
    - pending_approval → draft (rejected)
    - approved → released
    - released → corrected (superseded by a correction)
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayrollRecordStatus.DRAFT: [PayrollRecordStatus.CALCULATED],
        PayrollRecordStatus.CALCULATED: [
            PayrollRecordStatus.CALCULATED,
            PayrollRecordStatus.DRAFT,
            PayrollRecordStatus.PENDING_APPROVAL,
        ],
        PayrollRecordStatus.PENDING_APPROVAL: [
            PayrollRecordStatus.PENDING_APPROVAL,
            PayrollRecordStatus.APPROVED,
            PayrollRecordStatus.DRAFT,
        ],
        PayrollRecordStatus.APPROVED: [PayrollRecordStatus.RELEASED],
        PayrollRecordStatus.RELEASED: [PayrollRecordStatus.CORRECTED],
        PayrollRecordStatus.CORRECTED: [],  # Terminal state
    }

    # Statuses where calculation may overwrite the record in place
    RECALCULATION_ALLOWED = {
        PayrollRecordStatus.DRAFT,
        PayrollRecordStatus.CALCULATED,
    }

    # Statuses visible to the employee; changes need a correction
    RELEASED_STATES = {
        PayrollRecordStatus.RELEASED,
        PayrollRecordStatus.CORRECTED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_recalculate(cls, status: str) -> bool:
        return status in cls.RECALCULATION_ALLOWED

    @classmethod
    def is_released(cls, status: str) -> bool:
        return status in cls.RELEASED_STATES

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])


class CorrectionStateMachine:
    """State machine for error correction status transitions.

    Allowed transitions:
    - requested → approved
    - requested → rejected
    - requested → cancelled
    - approved → processed
    - approved → cancelled
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        CorrectionStatus.REQUESTED: [
            CorrectionStatus.APPROVED,
            CorrectionStatus.REJECTED,
            CorrectionStatus.CANCELLED,
        ],
        CorrectionStatus.APPROVED: [
            CorrectionStatus.PROCESSED,
            CorrectionStatus.CANCELLED,
        ],
        CorrectionStatus.REJECTED: [],
        CorrectionStatus.PROCESSED: [],
        CorrectionStatus.CANCELLED: [],
    }

    CANCELLABLE = {
        CorrectionStatus.REQUESTED,
        CorrectionStatus.APPROVED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_cancel(cls, status: str) -> bool:
        return status in cls.CANCELLABLE

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)

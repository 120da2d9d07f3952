"""Error taxonomy for payroll operations.

Every error carries a stable ``code`` and a ``retryable`` flag so callers
can tell "already done" from "not allowed" from "try again".

- ValidationError: bad input shape, caller's fault, never retried
- StateConflict: invalid transition, surfaced, never retried automatically
- ConcurrentModificationError: transient, safe to retry once
- DataUnavailable: missing upstream input, needs operator action
- ComputationInvariantViolation: e.g. negative net pay, always surfaced
"""

from __future__ import annotations

from typing import Any
from uuid import UUID


class PayrollError(Exception):
    """Base class for all payroll errors."""

    code = "PAYROLL_ERROR"
    retryable = False

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "detail": self.message,
            "retryable": self.retryable,
            "context": {
                k: v if isinstance(v, (str, int, float, bool)) or v is None else str(v)
                for k, v in self.context.items()
            },
        }


# ===== Taxonomy roots =====


class ValidationError(PayrollError):
    code = "VALIDATION_ERROR"


class StateConflict(PayrollError):
    code = "STATE_CONFLICT"


class ConcurrentModificationError(PayrollError):
    code = "CONCURRENT_MODIFICATION"
    retryable = True


class DataUnavailable(PayrollError):
    code = "DATA_UNAVAILABLE"


class ComputationInvariantViolation(PayrollError):
    code = "COMPUTATION_INVARIANT_VIOLATION"


class AuditWriteError(PayrollError):
    """An audit entry could not be written; the transition must not commit."""

    code = "AUDIT_WRITE_FAILED"


# ===== Calculation errors =====


class CalculationError(PayrollError):
    """Common base for the calculator's failure kinds."""

    code = "CALCULATION_ERROR"

    def __init__(self, message: str, employee_id: str | None = None, **context: Any):
        self.employee_id = employee_id
        super().__init__(message, employee_id=employee_id, **context)


class MissingInputData(CalculationError, DataUnavailable):
    code = "MISSING_INPUT_DATA"


class InvalidRuleConfiguration(CalculationError, ValidationError):
    code = "INVALID_RULE_CONFIGURATION"


class NegativeNetPay(CalculationError, ComputationInvariantViolation):
    code = "NEGATIVE_NET_PAY"


# ===== Validation refinements =====


class NotFoundError(ValidationError):
    code = "NOT_FOUND"


class ApproverNotAuthorizedError(ValidationError):
    code = "APPROVER_NOT_AUTHORIZED"


# ===== State conflicts =====


class InvalidTransitionError(StateConflict):
    """Raised when an invalid state transition is attempted."""

    code = "INVALID_STATE"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, from_status=from_status, to_status=to_status)


class LevelMismatchError(StateConflict):
    code = "LEVEL_MISMATCH"

    def __init__(self, record_id: UUID, expected_level: int, given_level: int):
        self.record_id = record_id
        self.expected_level = expected_level
        self.given_level = given_level
        super().__init__(
            f"Record {record_id} is pending at level {expected_level}, "
            f"not level {given_level}",
        )


class RecordNotReleasedError(StateConflict):
    code = "RECORD_NOT_RELEASED"


class RecordReleasedError(StateConflict):
    """Recalculation attempted on a released record; use a correction instead."""

    code = "RECORD_RELEASED"


class AlreadyProcessedError(StateConflict):
    """The correction was already processed (idempotent-safe for retries)."""

    code = "ALREADY_PROCESSED"

    def __init__(
        self,
        correction_id: UUID,
        status: str,
        resulting_record_id: UUID | None = None,
    ):
        self.correction_id = correction_id
        self.status = status
        self.resulting_record_id = resulting_record_id
        super().__init__(
            f"Correction {correction_id} is already {status}",
            status=status,
            resulting_record_id=str(resulting_record_id) if resulting_record_id else None,
        )


class ProcessingInProgressError(StateConflict):
    code = "PROCESSING_IN_PROGRESS"


class ComplianceBlockedError(StateConflict):
    code = "COMPLIANCE_BLOCKED"

    def __init__(self, message: str, violations: list[Any]):
        self.violations = violations
        super().__init__(message, violation_count=len(violations))

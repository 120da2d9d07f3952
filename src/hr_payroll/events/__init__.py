"""Domain events and their dispatch."""

from hr_payroll.events.emitter import EventEmitter
from hr_payroll.events.types import (
    ApprovalDecisionRecorded,
    ApprovalOverdue,
    BranchRunFinished,
    CorrectionStatusChanged,
    DomainEvent,
    EventCategory,
    EventMetadata,
    PayrollCalculationFailed,
    PayrollRecordCalculated,
    PayrollRecordCorrected,
    PayslipReleased,
    RecordSubmittedForApproval,
)

__all__ = [
    "ApprovalDecisionRecorded",
    "ApprovalOverdue",
    "BranchRunFinished",
    "CorrectionStatusChanged",
    "DomainEvent",
    "EventCategory",
    "EventEmitter",
    "EventMetadata",
    "PayrollCalculationFailed",
    "PayrollRecordCalculated",
    "PayrollRecordCorrected",
    "PayslipReleased",
    "RecordSubmittedForApproval",
]

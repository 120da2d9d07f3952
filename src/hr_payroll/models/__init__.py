"""ORM models."""

from hr_payroll.models.audit import AuditEntry, AuditImmutableError
from hr_payroll.models.base import Base, TimestampMixin, utcnow
from hr_payroll.models.payroll import (
    ApprovalStep,
    BranchProcessingRun,
    ErrorCorrection,
    PayrollLine,
    PayrollRecord,
    PayrollRecordHead,
    ProcessingLock,
)

__all__ = [
    "ApprovalStep",
    "AuditEntry",
    "AuditImmutableError",
    "Base",
    "BranchProcessingRun",
    "ErrorCorrection",
    "PayrollLine",
    "PayrollRecord",
    "PayrollRecordHead",
    "ProcessingLock",
    "TimestampMixin",
    "utcnow",
]

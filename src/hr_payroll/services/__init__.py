"""Payroll workflow services."""

from hr_payroll.services.approval_service import (
    Actor,
    ApprovalChain,
    OverdueApproval,
    PayslipApprovalWorkflow,
    ReleaseOutcome,
)
from hr_payroll.services.audit_service import AuditTrailRecorder
from hr_payroll.services.branch_processor import (
    BranchPayrollProcessor,
    BranchRunResult,
    EmployeeOutcome,
)
from hr_payroll.services.compliance import (
    ComplianceRuleSet,
    ComplianceValidator,
    ComplianceViolation,
)
from hr_payroll.services.correction_service import (
    CorrectionDetails,
    CorrectionPreview,
    CorrectionType,
    ErrorCorrectionManager,
)
from hr_payroll.services.locking_service import LockingService
from hr_payroll.services.payroll_service import PayrollService
from hr_payroll.services.sla_monitor import ApprovalSlaMonitor
from hr_payroll.services.state_machine import (
    ApprovalDecision,
    CorrectionStateMachine,
    CorrectionStatus,
    PayrollRecordStateMachine,
    PayrollRecordStatus,
)

__all__ = [
    "Actor",
    "ApprovalChain",
    "ApprovalDecision",
    "ApprovalSlaMonitor",
    "AuditTrailRecorder",
    "BranchPayrollProcessor",
    "BranchRunResult",
    "ComplianceRuleSet",
    "ComplianceValidator",
    "ComplianceViolation",
    "CorrectionDetails",
    "CorrectionPreview",
    "CorrectionStateMachine",
    "CorrectionStatus",
    "CorrectionType",
    "EmployeeOutcome",
    "ErrorCorrectionManager",
    "LockingService",
    "OverdueApproval",
    "PayrollRecordStateMachine",
    "PayrollRecordStatus",
    "PayrollService",
    "PayslipApprovalWorkflow",
    "ReleaseOutcome",
]

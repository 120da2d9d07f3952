"""Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from hr_payroll.calculators.types import LineType, PayPeriod
from hr_payroll.services.compliance import ComplianceRuleSet
from hr_payroll.services.correction_service import CorrectionDetails, CorrectionType
from hr_payroll.services.state_machine import ApprovalDecision


# ============================================================================
# Common
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    retryable: bool = False
    context: dict[str, Any] | None = None


class PeriodIn(BaseModel):
    """Closed calendar month."""

    year: int = Field(ge=1900)
    month: int = Field(ge=1, le=12)

    def to_period(self) -> PayPeriod:
        return PayPeriod(self.year, self.month)


# ============================================================================
# Payroll records
# ============================================================================


class PayrollLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    line_type: str
    position: int
    name: str
    currency: str
    amount: Decimal
    explanation: str | None = None


class PayrollRecordResponse(BaseModel):
    """Schema for payroll record response."""

    model_config = ConfigDict(from_attributes=True)

    payroll_record_id: UUID
    employee_id: str
    branch_id: str
    period_year: int
    period_month: int
    version: int
    previous_version_id: UUID | None = None
    correction_id: UUID | None = None
    status: str
    approval_level: int
    approval_cycle: int
    currency: str
    contract_currency: str
    exchange_rate: Decimal | None = None
    gross: Decimal
    net: Decimal
    earnings: list[PayrollLineResponse]
    deductions: list[PayrollLineResponse]
    calculation_error: str | None = None
    calculated_at: datetime | None = None
    calculated_by: str | None = None
    released_at: datetime | None = None
    released_by: str | None = None


class CalculateRequest(PeriodIn):
    employee_id: str = Field(min_length=1)
    branch_id: str = Field(min_length=1)


class BranchRunRequest(PeriodIn):
    pass


class EmployeeOutcomeResponse(BaseModel):
    employee_id: str
    status: str
    payroll_record_id: UUID | None = None
    net: Decimal | None = None
    currency: str | None = None
    error_code: str | None = None
    error: str | None = None


class BranchRunResponse(BaseModel):
    run_id: UUID
    branch_id: str
    period: str
    status: str
    success_count: int
    failure_count: int
    skipped_count: int
    outcomes: list[EmployeeOutcomeResponse]


# ============================================================================
# Approval
# ============================================================================


class SubmitRequest(BaseModel):
    record_ids: list[UUID] = Field(min_length=1)


class DecisionRequest(BaseModel):
    level: int = Field(ge=1)
    decision: ApprovalDecision
    notes: str | None = None


class ComplianceRulesIn(BaseModel):
    jurisdiction: str
    currency: str | None = None
    minimum_net_pay: Decimal | None = None
    maximum_total_deductions: Decimal | None = None
    maximum_deduction_ratio: Decimal | None = None
    required_deductions: list[str] = Field(default_factory=list)

    def to_rule_set(self) -> ComplianceRuleSet:
        return ComplianceRuleSet(
            jurisdiction=self.jurisdiction,
            currency=self.currency,
            minimum_net_pay=self.minimum_net_pay,
            maximum_total_deductions=self.maximum_total_deductions,
            maximum_deduction_ratio=self.maximum_deduction_ratio,
            required_deductions=tuple(self.required_deductions),
        )


class ReleaseRequest(BaseModel):
    record_ids: list[UUID] = Field(min_length=1)
    template_id: str | None = None
    compliance: ComplianceRulesIn | None = None


class ViolationResponse(BaseModel):
    rule: str
    message: str
    actual: str | None = None
    limit: str | None = None


class ReleaseOutcomeResponse(BaseModel):
    payroll_record_id: UUID
    released: bool
    error_code: str | None = None
    error: str | None = None
    violations: list[ViolationResponse] = Field(default_factory=list)
    document_rendered: bool = False
    render_error: str | None = None


class ApprovalStepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    approval_step_id: UUID
    payroll_record_id: UUID
    record_version: int
    approval_cycle: int
    level: int
    decision: str
    approver_id: str | None = None
    opened_at: datetime
    decided_at: datetime | None = None
    notes: str | None = None


class OverdueApprovalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payroll_record_id: UUID
    employee_id: str
    branch_id: str
    level: int
    opened_at: datetime


# ============================================================================
# Corrections
# ============================================================================


class CorrectionCreate(BaseModel):
    payroll_record_id: UUID
    correction_type: CorrectionType
    line_type: LineType
    component_name: str = Field(min_length=1)
    amount: Decimal | None = None
    description: str = Field(min_length=1)
    reason: str | None = None

    def to_details(self) -> CorrectionDetails:
        return CorrectionDetails(
            correction_type=self.correction_type,
            line_type=self.line_type,
            component_name=self.component_name,
            description=self.description,
            amount=self.amount,
            reason=self.reason,
        )


class CorrectionDecisionRequest(BaseModel):
    notes: str | None = None


class CorrectionCancelRequest(BaseModel):
    reason: str = Field(min_length=1)


class CorrectionResponse(BaseModel):
    """Schema for error correction response."""

    model_config = ConfigDict(from_attributes=True)

    correction_id: UUID
    payroll_record_id: UUID
    record_version: int
    branch_id: str
    correction_type: str
    line_type: str
    component_name: str
    currency: str
    amount: Decimal | None = None
    description: str
    reason: str | None = None
    status: str
    requested_by: str
    requested_at: datetime
    approver_id: str | None = None
    decided_at: datetime | None = None
    decision_notes: str | None = None
    processed_by: str | None = None
    processed_at: datetime | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    resulting_record_id: UUID | None = None


class CorrectionPreviewResponse(BaseModel):
    correction_id: UUID
    payroll_record_id: UUID
    currency: str
    original_gross: Decimal
    original_net: Decimal
    corrected_gross: Decimal
    corrected_net: Decimal
    net_difference: Decimal
    changes: list[dict[str, Any]]


# ============================================================================
# Audit
# ============================================================================


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    subject_type: str
    subject_id: str
    from_state: str | None = None
    to_state: str
    actor_id: str
    occurred_at: datetime
    payload: dict[str, Any]
    payload_hash: str

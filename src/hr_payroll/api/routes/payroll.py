"""Payroll record, branch run and approval endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, Request, status

from hr_payroll.api.dependencies import Approvals, CurrentActor, DbSession, Payroll
from hr_payroll.api.schemas import (
    ApprovalStepResponse,
    BranchRunRequest,
    BranchRunResponse,
    CalculateRequest,
    DecisionRequest,
    EmployeeOutcomeResponse,
    ErrorResponse,
    OverdueApprovalResponse,
    PayrollRecordResponse,
    ReleaseOutcomeResponse,
    ReleaseRequest,
    SubmitRequest,
)
from hr_payroll.calculators.types import PayPeriod
from hr_payroll.errors import CalculationError, DataUnavailable
from hr_payroll.services.branch_processor import BranchPayrollProcessor

router = APIRouter(tags=["payroll"])

Year = Annotated[int, Query(ge=1900)]
Month = Annotated[int, Query(ge=1, le=12)]


# ============================================================================
# Records
# ============================================================================


@router.post(
    "/records/calculate",
    response_model=PayrollRecordResponse,
    responses={
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        424: {"model": ErrorResponse},
    },
)
async def calculate_record(
    db: DbSession,
    service: Payroll,
    actor: CurrentActor,
    payload: CalculateRequest,
) -> PayrollRecordResponse:
    """Calculate (or recalculate before approval) one employee's record."""
    try:
        record = await service.calculate(
            payload.employee_id,
            payload.branch_id,
            payload.to_period(),
            calculated_by=actor.actor_id,
        )
    except (CalculationError, DataUnavailable):
        # Keep the draft that carries the calculation error
        await db.commit()
        raise
    await db.commit()
    return PayrollRecordResponse.model_validate(record)


@router.get("/records", response_model=list[PayrollRecordResponse])
async def list_records(
    service: Payroll,
    branch_id: str,
    year: Year,
    month: Month,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> list[PayrollRecordResponse]:
    """Current versions of a branch's records for a period."""
    records = await service.list_records(branch_id, PayPeriod(year, month), status_filter)
    return [PayrollRecordResponse.model_validate(r) for r in records]


@router.get(
    "/records/{record_id}",
    response_model=PayrollRecordResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_record(
    service: Payroll,
    record_id: Annotated[UUID, Path()],
) -> PayrollRecordResponse:
    record = await service.get_record(record_id)
    return PayrollRecordResponse.model_validate(record)


@router.get(
    "/records/{record_id}/history",
    response_model=list[PayrollRecordResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_record_history(
    service: Payroll,
    record_id: Annotated[UUID, Path()],
) -> list[PayrollRecordResponse]:
    """Every version of the record's (employee, period), oldest first."""
    record = await service.get_record(record_id)
    versions = await service.history(record.employee_id, record.period)
    return [PayrollRecordResponse.model_validate(v) for v in versions]


@router.get("/records/{record_id}/steps", response_model=list[ApprovalStepResponse])
async def get_record_steps(
    workflow: Approvals,
    record_id: Annotated[UUID, Path()],
) -> list[ApprovalStepResponse]:
    steps = await workflow.steps_for(record_id)
    return [ApprovalStepResponse.model_validate(s) for s in steps]


@router.get("/employees/{employee_id}/records", response_model=list[PayrollRecordResponse])
async def list_employee_records(
    service: Payroll,
    employee_id: Annotated[str, Path()],
    year: Year,
    month: Annotated[int | None, Query(ge=1, le=12)] = None,
) -> list[PayrollRecordResponse]:
    """An employee's payslips for a year, newest period first."""
    records = await service.employee_records(employee_id, year, month)
    return [PayrollRecordResponse.model_validate(r) for r in records]


# ============================================================================
# Branch runs
# ============================================================================


@router.post(
    "/branches/{branch_id}/process",
    response_model=BranchRunResponse,
    responses={409: {"model": ErrorResponse}, 424: {"model": ErrorResponse}},
)
async def process_branch(
    request: Request,
    actor: CurrentActor,
    branch_id: Annotated[str, Path()],
    payload: BranchRunRequest,
) -> BranchRunResponse:
    """Calculate every active employee of the branch; per-employee outcomes."""
    state = request.app.state
    if state.provider is None or state.directory is None:
        raise DataUnavailable("Compensation inputs or employee directory not configured")

    processor = BranchPayrollProcessor(
        state.session_factory,
        state.provider,
        state.directory,
        emitter=state.emitter,
        worker_pool_size=state.settings.worker_pool_size,
        lock_ttl_seconds=state.settings.lock_ttl_seconds,
    )
    result = await processor.process_branch(branch_id, payload.to_period(), actor.actor_id)
    return BranchRunResponse(
        run_id=result.run_id,
        branch_id=result.branch_id,
        period=str(result.period),
        status=result.status,
        success_count=result.success_count,
        failure_count=result.failure_count,
        skipped_count=result.skipped_count,
        outcomes=[EmployeeOutcomeResponse(**o.to_dict()) for o in result.outcomes],
    )


@router.get("/branches/{branch_id}/summary")
async def branch_summary(
    workflow: Approvals,
    branch_id: Annotated[str, Path()],
    year: Year,
    month: Month,
) -> dict[str, int]:
    """Count of current records per status."""
    return await workflow.approval_summary(branch_id, PayPeriod(year, month))


# ============================================================================
# Approval
# ============================================================================


@router.post(
    "/approvals/submit",
    response_model=list[PayrollRecordResponse],
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def submit_for_approval(
    db: DbSession,
    workflow: Approvals,
    actor: CurrentActor,
    payload: SubmitRequest,
) -> list[PayrollRecordResponse]:
    """Submit calculated records to level 1; all or nothing."""
    records = await workflow.submit_for_approval(payload.record_ids, actor.actor_id)
    await db.commit()
    return [PayrollRecordResponse.model_validate(r) for r in records]


@router.post(
    "/records/{record_id}/decisions",
    response_model=PayrollRecordResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def decide(
    db: DbSession,
    workflow: Approvals,
    actor: CurrentActor,
    record_id: Annotated[UUID, Path()],
    payload: DecisionRequest,
) -> PayrollRecordResponse:
    """Approve or reject the record at its current level."""
    record = await workflow.decide(
        record_id, payload.level, actor, payload.decision, payload.notes
    )
    await db.commit()
    return PayrollRecordResponse.model_validate(record)


@router.post(
    "/approvals/release",
    response_model=list[ReleaseOutcomeResponse],
    status_code=status.HTTP_200_OK,
)
async def release(
    db: DbSession,
    workflow: Approvals,
    actor: CurrentActor,
    payload: ReleaseRequest,
) -> list[ReleaseOutcomeResponse]:
    """Release approved records; each record succeeds or fails on its own."""
    compliance = payload.compliance.to_rule_set() if payload.compliance else None
    outcomes = await workflow.release(
        payload.record_ids,
        actor.actor_id,
        template_id=payload.template_id,
        compliance=compliance,
    )
    await db.commit()
    return [ReleaseOutcomeResponse(**o.to_dict()) for o in outcomes]


@router.get("/approvals/pending", response_model=list[PayrollRecordResponse])
async def pending_for_level(
    workflow: Approvals,
    level: Annotated[int, Query(ge=1)],
    branch_id: str | None = None,
) -> list[PayrollRecordResponse]:
    records = await workflow.pending_for_level(level, branch_id)
    return [PayrollRecordResponse.model_validate(r) for r in records]


@router.get("/approvals/overdue", response_model=list[OverdueApprovalResponse])
async def overdue_approvals(
    request: Request,
    workflow: Approvals,
    sla_hours: Annotated[int | None, Query(ge=0)] = None,
) -> list[OverdueApprovalResponse]:
    """Pending approvals older than the SLA (configured default if omitted)."""
    if sla_hours is None:
        sla_hours = request.app.state.settings.approval_sla_hours
    overdue = await workflow.find_overdue(sla_hours)
    return [OverdueApprovalResponse.model_validate(o) for o in overdue]

"""Error correction endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, status

from hr_payroll.api.dependencies import CurrentActor, Corrections, DbSession
from hr_payroll.api.schemas import (
    CorrectionCancelRequest,
    CorrectionCreate,
    CorrectionDecisionRequest,
    CorrectionPreviewResponse,
    CorrectionResponse,
    ErrorResponse,
    PayrollRecordResponse,
)

router = APIRouter(tags=["corrections"])


@router.post(
    "/corrections",
    response_model=CorrectionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def create_correction(
    db: DbSession,
    manager: Corrections,
    actor: CurrentActor,
    payload: CorrectionCreate,
) -> CorrectionResponse:
    """Request a correction against a released record."""
    correction = await manager.create(
        payload.payroll_record_id, payload.to_details(), actor.actor_id
    )
    await db.commit()
    return CorrectionResponse.model_validate(correction)


@router.get("/corrections", response_model=list[CorrectionResponse])
async def pending_corrections(
    manager: Corrections,
    branch_id: str | None = None,
) -> list[CorrectionResponse]:
    """Corrections awaiting a decision or processing."""
    corrections = await manager.pending_corrections(branch_id)
    return [CorrectionResponse.model_validate(c) for c in corrections]


@router.get(
    "/corrections/{correction_id}",
    response_model=CorrectionResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_correction(
    manager: Corrections,
    correction_id: Annotated[UUID, Path()],
) -> CorrectionResponse:
    correction = await manager.get_correction(correction_id)
    return CorrectionResponse.model_validate(correction)


@router.get(
    "/corrections/{correction_id}/preview",
    response_model=CorrectionPreviewResponse,
    responses={404: {"model": ErrorResponse}},
)
async def preview_correction(
    manager: Corrections,
    correction_id: Annotated[UUID, Path()],
) -> CorrectionPreviewResponse:
    preview = await manager.preview(correction_id)
    return CorrectionPreviewResponse(**preview.to_dict())


@router.post(
    "/corrections/{correction_id}/approve",
    response_model=CorrectionResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def approve_correction(
    db: DbSession,
    manager: Corrections,
    actor: CurrentActor,
    correction_id: Annotated[UUID, Path()],
    payload: CorrectionDecisionRequest,
) -> CorrectionResponse:
    correction = await manager.approve(correction_id, actor, payload.notes)
    await db.commit()
    return CorrectionResponse.model_validate(correction)


@router.post(
    "/corrections/{correction_id}/reject",
    response_model=CorrectionResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def reject_correction(
    db: DbSession,
    manager: Corrections,
    actor: CurrentActor,
    correction_id: Annotated[UUID, Path()],
    payload: CorrectionDecisionRequest,
) -> CorrectionResponse:
    correction = await manager.reject(correction_id, actor, payload.notes or "")
    await db.commit()
    return CorrectionResponse.model_validate(correction)


@router.post(
    "/corrections/{correction_id}/process",
    response_model=PayrollRecordResponse,
    responses={409: {"model": ErrorResponse}},
)
async def process_correction(
    db: DbSession,
    manager: Corrections,
    actor: CurrentActor,
    correction_id: Annotated[UUID, Path()],
) -> PayrollRecordResponse:
    """Apply an approved correction; returns the new released version."""
    record = await manager.process(correction_id, actor.actor_id)
    await db.commit()
    return PayrollRecordResponse.model_validate(record)


@router.post(
    "/corrections/{correction_id}/cancel",
    response_model=CorrectionResponse,
    responses={409: {"model": ErrorResponse}},
)
async def cancel_correction(
    db: DbSession,
    manager: Corrections,
    actor: CurrentActor,
    correction_id: Annotated[UUID, Path()],
    payload: CorrectionCancelRequest,
) -> CorrectionResponse:
    correction = await manager.cancel(correction_id, actor.actor_id, payload.reason)
    await db.commit()
    return CorrectionResponse.model_validate(correction)


@router.get("/records/{record_id}/corrections", response_model=list[CorrectionResponse])
async def record_corrections(
    manager: Corrections,
    record_id: Annotated[UUID, Path()],
) -> list[CorrectionResponse]:
    corrections = await manager.corrections_for_record(record_id)
    return [CorrectionResponse.model_validate(c) for c in corrections]

"""Audit trail query endpoints."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from hr_payroll.api.dependencies import Audit
from hr_payroll.api.schemas import AuditEntryResponse, ErrorResponse

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get(
    "",
    response_model=list[AuditEntryResponse],
    responses={400: {"model": ErrorResponse}},
)
async def query_audit(
    recorder: Audit,
    subject_type: str | None = None,
    subject_id: str | None = None,
    actor_id: str | None = None,
    start: Annotated[datetime | None, Query()] = None,
    end: Annotated[datetime | None, Query()] = None,
) -> list[AuditEntryResponse]:
    """Query by subject, by actor, or by a [start, end) time range."""
    if subject_type and subject_id:
        entries = await recorder.query_by_subject(subject_type, subject_id)
    elif actor_id:
        entries = await recorder.query_by_actor(actor_id)
    elif start and end:
        entries = await recorder.query_by_date_range(start, end)
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Give subject_type and subject_id, actor_id, or start and end",
        )
    return [AuditEntryResponse.model_validate(e) for e in entries]

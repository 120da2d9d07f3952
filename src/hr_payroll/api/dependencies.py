"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from hr_payroll.services.approval_service import Actor, PayslipApprovalWorkflow
from hr_payroll.services.audit_service import AuditTrailRecorder
from hr_payroll.services.correction_service import ErrorCorrectionManager
from hr_payroll.services.payroll_service import PayrollService


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency. Routes commit explicitly."""
    async with request.app.state.session_factory() as session:
        yield session


async def get_actor(
    x_actor_id: Annotated[str | None, Header()] = None,
    x_actor_roles: Annotated[str | None, Header()] = None,
) -> Actor:
    """Build the acting identity from headers set by the auth gateway."""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-Id header is required",
        )
    roles = frozenset(
        role.strip() for role in (x_actor_roles or "").split(",") if role.strip()
    )
    return Actor(actor_id=x_actor_id.strip(), roles=roles)


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_payroll_service(request: Request, db: DbSession) -> PayrollService:
    state = request.app.state
    return PayrollService(
        db,
        provider=state.provider,
        directory=state.directory,
        emitter=state.emitter,
    )


def get_approval_workflow(request: Request, db: DbSession) -> PayslipApprovalWorkflow:
    state = request.app.state
    return PayslipApprovalWorkflow(
        db,
        chain=state.chain,
        renderer=state.renderer,
        emitter=state.emitter,
    )


def get_correction_manager(request: Request, db: DbSession) -> ErrorCorrectionManager:
    state = request.app.state
    return ErrorCorrectionManager(
        db,
        emitter=state.emitter,
        approver_role=state.settings.correction_approver_role,
    )


def get_audit_recorder(db: DbSession) -> AuditTrailRecorder:
    return AuditTrailRecorder(db)


# Type aliases for cleaner dependency injection
CurrentActor = Annotated[Actor, Depends(get_actor)]
Payroll = Annotated[PayrollService, Depends(get_payroll_service)]
Approvals = Annotated[PayslipApprovalWorkflow, Depends(get_approval_workflow)]
Corrections = Annotated[ErrorCorrectionManager, Depends(get_correction_manager)]
Audit = Annotated[AuditTrailRecorder, Depends(get_audit_recorder)]

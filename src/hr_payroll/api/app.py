"""FastAPI application factory."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hr_payroll.api.routes import (
    audit_router,
    corrections_router,
    health_router,
    payroll_router,
)
from hr_payroll.config import Settings, configure_logging, get_settings
from hr_payroll.database import init_db, init_models
from hr_payroll.errors import (
    ApproverNotAuthorizedError,
    AuditWriteError,
    ComputationInvariantViolation,
    ConcurrentModificationError,
    DataUnavailable,
    NotFoundError,
    PayrollError,
    StateConflict,
    ValidationError,
)
from hr_payroll.events import EventEmitter
from hr_payroll.providers.base import (
    CompensationInputProvider,
    EmployeeDirectory,
    Notifier,
    PayslipRenderer,
)
from hr_payroll.services.approval_service import ApprovalChain
from hr_payroll.services.sla_monitor import ApprovalSlaMonitor

logger = logging.getLogger(__name__)

# Most specific first; the first match wins
ERROR_STATUS: list[tuple[type[PayrollError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ApproverNotAuthorizedError, status.HTTP_403_FORBIDDEN),
    (ConcurrentModificationError, status.HTTP_409_CONFLICT),
    (StateConflict, status.HTTP_409_CONFLICT),
    (DataUnavailable, status.HTTP_424_FAILED_DEPENDENCY),
    (ComputationInvariantViolation, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (AuditWriteError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(error: PayrollError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    if app.state.session_factory is None:
        engine, app.state.session_factory = init_db()
        await init_models(engine)

    stop = asyncio.Event()
    sweep: asyncio.Task | None = None
    settings: Settings = app.state.settings
    if settings.sla_sweep_seconds > 0:
        monitor = ApprovalSlaMonitor(
            app.state.session_factory,
            app.state.chain,
            settings.approval_sla_hours,
            emitter=app.state.emitter,
        )
        sweep = asyncio.create_task(monitor.run_forever(settings.sla_sweep_seconds, stop))

    yield

    # Shutdown
    stop.set()
    if sweep is not None:
        await sweep


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    provider: CompensationInputProvider | None = None,
    directory: EmployeeDirectory | None = None,
    renderer: PayslipRenderer | None = None,
    notifier: Notifier | None = None,
    emitter: EventEmitter | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators are injected here; the session factory defaults to the
    configured database on startup.
    """
    settings = settings or get_settings()
    app = FastAPI(
        title="HR Payroll Workflow API",
        description="Payroll calculation, approval, release and error correction",
        version=settings.engine_version,
        lifespan=lifespan,
    )

    emitter = emitter or EventEmitter()
    if notifier is not None:
        emitter.on_all(notifier.notify)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.provider = provider
    app.state.directory = directory
    app.state.renderer = renderer
    app.state.emitter = emitter
    app.state.chain = ApprovalChain(settings.approval_chain)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(PayrollError)
    async def payroll_error_handler(request: Request, exc: PayrollError) -> JSONResponse:
        """Map the payroll error taxonomy to HTTP status codes."""
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
                "retryable": False,
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payroll_router, prefix="/api/v1/payroll")
    app.include_router(corrections_router, prefix="/api/v1/payroll")
    app.include_router(audit_router, prefix="/api/v1/payroll")

    return app


def build_default_app() -> FastAPI:
    """App for ``uvicorn hr_payroll.api.app:app``; collaborators are wired by deployment."""
    configure_logging()
    return create_app()


# Default app instance for uvicorn
app = build_default_app()

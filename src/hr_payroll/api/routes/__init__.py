"""API routes."""

from hr_payroll.api.routes.audit import router as audit_router
from hr_payroll.api.routes.corrections import router as corrections_router
from hr_payroll.api.routes.health import router as health_router
from hr_payroll.api.routes.payroll import router as payroll_router

__all__ = ["audit_router", "corrections_router", "health_router", "payroll_router"]

"""Protocols for the collaborators the payroll workflow consumes.

Attendance/leave collection, the employee directory, payslip rendering and
notification delivery live in other subsystems. Adapters for them implement
these protocols and are handed to the services at construction time.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

from hr_payroll.calculators.types import EmployeeInputs, PayPeriod, RuleSet

if TYPE_CHECKING:
    from hr_payroll.events.types import DomainEvent
    from hr_payroll.models import PayrollRecord


class CompensationInputProvider(Protocol):
    """Attendance, leave and salary configuration per employee/period.

    Implementations raise ``DataUnavailable`` (or return ``None``) when
    inputs are missing; they must fail fast rather than wait.
    """

    async def get_employee_inputs(
        self, employee_id: str, period: PayPeriod
    ) -> EmployeeInputs | None:
        """Worked hours, overtime, approved leave days, allowance overrides."""
        ...

    async def get_rule_set(self, employee_id: str, period: PayPeriod) -> RuleSet | None:
        """Compensation rules in force for the employee in the period."""
        ...

    async def get_exchange_rate(
        self, source_currency: str, target_currency: str, period: PayPeriod
    ) -> Decimal | None:
        """Rate converting one unit of source into target currency."""
        ...


class EmployeeDirectory(Protocol):
    """Read access to the employee/branch directory."""

    async def get_active_employees(self, branch_id: str) -> list[str]:
        ...

    async def get_branch_currency(self, branch_id: str) -> str:
        ...


class PayslipRenderer(Protocol):
    """Renders a released payroll record into a payslip document."""

    async def render_payslip_document(
        self, record: PayrollRecord, template_id: str | None
    ) -> bytes:
        ...


class Notifier(Protocol):
    """Fire-and-forget delivery of workflow events."""

    def notify(self, event: DomainEvent) -> None:
        ...

"""Collaborator protocols."""

from hr_payroll.providers.base import (
    CompensationInputProvider,
    EmployeeDirectory,
    Notifier,
    PayslipRenderer,
)

__all__ = [
    "CompensationInputProvider",
    "EmployeeDirectory",
    "Notifier",
    "PayslipRenderer",
]

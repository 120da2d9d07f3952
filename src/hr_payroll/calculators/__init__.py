"""Payroll calculation engine."""

from hr_payroll.calculators.engine import PayrollCalculator
from hr_payroll.calculators.line_builder import LineItemBuilder
from hr_payroll.calculators.types import (
    AllowanceRule,
    CalculationResult,
    DeductionCategory,
    DeductionRule,
    EmployeeInputs,
    LineCandidate,
    LineType,
    PayPeriod,
    RuleSet,
)

__all__ = [
    "AllowanceRule",
    "CalculationResult",
    "DeductionCategory",
    "DeductionRule",
    "EmployeeInputs",
    "LineCandidate",
    "LineItemBuilder",
    "LineType",
    "PayPeriod",
    "PayrollCalculator",
    "RuleSet",
]

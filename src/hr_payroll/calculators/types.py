"""Type definitions for calculation pipeline."""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any


class LineType(str, Enum):
    """Payroll line types."""

    EARNING = "earning"
    DEDUCTION = "deduction"


class DeductionCategory(str, Enum):
    """Statutory deductions are applied before voluntary ones."""

    STATUTORY = "statutory"
    VOLUNTARY = "voluntary"


@dataclass(frozen=True, order=True)
class PayPeriod:
    """A calendar month pay period."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid pay period month: {self.month}")
        if self.year < 1900:
            raise ValueError(f"Invalid pay period year: {self.year}")

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    def is_closed(self, as_of: date) -> bool:
        """A period is closed once its last day has passed."""
        return self.end < as_of

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class EmployeeInputs:
    """Attendance and leave inputs for one employee and one period."""

    worked_hours: Decimal | None
    overtime_hours: Decimal = Decimal("0")
    approved_leave_days: Decimal = Decimal("0")
    allowance_overrides: dict[str, Decimal] = field(default_factory=dict)

    def to_canonical_dict(self) -> dict[str, Any]:
        return {
            "worked_hours": str(self.worked_hours),
            "overtime_hours": str(self.overtime_hours),
            "approved_leave_days": str(self.approved_leave_days),
            "allowance_overrides": {
                k: str(v) for k, v in sorted(self.allowance_overrides.items())
            },
        }


@dataclass(frozen=True)
class AllowanceRule:
    """Allowance paid on top of base pay: fixed amount or percent of base."""

    name: str
    amount: Decimal | None = None
    percent_of_base: Decimal | None = None


@dataclass(frozen=True)
class DeductionRule:
    """Deduction from gross: fixed amount or percent of gross, optionally capped."""

    name: str
    category: DeductionCategory = DeductionCategory.STATUTORY
    amount: Decimal | None = None
    percent_of_gross: Decimal | None = None
    cap: Decimal | None = None


@dataclass(frozen=True)
class RuleSet:
    """Compensation rules for one employee, snapshotted into each record."""

    rule_set_id: str
    base_salary: Decimal
    contract_currency: str = "USD"
    standard_monthly_hours: Decimal = Decimal("160")
    standard_hours_per_day: Decimal = Decimal("8")
    overtime_multiplier: Decimal = Decimal("1.5")
    allowances: tuple[AllowanceRule, ...] = ()
    deductions: tuple[DeductionRule, ...] = ()

    @property
    def hourly_rate(self) -> Decimal:
        return self.base_salary / self.standard_monthly_hours

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe snapshot embedded in the payroll record."""
        return {
            "rule_set_id": self.rule_set_id,
            "base_salary": str(self.base_salary),
            "contract_currency": self.contract_currency,
            "standard_monthly_hours": str(self.standard_monthly_hours),
            "standard_hours_per_day": str(self.standard_hours_per_day),
            "overtime_multiplier": str(self.overtime_multiplier),
            "allowances": [
                {
                    "name": a.name,
                    "amount": str(a.amount) if a.amount is not None else None,
                    "percent_of_base": (
                        str(a.percent_of_base) if a.percent_of_base is not None else None
                    ),
                }
                for a in self.allowances
            ],
            "deductions": [
                {
                    "name": d.name,
                    "category": d.category.value,
                    "amount": str(d.amount) if d.amount is not None else None,
                    "percent_of_gross": (
                        str(d.percent_of_gross) if d.percent_of_gross is not None else None
                    ),
                    "cap": str(d.cap) if d.cap is not None else None,
                }
                for d in self.deductions
            ],
        }


@dataclass
class LineCandidate:
    """A candidate line item before persistence. Amounts are non-negative."""

    line_type: LineType
    name: str
    amount: Decimal
    explanation: str | None = None

    def to_canonical_dict(self) -> dict[str, Any]:
        return {
            "line_type": self.line_type.value,
            "name": self.name,
            "amount": str(self.amount),
        }


@dataclass
class CalculationResult:
    """Result of calculating pay for one employee and one period."""

    employee_id: str
    period: PayPeriod
    earnings: list[LineCandidate]
    deductions: list[LineCandidate]
    gross: Decimal
    net: Decimal
    currency: str
    contract_currency: str
    exchange_rate: Decimal | None
    rule_snapshot: dict[str, Any]
    inputs_fingerprint: str
    rules_fingerprint: str

    @property
    def lines(self) -> list[LineCandidate]:
        return self.earnings + self.deductions

    @property
    def total_deductions(self) -> Decimal:
        return sum((line.amount for line in self.deductions), Decimal("0"))

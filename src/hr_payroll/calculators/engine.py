"""Payroll calculator - gross-to-net for one employee and one period."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from hr_payroll.calculators.line_builder import LineItemBuilder
from hr_payroll.calculators.types import (
    CalculationResult,
    DeductionCategory,
    DeductionRule,
    EmployeeInputs,
    PayPeriod,
    RuleSet,
)
from hr_payroll.errors import (
    InvalidRuleConfiguration,
    MissingInputData,
    NegativeNetPay,
    ValidationError,
)

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
ZERO = Decimal("0")


class PayrollCalculator:
    """Pure gross-to-net calculator.

    Calculation pipeline (stable order):
    1) Validate period, inputs, and rule configuration
    2) Base pay pro-rated by paid hours (worked + approved leave)
    3) Allowances (rule set, overridden or extended by inputs)
    4) Overtime at the configured multiplier
    5) Statutory deductions, then voluntary deductions (on gross)
    6) Convert each line once to the branch currency and round
    7) Derive gross and net from the rounded lines
    8) Reject negative net pay
    """

    def calculate(
        self,
        employee_id: str,
        period: PayPeriod,
        inputs: EmployeeInputs | None,
        rule_set: RuleSet | None,
        branch_currency: str | None = None,
        exchange_rate: Decimal | None = None,
        as_of: date | None = None,
    ) -> CalculationResult:
        """Calculate pay, raising a CalculationError subclass on failure."""
        as_of = as_of or date.today()
        if not period.is_closed(as_of):
            raise ValidationError(
                f"Pay period {period} is not closed as of {as_of}",
                employee_id=employee_id,
            )
        if inputs is None or inputs.worked_hours is None:
            raise MissingInputData(
                f"No attendance data for employee {employee_id} in {period}",
                employee_id=employee_id,
            )
        if rule_set is None:
            raise MissingInputData(
                f"No compensation rules for employee {employee_id} in {period}",
                employee_id=employee_id,
            )
        self._validate_inputs(employee_id, inputs)
        self._validate_rule_set(employee_id, rule_set)

        contract_currency = rule_set.contract_currency.upper()
        currency = (branch_currency or contract_currency).upper()
        rate = self._resolve_rate(employee_id, contract_currency, currency, exchange_rate)

        # Amounts below are in contract currency at full precision
        raw_earnings = self._earnings(inputs, rule_set)
        raw_gross = sum((amount for _, amount, _ in raw_earnings), ZERO)
        raw_deductions = self._deductions(rule_set.deductions, raw_gross)

        earnings = [
            LineItemBuilder.create_earning_line(name, amount * rate, currency, explanation)
            for name, amount, explanation in raw_earnings
        ]
        deductions = [
            LineItemBuilder.create_deduction_line(name, amount * rate, currency, explanation)
            for name, amount, explanation in raw_deductions
        ]

        gross = LineItemBuilder.calculate_gross(earnings)
        net = gross - LineItemBuilder.calculate_deductions(deductions)
        if net < 0:
            raise NegativeNetPay(
                f"Negative net pay {net} {currency} for employee {employee_id} in {period}",
                employee_id=employee_id,
                net=str(net),
            )

        snapshot = rule_set.to_snapshot()
        inputs_fingerprint = LineItemBuilder.fingerprint(
            {"employee_id": employee_id, "period": str(period), **inputs.to_canonical_dict()}
        )
        rules_fingerprint = LineItemBuilder.fingerprint(
            {"rules": snapshot, "currency": currency, "exchange_rate": str(rate)}
        )

        logger.debug(
            "Calculated %s for employee %s: gross=%s net=%s %s",
            period,
            employee_id,
            gross,
            net,
            currency,
        )
        return CalculationResult(
            employee_id=employee_id,
            period=period,
            earnings=earnings,
            deductions=deductions,
            gross=gross,
            net=net,
            currency=currency,
            contract_currency=contract_currency,
            exchange_rate=exchange_rate if currency != contract_currency else None,
            rule_snapshot=snapshot,
            inputs_fingerprint=inputs_fingerprint,
            rules_fingerprint=rules_fingerprint,
        )

    def _earnings(
        self, inputs: EmployeeInputs, rule_set: RuleSet
    ) -> list[tuple[str, Decimal, str]]:
        earnings: list[tuple[str, Decimal, str]] = []

        paid_hours = inputs.worked_hours + inputs.approved_leave_days * rule_set.standard_hours_per_day
        ratio = min(paid_hours / rule_set.standard_monthly_hours, Decimal("1"))
        earnings.append(
            (
                "Base pay",
                rule_set.base_salary * ratio,
                f"{paid_hours} of {rule_set.standard_monthly_hours} hours",
            )
        )

        overrides = dict(inputs.allowance_overrides)
        for allowance in rule_set.allowances:
            if allowance.name in overrides:
                amount = overrides.pop(allowance.name)
                explanation = "Override"
            elif allowance.amount is not None:
                amount = allowance.amount
                explanation = "Fixed"
            else:
                amount = rule_set.base_salary * allowance.percent_of_base / HUNDRED
                explanation = f"{allowance.percent_of_base}% of base"
            if amount > 0:
                earnings.append((allowance.name, amount, explanation))

        # Overrides for allowances the rule set does not define are extra allowances
        for name, amount in sorted(overrides.items()):
            if amount > 0:
                earnings.append((name, amount, "Override"))

        if inputs.overtime_hours > 0:
            earnings.append(
                (
                    "Overtime",
                    inputs.overtime_hours * rule_set.hourly_rate * rule_set.overtime_multiplier,
                    f"{inputs.overtime_hours}h x {rule_set.overtime_multiplier}",
                )
            )
        return earnings

    def _deductions(
        self, rules: tuple[DeductionRule, ...], gross: Decimal
    ) -> list[tuple[str, Decimal, str]]:
        ordered = [r for r in rules if r.category == DeductionCategory.STATUTORY] + [
            r for r in rules if r.category == DeductionCategory.VOLUNTARY
        ]
        deductions: list[tuple[str, Decimal, str]] = []
        for rule in ordered:
            if rule.amount is not None:
                amount = rule.amount
                explanation = f"{rule.category.value}: fixed"
            else:
                amount = gross * rule.percent_of_gross / HUNDRED
                explanation = f"{rule.category.value}: {rule.percent_of_gross}% of gross"
            if rule.cap is not None and amount > rule.cap:
                amount = rule.cap
                explanation += f" (capped at {rule.cap})"
            if amount > 0:
                deductions.append((rule.name, amount, explanation))
        return deductions

    @staticmethod
    def _resolve_rate(
        employee_id: str,
        contract_currency: str,
        currency: str,
        exchange_rate: Decimal | None,
    ) -> Decimal:
        if currency == contract_currency:
            return Decimal("1")
        if exchange_rate is None or exchange_rate <= 0:
            raise InvalidRuleConfiguration(
                f"No usable exchange rate from {contract_currency} to {currency}",
                employee_id=employee_id,
            )
        return exchange_rate

    @staticmethod
    def _validate_inputs(employee_id: str, inputs: EmployeeInputs) -> None:
        for field_name in ("worked_hours", "overtime_hours", "approved_leave_days"):
            if getattr(inputs, field_name) < 0:
                raise ValidationError(
                    f"{field_name} cannot be negative for employee {employee_id}",
                    employee_id=employee_id,
                )
        for name, amount in inputs.allowance_overrides.items():
            if amount < 0:
                raise ValidationError(
                    f"Allowance override '{name}' cannot be negative",
                    employee_id=employee_id,
                )

    @staticmethod
    def _validate_rule_set(employee_id: str, rule_set: RuleSet) -> None:
        problems: list[str] = []
        if rule_set.base_salary < 0:
            problems.append("base salary is negative")
        if rule_set.standard_monthly_hours <= 0:
            problems.append("standard monthly hours must be positive")
        if rule_set.standard_hours_per_day <= 0:
            problems.append("standard hours per day must be positive")
        if rule_set.overtime_multiplier < 0:
            problems.append("overtime multiplier is negative")

        names: set[str] = set()
        for allowance in rule_set.allowances:
            if (allowance.amount is None) == (allowance.percent_of_base is None):
                problems.append(
                    f"allowance '{allowance.name}' needs exactly one of amount or percent"
                )
            elif (allowance.amount or ZERO) < 0 or (allowance.percent_of_base or ZERO) < 0:
                problems.append(f"allowance '{allowance.name}' is negative")
            if allowance.name in names:
                problems.append(f"component '{allowance.name}' is defined twice")
            names.add(allowance.name)

        names = set()
        for deduction in rule_set.deductions:
            if (deduction.amount is None) == (deduction.percent_of_gross is None):
                problems.append(
                    f"deduction '{deduction.name}' needs exactly one of amount or percent"
                )
            elif (deduction.amount or ZERO) < 0 or (deduction.percent_of_gross or ZERO) < 0:
                problems.append(f"deduction '{deduction.name}' is negative")
            if deduction.cap is not None and deduction.cap < 0:
                problems.append(f"deduction '{deduction.name}' has a negative cap")
            if deduction.name in names:
                problems.append(f"component '{deduction.name}' is defined twice")
            names.add(deduction.name)

        if problems:
            raise InvalidRuleConfiguration(
                f"Rule set {rule_set.rule_set_id} is invalid: {'; '.join(problems)}",
                employee_id=employee_id,
            )

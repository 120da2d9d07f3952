"""Statutory threshold checks over calculated or released records.

Validation is advisory: it only reports violations. Release decides
whether they block (see ``PayslipApprovalWorkflow.release``).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class ComplianceRuleSet:
    """Thresholds configured for one jurisdiction."""

    jurisdiction: str
    currency: str | None = None
    minimum_net_pay: Decimal | None = None
    maximum_total_deductions: Decimal | None = None
    maximum_deduction_ratio: Decimal | None = None  # of gross, e.g. 0.5
    required_deductions: tuple[str, ...] = ()


@dataclass(frozen=True)
class ComplianceViolation:
    """One threshold a record breaks."""

    rule: str
    message: str
    actual: Decimal | str | None = None
    limit: Decimal | str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "message": self.message,
            "actual": str(self.actual) if self.actual is not None else None,
            "limit": str(self.limit) if self.limit is not None else None,
        }


class ComplianceValidator:
    """Pure checks; works on a CalculationResult or a PayrollRecord."""

    @staticmethod
    def validate(record: Any, rules: ComplianceRuleSet) -> list[ComplianceViolation]:
        violations: list[ComplianceViolation] = []

        if rules.currency and rules.currency.upper() != record.currency.upper():
            violations.append(
                ComplianceViolation(
                    rule="currency",
                    message=(
                        f"Record is in {record.currency} but {rules.jurisdiction} "
                        f"thresholds are in {rules.currency}"
                    ),
                    actual=record.currency,
                    limit=rules.currency,
                )
            )
            # Thresholds in another currency cannot be compared
            return violations

        if rules.minimum_net_pay is not None and record.net < rules.minimum_net_pay:
            violations.append(
                ComplianceViolation(
                    rule="minimum_net_pay",
                    message=f"Net pay {record.net} is below the {rules.jurisdiction} minimum",
                    actual=record.net,
                    limit=rules.minimum_net_pay,
                )
            )

        total_deductions = record.total_deductions
        if (
            rules.maximum_total_deductions is not None
            and total_deductions > rules.maximum_total_deductions
        ):
            violations.append(
                ComplianceViolation(
                    rule="maximum_total_deductions",
                    message=f"Deductions {total_deductions} exceed the configured cap",
                    actual=total_deductions,
                    limit=rules.maximum_total_deductions,
                )
            )

        if rules.maximum_deduction_ratio is not None and record.gross > 0:
            ratio = total_deductions / record.gross
            if ratio > rules.maximum_deduction_ratio:
                violations.append(
                    ComplianceViolation(
                        rule="maximum_deduction_ratio",
                        message=f"Deductions are {ratio:.4f} of gross",
                        actual=ratio,
                        limit=rules.maximum_deduction_ratio,
                    )
                )

        present = {line.name for line in record.deductions}
        for name in rules.required_deductions:
            if name not in present:
                violations.append(
                    ComplianceViolation(
                        rule="required_deduction",
                        message=f"Required deduction '{name}' is missing",
                        limit=name,
                    )
                )

        return violations


def validate(record: Any, rules: ComplianceRuleSet) -> list[ComplianceViolation]:
    """Shorthand for ``ComplianceValidator.validate``."""
    return ComplianceValidator.validate(record, rules)

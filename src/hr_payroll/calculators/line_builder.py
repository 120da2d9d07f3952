"""Line item builder and fixed-point money rules."""

from __future__ import annotations

import hashlib
import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from hr_payroll.calculators.types import LineCandidate, LineType

# ISO 4217 minor units for currencies that differ from the usual two.
CURRENCY_MINOR_UNITS: dict[str, int] = {
    "BHD": 3,
    "CLP": 0,
    "ISK": 0,
    "JOD": 3,
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
    "UGX": 0,
    "VND": 0,
}
DEFAULT_MINOR_UNITS = 2


class LineItemBuilder:
    """Builds line items and derives totals with currency-aware rounding.

    Conventions:
    - All line amounts are stored non-negative; the line type carries the sign
    - Internal compute keeps full Decimal precision
    - Each line is rounded once, half away from zero, to the currency's
      minor unit
    - gross = sum(earnings), net = gross - sum(deductions), both exact
      over the rounded lines
    """

    @staticmethod
    def minor_unit(currency: str) -> Decimal:
        """Smallest representable amount for a currency, e.g. 0.01 for USD."""
        places = CURRENCY_MINOR_UNITS.get(currency.upper(), DEFAULT_MINOR_UNITS)
        return Decimal(1).scaleb(-places)

    @staticmethod
    def round_amount(amount: Decimal, currency: str) -> Decimal:
        """Round to the currency's minor unit.

        ROUND_HALF_UP in the decimal module rounds ties away from zero,
        for negative values as well.
        """
        return amount.quantize(LineItemBuilder.minor_unit(currency), rounding=ROUND_HALF_UP)

    @staticmethod
    def create_earning_line(
        name: str,
        amount: Decimal,
        currency: str,
        explanation: str | None = None,
    ) -> LineCandidate:
        return LineCandidate(
            line_type=LineType.EARNING,
            name=name,
            amount=LineItemBuilder.round_amount(amount, currency),
            explanation=explanation,
        )

    @staticmethod
    def create_deduction_line(
        name: str,
        amount: Decimal,
        currency: str,
        explanation: str | None = None,
    ) -> LineCandidate:
        return LineCandidate(
            line_type=LineType.DEDUCTION,
            name=name,
            amount=LineItemBuilder.round_amount(amount, currency),
            explanation=explanation,
        )

    @staticmethod
    def calculate_gross(lines: Iterable[Any]) -> Decimal:
        """GROSS = sum of earning lines."""
        return sum(
            (l.amount for l in lines if _line_type(l) == LineType.EARNING.value),
            Decimal("0"),
        )

    @staticmethod
    def calculate_deductions(lines: Iterable[Any]) -> Decimal:
        return sum(
            (l.amount for l in lines if _line_type(l) == LineType.DEDUCTION.value),
            Decimal("0"),
        )

    @staticmethod
    def calculate_net(lines: Iterable[Any]) -> Decimal:
        """NET = GROSS - sum of deduction lines."""
        lines = list(lines)
        return LineItemBuilder.calculate_gross(lines) - LineItemBuilder.calculate_deductions(
            lines
        )

    @staticmethod
    def validate_lines(lines: Iterable[Any], currency: str) -> list[str]:
        """Check amounts are non-negative and already at minor-unit precision.

        Returns list of error messages (empty if all valid).
        """
        errors: list[str] = []
        for i, line in enumerate(lines):
            if line.amount < 0:
                errors.append(f"Line {i} ({line.name}) has negative amount {line.amount}")
            if LineItemBuilder.round_amount(line.amount, currency) != line.amount:
                errors.append(
                    f"Line {i} ({line.name}) amount {line.amount} is not rounded to "
                    f"{currency} minor units"
                )
        return errors

    @staticmethod
    def fingerprint(data: Any) -> str:
        """Deterministic SHA-256 fingerprint of JSON-serializable data."""
        json_str = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]


def _line_type(line: Any) -> str:
    line_type = line.line_type
    return line_type.value if isinstance(line_type, LineType) else line_type

"""Garnishment orders deducted from disposable income.

Orders are applied in priority order. Each one is computed against the
disposable income left after the orders before it, capped at its legal limit
and, when the order carries a total, at the balance still outstanding.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable

from hr_payroll.calculators.amount import AmountCalculator
from hr_payroll.calculators.line_builder import LineItemBuilder
from hr_payroll.calculators.rules import GARNISHMENT_METHODS, RuleConfigurationError
from hr_payroll.calculators.types import (
    ZERO,
    AmountBase,
    AmountResult,
    CalculationMethod,
    GarnishmentType,
    ItemSource,
    ItemType,
    PayrollLine,
)
from hr_payroll.models import EmployeePayrollItem

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")

DEFAULT_PRIORITIES = {
    GarnishmentType.CHILD_SUPPORT: 1,
    GarnishmentType.TAX_LEVY: 2,
    GarnishmentType.STUDENT_LOAN: 3,
    GarnishmentType.BANKRUPTCY: 4,
    GarnishmentType.WAGE_GARNISHMENT: 5,
    GarnishmentType.OTHER: 6,
}

# Percent of disposable income an order may take when it sets no maximum.
LEGAL_LIMITS = {
    GarnishmentType.CHILD_SUPPORT: Decimal("50"),
    GarnishmentType.TAX_LEVY: Decimal("15"),
    GarnishmentType.STUDENT_LOAN: Decimal("15"),
    GarnishmentType.BANKRUPTCY: Decimal("25"),
    GarnishmentType.WAGE_GARNISHMENT: Decimal("25"),
    GarnishmentType.OTHER: Decimal("25"),
}
CHILD_SUPPORT_CEILING = Decimal("60")

_METHODS = frozenset(m.value for m in GARNISHMENT_METHODS)


def default_priority(garnishment_type: str | None) -> int:
    try:
        return DEFAULT_PRIORITIES[GarnishmentType(garnishment_type)]
    except ValueError:
        return DEFAULT_PRIORITIES[GarnishmentType.WAGE_GARNISHMENT]


def legal_limit_percentage(
    garnishment_type: str | None, maximum_percentage: Decimal | None
) -> Decimal:
    """Share of disposable income (0-100) an order may take.

    Child support defaults to 50% and never exceeds 60%, whatever the order
    says; other orders use their own maximum or the limit for their type.
    """
    if garnishment_type == GarnishmentType.CHILD_SUPPORT.value:
        requested = maximum_percentage or LEGAL_LIMITS[GarnishmentType.CHILD_SUPPORT]
        return min(requested, CHILD_SUPPORT_CEILING)
    if maximum_percentage:
        return Decimal(maximum_percentage)
    try:
        return LEGAL_LIMITS[GarnishmentType(garnishment_type)]
    except ValueError:
        return LEGAL_LIMITS[GarnishmentType.OTHER]


@dataclass
class GarnishmentResult:
    """Garnishment lines computed for one employee and period."""

    disposable_income: Decimal
    remaining_disposable_income: Decimal
    total: Decimal = ZERO
    lines: list[PayrollLine] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)


class GarnishmentCalculator:
    """Computes garnishment deductions against disposable income."""

    def __init__(self, amount_calculator: AmountCalculator | None = None):
        self.amount_calculator = amount_calculator or AmountCalculator()

    def order(self, items: Iterable[EmployeePayrollItem]) -> list[EmployeePayrollItem]:
        """Highest priority (lowest number) first, then by code."""
        return sorted(
            items,
            key=lambda item: (
                item.priority_order
                if item.priority_order is not None
                else default_priority(item.garnishment_type),
                item.code,
            ),
        )

    def calculate(
        self,
        items: Iterable[EmployeePayrollItem],
        disposable_income: Decimal,
        base: AmountBase,
    ) -> GarnishmentResult:
        """Apply every order in priority order.

        ``base`` supplies the period basic salary and formula variables; the
        salary reference for percentage and formula orders is the disposable
        income still available to that order. A failing order is reported in
        ``errors`` and the remaining orders still apply.
        """
        disposable = max(LineItemBuilder.round_to_cents(disposable_income), ZERO)
        result = GarnishmentResult(
            disposable_income=disposable, remaining_disposable_income=disposable
        )
        for item in self.order(items):
            try:
                line = self._garnish(item, result.remaining_disposable_income, base, result.flags)
            except (RuleConfigurationError, ArithmeticError) as e:
                logger.error("Garnishment %s could not be calculated: %s", item.code, e)
                result.errors.append(f"{item.code}: {e}")
                continue
            if line is None:
                continue
            result.lines.append(line)
            result.total += line.employee_amount
            result.remaining_disposable_income -= line.employee_amount
        return result

    def _garnish(
        self,
        item: EmployeePayrollItem,
        available: Decimal,
        base: AmountBase,
        flags: list[str],
    ) -> PayrollLine | None:
        method = item.calculation_method
        if method not in _METHODS:
            raise RuleConfigurationError(
                str(method), "not a garnishment calculation method", item.code
            )

        calculated = self._calculated_amount(item, available, base, flags)
        limit = legal_limit_percentage(item.garnishment_type, item.maximum_percentage)
        max_allowable = LineItemBuilder.round_to_cents(available * limit / HUNDRED)
        remaining_total = item.remaining_to_garnish

        final = min(calculated, max_allowable)
        if remaining_total is not None:
            final = min(final, remaining_total)
        final = max(final, ZERO)
        if final == 0:
            return None

        details: dict[str, Any] = {
            "garnishment_type": item.garnishment_type,
            "priority": item.priority_order
            if item.priority_order is not None
            else default_priority(item.garnishment_type),
            "disposable_income": str(available),
            "calculated_amount": str(calculated),
            "max_allowable_amount": str(max_allowable),
            "legal_limit_percentage": str(limit),
            "limited_by_legal": calculated > max_allowable,
            "limited_by_remaining": remaining_total is not None and calculated > remaining_total,
            "remaining_total": str(remaining_total) if remaining_total is not None else None,
            "court_order_number": item.court_order_number,
            "authority": item.garnishment_authority,
        }
        return LineItemBuilder.create_item_line(
            code=item.code,
            name=item.name,
            item_type=ItemType.GARNISHMENT,
            source=ItemSource.GARNISHMENT,
            result=AmountResult(amount=final, base=available, details=details),
            is_taxable=False,
            employee_payroll_item_id=item.employee_payroll_item_id,
        )

    def _calculated_amount(
        self,
        item: EmployeePayrollItem,
        available: Decimal,
        base: AmountBase,
        flags: list[str],
    ) -> Decimal:
        if item.calculation_method == CalculationMethod.MANUAL.value:
            return LineItemBuilder.round_to_cents(item.amount or ZERO)

        params = dict(item.parameters or {})
        if item.calculation_method == CalculationMethod.FIXED_AMOUNT.value and item.amount is not None:
            params.setdefault("amount", item.amount)
        amount = self.amount_calculator.calculate(
            item.calculation_method,
            params,
            dataclasses.replace(base, gross_base=available),
            source=item.code,
        )
        if amount.flagged:
            flags.append(f"{item.code}: {amount.flag_reason}")
        return amount.amount

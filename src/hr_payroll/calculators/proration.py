"""Proration for partial-period employment."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Protocol

from hr_payroll.calculators.line_builder import LineItemBuilder
from hr_payroll.calculators.types import ZERO


class EmploymentDates(Protocol):
    start_date: date | None
    termination_date: date | None


@dataclass(frozen=True)
class ProrationWindow:
    """Days worked within a pay period (inclusive calendar days)."""

    working_days: int
    period_days: int

    @property
    def applies(self) -> bool:
        return self.working_days != self.period_days

    @property
    def fraction(self) -> Decimal:
        if self.period_days <= 0:
            return ZERO
        return Decimal(self.working_days) / Decimal(self.period_days)


class ProrationEngine:
    """Scales amounts by the fraction of a period an employee was employed.

    Proration is triggered by a start date strictly after the period start
    (and within the period) or a termination date strictly before the period
    end (and within the period). Days are calendar days, both ends inclusive.
    """

    def window(
        self, employee: EmploymentDates, period_start: date, period_end: date
    ) -> ProrationWindow:
        period_days = (period_end - period_start).days + 1
        start = employee.start_date
        end = employee.termination_date

        if (start is not None and start > period_end) or (
            end is not None and end < period_start
        ):
            return ProrationWindow(working_days=0, period_days=period_days)

        starts_mid_period = start is not None and period_start < start <= period_end
        ends_mid_period = end is not None and period_start <= end < period_end
        if not starts_mid_period and not ends_mid_period:
            return ProrationWindow(working_days=period_days, period_days=period_days)

        first = start if starts_mid_period else period_start
        last = end if ends_mid_period else period_end
        working_days = max((last - first).days + 1, 0)
        return ProrationWindow(working_days=working_days, period_days=period_days)

    def prorate(
        self,
        raw_amount: Decimal,
        employee: EmploymentDates,
        period_start: date,
        period_end: date,
    ) -> Decimal:
        """Return ``raw_amount`` scaled to the days worked, rounded to cents."""
        window = self.window(employee, period_start, period_end)
        if not window.applies:
            return LineItemBuilder.round_to_cents(raw_amount)
        return LineItemBuilder.round_to_cents(raw_amount * window.fraction)

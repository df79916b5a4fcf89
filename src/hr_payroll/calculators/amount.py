"""Amount calculator for company items and statutory rules."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from hr_payroll.calculators.formula import (
    FormulaEvaluationError,
    UnsafeFormulaError,
    compile_formula,
)
from hr_payroll.calculators.line_builder import LineItemBuilder
from hr_payroll.calculators.rules import (
    MAX_AMOUNT,
    AmountRule,
    FixedAmountRule,
    FlatAmountRule,
    FormulaRule,
    ManualRule,
    PercentageOfBasicRule,
    PercentageOfSalaryRule,
    PercentageRule,
    ProgressiveBracketRule,
    RuleConfigurationError,
    SalaryBracketRule,
    parse_rule,
)
from hr_payroll.calculators.types import ZERO, AmountBase, AmountResult

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")

round_to_cents = LineItemBuilder.round_to_cents


class AmountCalculator:
    """Computes one item amount from a validated rule.

    Company methods express percentages as 0-100; statutory rates are
    fractions (0.01 == 1%). Every amount is rounded half-up to cents.
    """

    def calculate(
        self,
        method: str,
        params: dict[str, Any] | None,
        base: AmountBase,
        source: str | None = None,
    ) -> AmountResult:
        """Parse the rule for ``method`` and compute it.

        Raises RuleConfigurationError if the method or parameters are invalid.
        """
        return self.calculate_rule(parse_rule(method, params, source), base)

    def calculate_rule(self, rule: AmountRule, base: AmountBase) -> AmountResult:
        if isinstance(rule, FixedAmountRule):
            return AmountResult(amount=round_to_cents(rule.amount))
        if isinstance(rule, PercentageOfSalaryRule):
            return self._percent_of(base.gross_base, rule.percentage)
        if isinstance(rule, PercentageOfBasicRule):
            return self._percent_of(base.basic_salary, rule.percentage)
        if isinstance(rule, FormulaRule):
            return self._formula(rule, base)
        if isinstance(rule, ManualRule):
            return AmountResult(amount=ZERO, details={"manual": True})
        if isinstance(rule, ProgressiveBracketRule):
            return self._progressive(rule, base)
        if isinstance(rule, SalaryBracketRule):
            return self._salary_bracket(rule, base)
        if isinstance(rule, FlatAmountRule):
            return self._flat_amount(rule, base)
        if isinstance(rule, PercentageRule):
            return self._capped_percentage(rule, base)
        raise RuleConfigurationError(str(getattr(rule, "method", rule)), "unsupported rule")

    def _percent_of(self, amount: Decimal, percentage: Decimal) -> AmountResult:
        return AmountResult(
            amount=round_to_cents(amount * percentage / HUNDRED),
            rate=percentage,
            base=amount,
        )

    def _formula(self, rule: FormulaRule, base: AmountBase) -> AmountResult:
        details: dict[str, Any] = {"expression": rule.expression}
        try:
            value = compile_formula(rule.expression).evaluate(base.variables())
        except UnsafeFormulaError as e:
            logger.warning("Rejected payroll formula %r: %s", rule.expression, e.reason)
            details["error"] = e.reason
            return AmountResult(
                amount=ZERO, details=details, flagged=True, flag_reason=str(e)
            )
        except FormulaEvaluationError as e:
            details["error"] = str(e)
            return AmountResult(
                amount=ZERO,
                details=details,
                flagged=True,
                flag_reason=f"Formula {rule.expression!r} could not be evaluated: {e}",
            )

        if value < 0:
            details["raw_result"] = str(value)
            return AmountResult(
                amount=ZERO,
                details=details,
                flagged=True,
                flag_reason=f"Formula {rule.expression!r} produced a negative amount",
            )
        if value > MAX_AMOUNT:
            details["raw_result"] = str(value)
            return AmountResult(
                amount=ZERO,
                details=details,
                flagged=True,
                flag_reason=f"Formula {rule.expression!r} exceeds the largest payroll amount",
            )
        return AmountResult(amount=round_to_cents(value), details=details)

    def progressive_contributions(
        self, amount: Decimal, rule: ProgressiveBracketRule
    ) -> list[tuple[int, Decimal]]:
        """Per-band tax on ``amount``, unrounded, for bands that apply."""
        contributions: list[tuple[int, Decimal]] = []
        for index, band in enumerate(rule.bands):
            if amount <= band.min_amount:
                break
            upper = amount if band.max_amount is None else min(amount, band.max_amount)
            taxable = upper - band.min_amount
            if taxable > 0:
                contributions.append((index, taxable * band.rate))
        return contributions

    def _progressive(self, rule: ProgressiveBracketRule, base: AmountBase) -> AmountResult:
        periods = base.periods_per_year if rule.annualize else 1
        reference = base.gross_base * periods

        contributions = self.progressive_contributions(reference, rule)
        tax = sum((c for _, c in contributions), ZERO)
        if rule.threshold is not None and reference <= rule.threshold:
            tax = ZERO
        after_rebate = max(tax - rule.rebate, ZERO)
        period_tax = after_rebate / periods

        details = {
            "reference_amount": str(reference),
            "periods_per_year": periods,
            "bands": [
                {
                    "min": str(rule.bands[i].min_amount),
                    "max": str(rule.bands[i].max_amount)
                    if rule.bands[i].max_amount is not None
                    else None,
                    "rate": str(rule.bands[i].rate),
                    "tax": str(c),
                }
                for i, c in contributions
            ],
            "tax_before_rebate": str(tax),
            "rebate": str(rule.rebate),
            "threshold": str(rule.threshold) if rule.threshold is not None else None,
        }
        return AmountResult(
            amount=round_to_cents(period_tax),
            employer_amount=round_to_cents(base.gross_base * rule.employer_rate),
            base=base.gross_base,
            details=details,
        )

    def _salary_bracket(self, rule: SalaryBracketRule, base: AmountBase) -> AmountResult:
        amount = ZERO
        details: dict[str, Any] = {"band": None}
        for band in rule.bands:
            if band.contains(base.gross_base):
                amount = band.amount
                details["band"] = {
                    "min": str(band.min_amount),
                    "max": str(band.max_amount) if band.max_amount is not None else None,
                }
                break
        return AmountResult(
            amount=round_to_cents(amount),
            employer_amount=round_to_cents(base.gross_base * rule.employer_rate),
            base=base.gross_base,
            details=details,
        )

    def _flat_amount(self, rule: FlatAmountRule, base: AmountBase) -> AmountResult:
        if rule.minimum_salary is not None and base.gross_base < rule.minimum_salary:
            return AmountResult(
                amount=ZERO,
                base=base.gross_base,
                details={"below_minimum_salary": str(rule.minimum_salary)},
            )
        return AmountResult(amount=round_to_cents(rule.amount), base=base.gross_base)

    def _capped_percentage(self, rule: PercentageRule, base: AmountBase) -> AmountResult:
        capped = base.gross_base
        if rule.maximum_salary is not None and capped > rule.maximum_salary:
            capped = rule.maximum_salary
        return AmountResult(
            amount=round_to_cents(capped * rule.employee_rate),
            employer_amount=round_to_cents(capped * rule.employer_rate),
            rate=rule.employee_rate,
            base=capped,
            details={"capped": capped != base.gross_base},
        )

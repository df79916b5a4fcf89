"""Payroll line construction, totals and invariant checks."""

from __future__ import annotations

import hashlib
import json
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from hr_payroll.calculators.types import (
    ZERO,
    AmountResult,
    ItemSource,
    ItemType,
    PayrollItemCategory,
    PayrollLine,
)

if TYPE_CHECKING:
    from hr_payroll.calculators.types import PayrollCalculation


class PayrollInvariantError(Exception):
    """Raised when a calculation's totals do not reconcile with its lines."""

    def __init__(self, employee_id: UUID | None, problems: list[str]):
        self.employee_id = employee_id
        self.problems = problems
        super().__init__(
            f"Payroll calculation for employee {employee_id} is inconsistent: "
            + "; ".join(problems)
        )


ITEM_TYPE_CATEGORIES = {
    ItemType.EARNING: PayrollItemCategory.INCOME,
    ItemType.ALLOWANCE: PayrollItemCategory.ALLOWANCE,
    ItemType.BENEFIT: PayrollItemCategory.BENEFIT,
    ItemType.DEDUCTION: PayrollItemCategory.DEDUCTION,
    ItemType.EMPLOYER_COST: PayrollItemCategory.EMPLOYER_CONTRIBUTION,
    ItemType.GARNISHMENT: PayrollItemCategory.DEDUCTION,
}

# Statutory deduction types persisted under the "tax" category.
TAX_DEDUCTION_TYPES = frozenset({"income_tax"})

# Categories that make up gross pay (base salary is an income line).
GROSS_CATEGORIES = frozenset({PayrollItemCategory.INCOME, PayrollItemCategory.ALLOWANCE})
DEDUCTION_CATEGORIES = frozenset({PayrollItemCategory.DEDUCTION, PayrollItemCategory.TAX})


class LineItemBuilder:
    """Builds payroll lines with deterministic hashing.

    Amount conventions:
    - every stored amount is non-negative; the category decides its effect
    - INCOME and ALLOWANCE add to gross
    - DEDUCTION and TAX (employee share) reduce net
    - BENEFIT and EMPLOYER_CONTRIBUTION are cost to company only

    Rounding: half-up to 2 decimals at computation.
    """

    OUTPUT_PRECISION = Decimal("0.01")

    @staticmethod
    def round_to_cents(amount: Decimal) -> Decimal:
        """Round amount to 2 decimal places (cents)."""
        return Decimal(amount).quantize(LineItemBuilder.OUTPUT_PRECISION, rounding=ROUND_HALF_UP)

    @staticmethod
    def compute_line_hash(line: PayrollLine) -> str:
        """Compute deterministic hash for a line item."""
        canonical = line.to_canonical_dict()
        json_str = json.dumps(canonical, sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]

    @staticmethod
    def create_salary_line(amount: Decimal, details: dict[str, Any] | None = None) -> PayrollLine:
        """Create the base salary income line."""
        return PayrollLine(
            code="BASIC",
            name="Basic salary",
            category=PayrollItemCategory.INCOME,
            source=ItemSource.SALARY,
            employee_amount=LineItemBuilder.round_to_cents(amount),
            is_taxable=True,
            details=details or {},
        )

    @staticmethod
    def create_item_line(
        code: str,
        name: str,
        item_type: ItemType,
        source: ItemSource,
        result: AmountResult,
        is_taxable: bool = False,
        company_payroll_template_id: UUID | None = None,
        employee_payroll_item_id: UUID | None = None,
    ) -> PayrollLine:
        """Create a line for a company template or employee item."""
        category = ITEM_TYPE_CATEGORIES[item_type]
        amount = LineItemBuilder.round_to_cents(result.amount)
        employee_amount, employer_amount = amount, ZERO
        if category == PayrollItemCategory.EMPLOYER_CONTRIBUTION:
            employee_amount, employer_amount = ZERO, amount
        return PayrollLine(
            code=code,
            name=name,
            category=category,
            source=source,
            employee_amount=employee_amount,
            employer_amount=employer_amount,
            calculation_base=result.base,
            rate_applied=result.rate,
            is_taxable=is_taxable,
            details=dict(result.details),
            company_payroll_template_id=company_payroll_template_id,
            employee_payroll_item_id=employee_payroll_item_id,
        )

    @staticmethod
    def create_statutory_deduction_line(
        code: str,
        name: str,
        deduction_type: str,
        employee_amount: Decimal,
        result: AmountResult,
        statutory_deduction_template_id: UUID | None = None,
        employee_payroll_item_id: UUID | None = None,
    ) -> PayrollLine:
        """Create the employee share of a statutory deduction."""
        category = (
            PayrollItemCategory.TAX
            if deduction_type in TAX_DEDUCTION_TYPES
            else PayrollItemCategory.DEDUCTION
        )
        return PayrollLine(
            code=code,
            name=name,
            category=category,
            source=ItemSource.STATUTORY,
            employee_amount=LineItemBuilder.round_to_cents(employee_amount),
            calculation_base=result.base,
            rate_applied=result.rate,
            is_statutory=True,
            details={"deduction_type": deduction_type, **result.details},
            statutory_deduction_template_id=statutory_deduction_template_id,
            employee_payroll_item_id=employee_payroll_item_id,
        )

    @staticmethod
    def create_statutory_employer_line(
        code: str,
        name: str,
        deduction_type: str,
        employer_amount: Decimal,
        result: AmountResult,
        statutory_deduction_template_id: UUID | None = None,
        covers_employee_portion: Decimal = ZERO,
        is_taxable: bool = False,
    ) -> PayrollLine:
        """Create the employer share of a statutory deduction."""
        details: dict[str, Any] = {"deduction_type": deduction_type}
        if covers_employee_portion:
            details["covers_employee_portion"] = str(covers_employee_portion)
        return PayrollLine(
            code=f"{code}_EMPLOYER",
            name=f"{name} (employer)",
            category=PayrollItemCategory.EMPLOYER_CONTRIBUTION,
            source=ItemSource.STATUTORY,
            employer_amount=LineItemBuilder.round_to_cents(employer_amount),
            employee_amount=ZERO,
            calculation_base=result.base,
            rate_applied=result.rate,
            is_statutory=True,
            is_taxable=is_taxable,
            details=details,
            statutory_deduction_template_id=statutory_deduction_template_id,
        )

    @staticmethod
    def sum_by_category(
        lines: list[PayrollLine], *categories: PayrollItemCategory
    ) -> Decimal:
        """Sum employee amounts for the given categories."""
        total = ZERO
        for line in lines:
            if line.category in categories:
                total += line.employee_amount
        return LineItemBuilder.round_to_cents(total)

    @staticmethod
    def sum_employer(lines: list[PayrollLine]) -> Decimal:
        """Sum employer amounts across all lines."""
        return LineItemBuilder.round_to_cents(sum((line.employer_amount for line in lines), ZERO))

    @staticmethod
    def calculate_gross_from_lines(lines: list[PayrollLine]) -> Decimal:
        """GROSS = base salary + earnings + allowances."""
        return LineItemBuilder.sum_by_category(lines, *GROSS_CATEGORIES)

    @staticmethod
    def calculate_deductions_from_lines(lines: list[PayrollLine]) -> Decimal:
        """Employee-borne deductions, statutory and otherwise."""
        return LineItemBuilder.sum_by_category(lines, *DEDUCTION_CATEGORIES)

    @staticmethod
    def calculate_net_from_lines(lines: list[PayrollLine]) -> Decimal:
        """NET = GROSS - deductions. Benefits and employer lines are excluded."""
        return LineItemBuilder.round_to_cents(
            LineItemBuilder.calculate_gross_from_lines(lines)
            - LineItemBuilder.calculate_deductions_from_lines(lines)
        )

    @staticmethod
    def validate_line_amounts(lines: list[PayrollLine]) -> list[str]:
        """Validate every line amount is non-negative and rounded to cents."""
        errors = []
        for line in lines:
            for label, amount in (
                ("employee_amount", line.employee_amount),
                ("employer_amount", line.employer_amount),
            ):
                if amount < 0:
                    errors.append(f"{line.code}: {label} must not be negative, got {amount}")
                elif amount != LineItemBuilder.round_to_cents(amount):
                    errors.append(f"{line.code}: {label} is not rounded to cents ({amount})")
        return errors

    @staticmethod
    def check_invariants(calculation: PayrollCalculation) -> list[str]:
        """Reconcile a calculation's totals against its lines."""
        lines = calculation.lines
        problems = LineItemBuilder.validate_line_amounts(lines)

        gross = LineItemBuilder.calculate_gross_from_lines(lines)
        deductions = LineItemBuilder.calculate_deductions_from_lines(lines)
        if gross != calculation.gross_salary:
            problems.append(f"gross {calculation.gross_salary} != sum of lines {gross}")
        if deductions != calculation.total_deductions:
            problems.append(
                f"deductions {calculation.total_deductions} != sum of lines {deductions}"
            )
        if calculation.net_salary != calculation.gross_salary - calculation.total_deductions:
            problems.append("net_salary != gross_salary - total_deductions")
        components = (
            calculation.base_salary + calculation.total_earnings + calculation.total_allowances
        )
        if calculation.net_salary != components - calculation.total_deductions:
            problems.append("net_salary != base + earnings + allowances - total_deductions")
        garnished = LineItemBuilder.round_to_cents(
            sum(
                (line.employee_amount for line in lines if line.source == ItemSource.GARNISHMENT),
                ZERO,
            )
        )
        if garnished != calculation.total_garnishments:
            problems.append(
                f"garnishments {calculation.total_garnishments} != sum of lines {garnished}"
            )
        return problems

"""Type definitions for the calculation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from hr_payroll.models import Employee


ZERO = Decimal("0")


class CalculationMethod(str, Enum):
    """How an item amount is computed."""

    FIXED_AMOUNT = "fixed_amount"
    PERCENTAGE_OF_SALARY = "percentage_of_salary"
    PERCENTAGE_OF_BASIC = "percentage_of_basic"
    FORMULA = "formula"
    MANUAL = "manual"
    PROGRESSIVE_BRACKET = "progressive_bracket"
    SALARY_BRACKET = "salary_bracket"
    FLAT_AMOUNT = "flat_amount"
    PERCENTAGE = "percentage"


class PayFrequency(str, Enum):
    """Employee pay frequency."""

    WEEKLY = "weekly"
    BI_WEEKLY = "bi_weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"

    @property
    def periods_per_year(self) -> int:
        return _PERIODS_PER_YEAR[self]


_PERIODS_PER_YEAR = {
    PayFrequency.WEEKLY: 52,
    PayFrequency.BI_WEEKLY: 26,
    PayFrequency.MONTHLY: 12,
    PayFrequency.QUARTERLY: 4,
    PayFrequency.ANNUALLY: 1,
}


class ItemType(str, Enum):
    """Company template / employee item types."""

    EARNING = "earning"
    ALLOWANCE = "allowance"
    BENEFIT = "benefit"
    DEDUCTION = "deduction"
    EMPLOYER_COST = "employer_cost"
    GARNISHMENT = "garnishment"


class GarnishmentType(str, Enum):
    """Kind of court or agency order behind a garnishment."""

    CHILD_SUPPORT = "child_support"
    TAX_LEVY = "tax_levy"
    STUDENT_LOAN = "student_loan"
    BANKRUPTCY = "bankruptcy"
    WAGE_GARNISHMENT = "wage_garnishment"
    OTHER = "other"


class PayrollItemCategory(str, Enum):
    """Category of a persisted payroll line."""

    INCOME = "income"
    ALLOWANCE = "allowance"
    BENEFIT = "benefit"
    DEDUCTION = "deduction"
    EMPLOYER_CONTRIBUTION = "employer_contribution"
    TAX = "tax"


class ItemSource(str, Enum):
    """Where a computed line came from."""

    SALARY = "salary"
    COMPANY = "company"
    EMPLOYEE = "employee"
    STATUTORY = "statutory"
    GARNISHMENT = "garnishment"


class ItemStatus(str, Enum):
    """Employee payroll item status values."""

    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class EmployeeProfile:
    """Read-only view of the employee attributes calculation depends on.

    Detached from the ORM so calculation can run off the event loop.
    """

    employee_id: UUID
    company_id: UUID
    name: str
    salary: Decimal
    pay_frequency: str
    employment_type: str | None = None
    department_id: UUID | None = None
    position_id: UUID | None = None
    start_date: date | None = None
    termination_date: date | None = None

    @classmethod
    def from_employee(cls, employee: Employee) -> EmployeeProfile:
        return cls(
            employee_id=employee.employee_id,
            company_id=employee.company_id,
            name=employee.full_name,
            salary=Decimal(employee.salary),
            pay_frequency=employee.pay_frequency,
            employment_type=employee.employment_type,
            department_id=employee.department_id,
            position_id=employee.position_id,
            start_date=employee.employment_start,
            termination_date=employee.termination_date,
        )

    @property
    def frequency(self) -> PayFrequency:
        return PayFrequency(self.pay_frequency)

    def years_of_service(self, as_of_date: date) -> int:
        """Whole years employed as of a date (0 when the start is unknown)."""
        if self.start_date is None or self.start_date > as_of_date:
            return 0
        years = as_of_date.year - self.start_date.year
        if (as_of_date.month, as_of_date.day) < (self.start_date.month, self.start_date.day):
            years -= 1
        return years


@dataclass(frozen=True)
class AmountBase:
    """Reference amounts an item is computed against."""

    gross_base: Decimal
    basic_salary: Decimal
    annual_salary: Decimal = ZERO
    years_of_service: int = 0
    periods_per_year: int = 1

    def variables(self) -> dict[str, Decimal]:
        """Values exposed to formula expressions."""
        return {
            "basic_salary": self.basic_salary,
            "gross_salary": self.gross_base,
            "annual_salary": self.annual_salary,
            "years_of_service": Decimal(self.years_of_service),
        }


@dataclass
class AmountResult:
    """Outcome of computing one item amount."""

    amount: Decimal
    employer_amount: Decimal = ZERO
    rate: Decimal | None = None
    base: Decimal | None = None
    details: dict[str, Any] = field(default_factory=dict)
    flagged: bool = False
    flag_reason: str | None = None


@dataclass
class PayrollLine:
    """A computed payroll line before persistence."""

    code: str
    name: str
    category: PayrollItemCategory
    source: ItemSource
    employee_amount: Decimal
    employer_amount: Decimal = ZERO
    calculation_base: Decimal | None = None
    rate_applied: Decimal | None = None
    is_statutory: bool = False
    is_taxable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    # Traceability
    company_payroll_template_id: UUID | None = None
    statutory_deduction_template_id: UUID | None = None
    employee_payroll_item_id: UUID | None = None

    def to_canonical_dict(self) -> dict[str, Any]:
        """Return canonical dict for hashing (deterministic ordering)."""
        return {
            "code": self.code,
            "category": self.category.value,
            "source": self.source.value,
            "employee_amount": str(self.employee_amount),
            "employer_amount": str(self.employer_amount),
            "calculation_base": str(self.calculation_base)
            if self.calculation_base is not None
            else None,
            "rate_applied": str(self.rate_applied) if self.rate_applied is not None else None,
            "company_payroll_template_id": str(self.company_payroll_template_id)
            if self.company_payroll_template_id
            else None,
            "statutory_deduction_template_id": str(self.statutory_deduction_template_id)
            if self.statutory_deduction_template_id
            else None,
            "employee_payroll_item_id": str(self.employee_payroll_item_id)
            if self.employee_payroll_item_id
            else None,
        }


@dataclass
class StatutoryResult:
    """Statutory deductions computed for one employee and period."""

    employee_total: Decimal = ZERO
    employer_total: Decimal = ZERO
    items: list[PayrollLine] = field(default_factory=list)
    taxable_benefits: Decimal = ZERO
    errors: list[str] = field(default_factory=list)
    jurisdiction_resolved: bool = False
    tax_jurisdiction_id: UUID | None = None


@dataclass
class PayrollCalculation:
    """Result of calculating pay for one employee and period."""

    employee_id: UUID
    employee_name: str
    company_id: UUID
    period_start: date
    period_end: date
    calculation_id: UUID
    base_salary: Decimal = ZERO
    total_earnings: Decimal = ZERO
    total_allowances: Decimal = ZERO
    total_benefits: Decimal = ZERO
    gross_salary: Decimal = ZERO
    total_statutory_deductions: Decimal = ZERO
    total_other_deductions: Decimal = ZERO
    total_garnishments: Decimal = ZERO
    # Gross less every deduction taken before garnishments.
    disposable_income: Decimal = ZERO
    total_deductions: Decimal = ZERO
    total_employer_contributions: Decimal = ZERO
    total_cost_to_company: Decimal = ZERO
    net_salary: Decimal = ZERO
    lines: list[PayrollLine] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)
    prorated: bool = False
    working_days: int = 0
    period_days: int = 0
    jurisdiction_resolved: bool = False
    inputs_fingerprint: str = ""
    rules_fingerprint: str = ""

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def _select(
        self, category: PayrollItemCategory, source: ItemSource | None = None
    ) -> list[PayrollLine]:
        return [
            line
            for line in self.lines
            if line.category == category and (source is None or line.source == source)
        ]

    @property
    def earnings(self) -> list[PayrollLine]:
        return [
            line
            for line in self._select(PayrollItemCategory.INCOME)
            if line.source != ItemSource.SALARY
        ]

    @property
    def allowances(self) -> dict[str, list[PayrollLine]]:
        return {
            "company": self._select(PayrollItemCategory.ALLOWANCE, ItemSource.COMPANY),
            "employee": self._select(PayrollItemCategory.ALLOWANCE, ItemSource.EMPLOYEE),
        }

    @property
    def benefits(self) -> list[PayrollLine]:
        return self._select(PayrollItemCategory.BENEFIT)

    @property
    def deductions(self) -> dict[str, list[PayrollLine]]:
        other = self._select(PayrollItemCategory.DEDUCTION)
        return {
            "company": [line for line in other if line.source == ItemSource.COMPANY],
            "employee": [line for line in other if line.source == ItemSource.EMPLOYEE],
            "garnishments": [line for line in other if line.source == ItemSource.GARNISHMENT],
            "statutory": [
                line
                for line in self.lines
                if line.source == ItemSource.STATUTORY
                and line.category != PayrollItemCategory.EMPLOYER_CONTRIBUTION
            ],
        }

    @property
    def employer_contributions(self) -> list[PayrollLine]:
        return self._select(PayrollItemCategory.EMPLOYER_CONTRIBUTION)

    def to_summary_dict(self) -> dict[str, Any]:
        """JSON-friendly totals for reporting."""
        return {
            "employee_id": str(self.employee_id),
            "employee_name": self.employee_name,
            "calculation_id": str(self.calculation_id),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "base_salary": str(self.base_salary),
            "total_earnings": str(self.total_earnings),
            "total_allowances": str(self.total_allowances),
            "total_benefits": str(self.total_benefits),
            "gross_salary": str(self.gross_salary),
            "total_deductions": str(self.total_deductions),
            "total_garnishments": str(self.total_garnishments),
            "total_employer_contributions": str(self.total_employer_contributions),
            "total_cost_to_company": str(self.total_cost_to_company),
            "net_salary": str(self.net_salary),
            "prorated": self.prorated,
            "errors": list(self.errors),
            "flags": list(self.flags),
        }


@dataclass
class BatchSummary:
    """Aggregate totals for a batch run."""

    total_employees: int = 0
    successful_calculations: int = 0
    failed_calculations: int = 0
    total_gross_salary: Decimal = ZERO
    total_net_salary: Decimal = ZERO
    total_statutory_deductions: Decimal = ZERO
    total_employer_contributions: Decimal = ZERO

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_employees": self.total_employees,
            "successful_calculations": self.successful_calculations,
            "failed_calculations": self.failed_calculations,
            "total_gross_salary": str(self.total_gross_salary),
            "total_net_salary": str(self.total_net_salary),
            "total_statutory_deductions": str(self.total_statutory_deductions),
            "total_employer_contributions": str(self.total_employer_contributions),
        }


@dataclass
class BatchPayrollResult:
    """Result of calculating a batch of employees."""

    summary: BatchSummary
    calculations: list[PayrollCalculation] = field(default_factory=list)
    # [{"employee_id": ..., "employee_name": ..., "errors": [...]}]
    errors: list[dict[str, Any]] = field(default_factory=list)

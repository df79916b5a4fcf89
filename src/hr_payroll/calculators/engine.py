"""Payroll calculation engine - main orchestrator."""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from hr_payroll.calculators.amount import AmountCalculator
from hr_payroll.calculators.eligibility import EligibilityEvaluator
from hr_payroll.calculators.garnishment import GarnishmentCalculator
from hr_payroll.calculators.line_builder import LineItemBuilder
from hr_payroll.calculators.proration import ProrationEngine, ProrationWindow
from hr_payroll.calculators.rules import PRORATED_METHODS, RuleConfigurationError
from hr_payroll.calculators.statutory import StatutoryContext, StatutoryDeductionCalculator
from hr_payroll.calculators.types import (
    ZERO,
    AmountBase,
    AmountResult,
    BatchPayrollResult,
    BatchSummary,
    CalculationMethod,
    EmployeeProfile,
    ItemSource,
    ItemType,
    PayrollCalculation,
    PayrollItemCategory,
    PayrollLine,
)
from hr_payroll.config import Settings, get_settings
from hr_payroll.models import (
    CompanyPayrollTemplate,
    Employee,
    EmployeePayrollItem,
)

logger = logging.getLogger(__name__)

# Computed against the (prorated) base salary, before gross is known.
BASE_ITEM_TYPES = (ItemType.EARNING, ItemType.ALLOWANCE, ItemType.BENEFIT)
# Computed against gross salary.
GROSS_ITEM_TYPES = (ItemType.DEDUCTION, ItemType.EMPLOYER_COST)

_ITEM_TYPE_ORDER = {t.value: i for i, t in enumerate(BASE_ITEM_TYPES + GROSS_ITEM_TYPES)}


@dataclass
class PayrollInputs:
    """Everything a calculation reads, loaded up front."""

    employee: EmployeeProfile
    period_start: date
    period_end: date
    company_templates: list[CompanyPayrollTemplate] = field(default_factory=list)
    employee_items: list[EmployeePayrollItem] = field(default_factory=list)
    statutory: StatutoryContext | None = None

    @property
    def as_of_date(self) -> date:
        return self.period_start


@dataclass
class _SelectedItem:
    """A company template or employee item resolved to what must be computed."""

    code: str
    name: str
    item_type: ItemType
    source: ItemSource
    method: str
    params: dict[str, Any]
    is_taxable: bool
    manual_amount: Decimal | None = None
    company_payroll_template_id: UUID | None = None
    employee_payroll_item_id: UUID | None = None


class PayrollEngine:
    """Main payroll calculation engine.

    Calculation pipeline (stable order per employee):
    1) Period base salary from annual salary and pay frequency, prorated
    2) Select eligible company templates and effective employee items
    3) Earnings, allowances and benefits against the base salary
    4) Gross = base + earnings + allowances
    5) Statutory deductions against gross
    6) Company/employee deductions and employer costs against gross
    7) Garnishments in priority order against disposable income
       (gross less the deductions above)
    8) Net = gross - deductions; validate totals against lines

    Loading (I/O) and calculating (pure) are separate steps, so the same
    inputs always give the same calculation and calculation id.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.amount_calculator = AmountCalculator()
        self.eligibility = EligibilityEvaluator()
        self.proration = ProrationEngine()
        self.statutory = StatutoryDeductionCalculator(session, self.amount_calculator)
        self.garnishments = GarnishmentCalculator(self.amount_calculator)

    # === Public operations ===

    async def calculate_employee_payroll(
        self, employee: Employee, period_start: date, period_end: date
    ) -> PayrollCalculation:
        """Calculate pay for one employee and period."""
        inputs = await self.load_inputs(employee, period_start, period_end)
        return self.calculate(inputs)

    async def calculate_batch_payroll(
        self, employees: Iterable[Employee], period_start: date, period_end: date
    ) -> BatchPayrollResult:
        """Calculate many employees; one employee's failure never stops the rest.

        Inputs load sequentially on the session, calculations run in a
        bounded thread pool, and the summary aggregates in input order.
        """
        _validate_period(period_start, period_end)
        result = BatchPayrollResult(summary=BatchSummary())
        contexts: dict[UUID, StatutoryContext] = {}
        pending: list[tuple[UUID, str, PayrollInputs | BaseException]] = []

        for employee in employees:
            employee_id, name = employee.employee_id, employee.full_name
            try:
                if employee.company_id not in contexts:
                    contexts[employee.company_id] = await self._with_timeout(
                        self.statutory.resolve(employee.company_id, period_start)
                    )
                inputs = await self.load_inputs(
                    employee,
                    period_start,
                    period_end,
                    statutory_context=contexts[employee.company_id],
                )
                pending.append((employee_id, name, inputs))
            except Exception as e:
                pending.append((employee_id, name, e))

        semaphore = asyncio.Semaphore(self.settings.batch_max_workers)

        async def run(inputs: PayrollInputs | BaseException) -> PayrollCalculation:
            if isinstance(inputs, BaseException):
                raise inputs
            async with semaphore:
                return await asyncio.to_thread(self.calculate, inputs)

        outcomes = await asyncio.gather(
            *(run(inputs) for _, _, inputs in pending), return_exceptions=True
        )

        summary = result.summary
        for (employee_id, name, _), outcome in zip(pending, outcomes):
            summary.total_employees += 1
            if isinstance(outcome, BaseException):
                logger.error("Payroll calculation failed for employee %s: %s", employee_id, outcome)
                summary.failed_calculations += 1
                result.errors.append(
                    {
                        "employee_id": str(employee_id),
                        "employee_name": name,
                        "errors": [str(outcome) or type(outcome).__name__],
                        "fatal": True,
                    }
                )
                continue

            summary.successful_calculations += 1
            summary.total_gross_salary += outcome.gross_salary
            summary.total_net_salary += outcome.net_salary
            summary.total_statutory_deductions += outcome.total_statutory_deductions
            summary.total_employer_contributions += outcome.total_employer_contributions
            result.calculations.append(outcome)
            if outcome.errors:
                result.errors.append(
                    {
                        "employee_id": str(employee_id),
                        "employee_name": name,
                        "errors": list(outcome.errors),
                        "fatal": False,
                    }
                )

        logger.info(
            "Batch payroll %s..%s: %d employees, %d failed",
            period_start,
            period_end,
            summary.total_employees,
            summary.failed_calculations,
        )
        return result

    # === Loading ===

    async def load_inputs(
        self,
        employee: Employee,
        period_start: date,
        period_end: date,
        statutory_context: StatutoryContext | None = None,
    ) -> PayrollInputs:
        """Load templates, employee items and statutory configuration."""
        _validate_period(period_start, period_end)
        if employee.company_id is None:
            raise ValueError(f"Employee {employee.employee_id} has no company")
        return await self._with_timeout(
            self._load_inputs(employee, period_start, period_end, statutory_context)
        )

    async def _load_inputs(
        self,
        employee: Employee,
        period_start: date,
        period_end: date,
        statutory_context: StatutoryContext | None,
    ) -> PayrollInputs:
        profile = EmployeeProfile.from_employee(employee)
        templates = await self._get_company_templates(profile.company_id)
        items = await self._get_employee_items(profile.employee_id, period_start, period_end)
        if statutory_context is None:
            statutory_context = await self.statutory.resolve(profile.company_id, period_start)
        return PayrollInputs(
            employee=profile,
            period_start=period_start,
            period_end=period_end,
            company_templates=templates,
            employee_items=items,
            statutory=statutory_context,
        )

    async def _with_timeout(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.settings.io_timeout_seconds)

    async def _get_company_templates(self, company_id: UUID) -> list[CompanyPayrollTemplate]:
        """Active company templates; eligibility is decided per employee."""
        result = await self.session.execute(
            select(CompanyPayrollTemplate)
            .where(
                CompanyPayrollTemplate.company_id == company_id,
                CompanyPayrollTemplate.is_active.is_(True),
            )
            .order_by(CompanyPayrollTemplate.code)
        )
        return list(result.scalars().all())

    async def _get_employee_items(
        self, employee_id: UUID, period_start: date, period_end: date
    ) -> list[EmployeePayrollItem]:
        """Active employee items whose window overlaps the period."""
        result = await self.session.execute(
            select(EmployeePayrollItem)
            .where(
                EmployeePayrollItem.employee_id == employee_id,
                EmployeePayrollItem.status == "active",
                EmployeePayrollItem.effective_from <= period_end,
                (
                    EmployeePayrollItem.effective_to.is_(None)
                    | (EmployeePayrollItem.effective_to >= period_start)
                ),
            )
            .options(
                selectinload(EmployeePayrollItem.company_template),
                selectinload(EmployeePayrollItem.statutory_template),
            )
            .order_by(EmployeePayrollItem.code)
        )
        return list(result.scalars().all())

    # === Calculation ===

    def calculate(self, inputs: PayrollInputs) -> PayrollCalculation:
        """Compute a payroll calculation from loaded inputs. No I/O."""
        employee = inputs.employee
        frequency = employee.frequency
        errors: list[str] = []
        flags: list[str] = []

        window = self.proration.window(employee, inputs.period_start, inputs.period_end)
        period_base = LineItemBuilder.round_to_cents(
            employee.salary / Decimal(frequency.periods_per_year)
        )
        base_salary = self.proration.prorate(
            period_base, employee, inputs.period_start, inputs.period_end
        )
        salary_details: dict[str, Any] = {
            "annual_salary": str(employee.salary),
            "pay_frequency": frequency.value,
            "period_amount": str(period_base),
        }
        if window.applies:
            salary_details["proration"] = _proration_details(window, period_base)
        lines: list[PayrollLine] = [
            LineItemBuilder.create_salary_line(base_salary, salary_details)
        ]

        selected = self._select_items(inputs, errors)
        base_selected = [s for s in selected if s.item_type in BASE_ITEM_TYPES]
        gross_selected = [s for s in selected if s.item_type in GROSS_ITEM_TYPES]

        years = employee.years_of_service(inputs.as_of_date)
        base_amounts = AmountBase(
            gross_base=base_salary,
            basic_salary=period_base,
            annual_salary=employee.salary,
            years_of_service=years,
            periods_per_year=frequency.periods_per_year,
        )
        for item in base_selected:
            line = self._calculate_item(item, base_amounts, window, inputs, errors, flags)
            if line is not None:
                lines.append(line)

        gross = LineItemBuilder.calculate_gross_from_lines(lines)

        statutory_items = self._statutory_items(inputs)
        statutory = self.statutory.calculate(
            self._statutory_context(inputs, statutory_items),
            employee,
            gross,
            parameter_overrides={
                item.statutory_deduction_template_id: dict(item.parameters or {})
                for item in statutory_items
            },
            employee_item_ids={
                item.statutory_deduction_template_id: item.employee_payroll_item_id
                for item in statutory_items
            },
        )
        lines.extend(statutory.items)
        errors.extend(statutory.errors)

        gross_amounts = dataclasses.replace(base_amounts, gross_base=gross)
        for item in gross_selected:
            line = self._calculate_item(item, gross_amounts, window, inputs, errors, flags)
            if line is not None:
                lines.append(line)

        garnishment_items = self._garnishment_items(inputs)
        disposable = gross - LineItemBuilder.calculate_deductions_from_lines(lines)
        garnished = self.garnishments.calculate(garnishment_items, disposable, gross_amounts)
        lines.extend(garnished.lines)
        errors.extend(garnished.errors)
        flags.extend(garnished.flags)

        calculation = self._build_calculation(inputs, lines, statutory.employee_total, errors, flags)
        calculation.disposable_income = garnished.disposable_income
        calculation.total_garnishments = garnished.total
        calculation.prorated = window.applies
        calculation.working_days = window.working_days
        calculation.period_days = window.period_days
        calculation.jurisdiction_resolved = statutory.jurisdiction_resolved

        if calculation.net_salary < 0:
            calculation.errors.append(
                f"Net salary is negative ({calculation.net_salary}); deductions exceed gross pay"
            )
        calculation.errors.extend(LineItemBuilder.check_invariants(calculation))
        return calculation

    def _statutory_items(self, inputs: PayrollInputs) -> list[EmployeePayrollItem]:
        return [
            item
            for item in inputs.employee_items
            if item.statutory_deduction_template_id is not None
            and self.eligibility.is_item_effective(item, inputs.period_start, inputs.period_end)
        ]

    def _garnishment_items(self, inputs: PayrollInputs) -> list[EmployeePayrollItem]:
        return [
            item
            for item in inputs.employee_items
            if item.item_type == ItemType.GARNISHMENT.value
            and item.statutory_deduction_template_id is None
            and self.eligibility.is_item_effective(item, inputs.period_start, inputs.period_end)
        ]

    def _statutory_context(
        self, inputs: PayrollInputs, statutory_items: list[EmployeePayrollItem]
    ) -> StatutoryContext:
        """The resolved context plus statutory templates only an employee item brings in."""
        context = inputs.statutory or StatutoryContext(
            inputs.employee.company_id, inputs.as_of_date
        )
        if not context.resolved:
            return context
        known = {t.statutory_deduction_template_id for t in context.templates}
        extra = []
        for item in statutory_items:
            template = item.statutory_template
            if (
                template is not None
                and template.statutory_deduction_template_id not in known
                and template.tax_jurisdiction_id == context.jurisdiction.tax_jurisdiction_id
                and template.is_effective_on(inputs.as_of_date)
            ):
                extra.append(template)
                known.add(template.statutory_deduction_template_id)
        if not extra:
            return context
        return dataclasses.replace(context, templates=context.templates + extra)

    def _select_items(self, inputs: PayrollInputs, errors: list[str]) -> list[_SelectedItem]:
        """Resolve eligible templates and effective items into computable items.

        An employee item sourced from a company template replaces that
        template. Templates that require approval apply only through an
        (approved, hence active) employee item.
        """
        items = [
            item
            for item in inputs.employee_items
            if item.statutory_deduction_template_id is None
            and item.item_type != ItemType.GARNISHMENT.value
            and self.eligibility.is_item_effective(item, inputs.period_start, inputs.period_end)
        ]
        overridden = {
            item.company_payroll_template_id
            for item in items
            if item.company_payroll_template_id is not None
        }

        selected: list[_SelectedItem] = []
        for template in inputs.company_templates:
            if template.company_payroll_template_id in overridden or template.requires_approval:
                continue
            try:
                if not self.eligibility.is_applicable(
                    template, inputs.employee, inputs.as_of_date
                ):
                    continue
                selected.append(
                    _SelectedItem(
                        code=template.code,
                        name=template.name,
                        item_type=ItemType(template.item_type),
                        source=ItemSource.COMPANY,
                        method=template.calculation_method,
                        params=dict(template.parameters or {}),
                        is_taxable=template.is_taxable,
                        company_payroll_template_id=template.company_payroll_template_id,
                    )
                )
            except (RuleConfigurationError, ValueError) as e:
                errors.append(f"{template.code}: {e}")

        for item in items:
            template = item.company_template
            params = dict(template.parameters or {}) if template is not None else {}
            params.update(item.parameters or {})
            try:
                selected.append(
                    _SelectedItem(
                        code=item.code,
                        name=item.name,
                        item_type=ItemType(template.item_type if template else item.item_type),
                        source=ItemSource.EMPLOYEE,
                        method=item.calculation_method,
                        params=params,
                        is_taxable=item.is_taxable,
                        manual_amount=item.amount,
                        company_payroll_template_id=item.company_payroll_template_id,
                        employee_payroll_item_id=item.employee_payroll_item_id,
                    )
                )
            except ValueError as e:
                errors.append(f"{item.code}: {e}")

        selected.sort(key=lambda s: (_ITEM_TYPE_ORDER[s.item_type.value], s.source.value, s.code))
        return selected

    def _calculate_item(
        self,
        item: _SelectedItem,
        base: AmountBase,
        window: ProrationWindow,
        inputs: PayrollInputs,
        errors: list[str],
        flags: list[str],
    ) -> PayrollLine | None:
        if item.method == CalculationMethod.MANUAL.value and item.source == ItemSource.EMPLOYEE:
            result = AmountResult(
                amount=LineItemBuilder.round_to_cents(item.manual_amount or ZERO),
                details={"manual": True},
            )
        else:
            try:
                result = self.amount_calculator.calculate(
                    item.method, item.params, base, source=item.code
                )
            except (RuleConfigurationError, ArithmeticError) as e:
                logger.error("Item %s could not be calculated: %s", item.code, e)
                errors.append(f"{item.code}: {e}")
                return None

        if window.applies and item.method in {m.value for m in PRORATED_METHODS}:
            raw = result.amount
            result.amount = self.proration.prorate(
                raw, inputs.employee, inputs.period_start, inputs.period_end
            )
            result.details = {**result.details, "proration": _proration_details(window, raw)}

        if result.flagged:
            flags.append(f"{item.code}: {result.flag_reason}")

        return LineItemBuilder.create_item_line(
            code=item.code,
            name=item.name,
            item_type=item.item_type,
            source=item.source,
            result=result,
            is_taxable=item.is_taxable,
            company_payroll_template_id=item.company_payroll_template_id,
            employee_payroll_item_id=item.employee_payroll_item_id,
        )

    def _build_calculation(
        self,
        inputs: PayrollInputs,
        lines: list[PayrollLine],
        statutory_total: Decimal,
        errors: list[str],
        flags: list[str],
    ) -> PayrollCalculation:
        employee = inputs.employee
        base_salary = lines[0].employee_amount
        earnings = LineItemBuilder.sum_by_category(lines, PayrollItemCategory.INCOME) - base_salary
        allowances = LineItemBuilder.sum_by_category(lines, PayrollItemCategory.ALLOWANCE)
        benefits = LineItemBuilder.sum_by_category(lines, PayrollItemCategory.BENEFIT)
        gross = LineItemBuilder.calculate_gross_from_lines(lines)
        deductions = LineItemBuilder.calculate_deductions_from_lines(lines)
        employer = LineItemBuilder.sum_employer(lines)

        inputs_fingerprint = self._compute_inputs_fingerprint(inputs)
        rules_fingerprint = self._compute_rules_fingerprint(inputs)

        return PayrollCalculation(
            employee_id=employee.employee_id,
            employee_name=employee.name,
            company_id=employee.company_id,
            period_start=inputs.period_start,
            period_end=inputs.period_end,
            calculation_id=self._generate_calculation_id(
                employee.employee_id,
                inputs.period_start,
                inputs.period_end,
                inputs_fingerprint,
                rules_fingerprint,
            ),
            base_salary=base_salary,
            total_earnings=earnings,
            total_allowances=allowances,
            total_benefits=benefits,
            gross_salary=gross,
            total_statutory_deductions=statutory_total,
            total_other_deductions=deductions - statutory_total,
            total_deductions=deductions,
            total_employer_contributions=employer,
            total_cost_to_company=gross + employer + benefits,
            net_salary=gross - deductions,
            lines=lines,
            errors=errors,
            flags=flags,
            inputs_fingerprint=inputs_fingerprint,
            rules_fingerprint=rules_fingerprint,
        )

    # === Determinism ===

    def _generate_calculation_id(
        self,
        employee_id: UUID,
        period_start: date,
        period_end: date,
        inputs_fingerprint: str,
        rules_fingerprint: str,
    ) -> UUID:
        """Generate deterministic calculation ID."""
        data = {
            "employee_id": str(employee_id),
            "period_start": str(period_start),
            "period_end": str(period_end),
            "engine_version": self.settings.engine_version,
            "inputs_fingerprint": inputs_fingerprint,
            "rules_fingerprint": rules_fingerprint,
        }
        json_str = json.dumps(data, sort_keys=True)
        hash_bytes = hashlib.sha256(json_str.encode()).digest()
        return UUID(bytes=hash_bytes[:16])

    def _compute_inputs_fingerprint(self, inputs: PayrollInputs) -> str:
        """Fingerprint of the employee and item values used in the calculation."""
        employee = inputs.employee
        data = {
            "employee": {
                "salary": str(employee.salary),
                "pay_frequency": employee.pay_frequency,
                "employment_type": employee.employment_type,
                "department_id": str(employee.department_id),
                "position_id": str(employee.position_id),
                "start_date": str(employee.start_date),
                "termination_date": str(employee.termination_date),
            },
            "items": sorted(
                (
                    {
                        "id": str(item.employee_payroll_item_id),
                        "method": item.calculation_method,
                        "parameters": item.parameters,
                        "amount": str(item.amount),
                        "status": item.status,
                        "garnished_to_date": str(item.amount_garnished_to_date),
                    }
                    for item in inputs.employee_items
                ),
                key=lambda d: d["id"],
            ),
        }
        json_str = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]

    def _compute_rules_fingerprint(self, inputs: PayrollInputs) -> str:
        """Fingerprint of the company and statutory rules in force."""
        rules = [
            {
                "id": str(t.company_payroll_template_id),
                "method": t.calculation_method,
                "parameters": t.parameters,
                "eligibility": t.eligibility_rules,
            }
            for t in inputs.company_templates
        ]
        if inputs.statutory is not None:
            rules.extend(
                {
                    "id": str(t.statutory_deduction_template_id),
                    "method": t.calculation_method,
                    "parameters": t.base_parameters(),
                }
                for t in inputs.statutory.templates
            )
        json_str = json.dumps(sorted(rules, key=lambda r: r["id"]), sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]


def _proration_details(window: ProrationWindow, raw_amount: Decimal) -> dict[str, Any]:
    return {
        "working_days": window.working_days,
        "period_days": window.period_days,
        "unprorated_amount": str(raw_amount),
    }


def _validate_period(period_start: date, period_end: date) -> None:
    if period_end < period_start:
        raise ValueError(f"Period end {period_end} is before period start {period_start}")

"""Statutory deduction resolution and calculation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from hr_payroll.calculators.amount import AmountCalculator
from hr_payroll.calculators.line_builder import LineItemBuilder
from hr_payroll.calculators.rules import accepted_parameters
from hr_payroll.calculators.types import (
    ZERO,
    AmountBase,
    EmployeeProfile,
    PayFrequency,
    PayrollLine,
    StatutoryResult,
)
from hr_payroll.models import (
    Company,
    CompanyStatutoryDeductionConfiguration,
    Country,
    Employee,
    StatutoryDeductionTemplate,
    TaxJurisdiction,
)

logger = logging.getLogger(__name__)

COUNTRY_NOT_SUPPORTED = "Country not supported for payroll processing"
NO_JURISDICTION = "No active tax jurisdiction found for country"

INCOME_TAX = "income_tax"

# Stands in for the employee and company of a preview calculation.
PREVIEW_ID = UUID(int=0)

DEDUCTION_TYPE_ALIASES = {
    "PAYE": INCOME_TAX,
    "UIF": "unemployment_insurance",
    "SOCIAL_SECURITY": "social_security",
    "HEALTH_INSURANCE": "health_insurance",
    "SDL": "skills_development",
}


@dataclass
class StatutoryContext:
    """Jurisdiction, templates and company overrides in force for a company."""

    company_id: UUID | None
    as_of_date: date
    country: Country | None = None
    jurisdiction: TaxJurisdiction | None = None
    templates: list[StatutoryDeductionTemplate] = field(default_factory=list)
    configurations: dict[UUID, CompanyStatutoryDeductionConfiguration] = field(
        default_factory=dict
    )
    errors: list[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.jurisdiction is not None


@dataclass
class CountryConfigurationReport:
    """Comparison of a country's mandated deductions with configured templates."""

    country_code: str
    is_valid: bool
    mandatory_codes: list[str] = field(default_factory=list)
    configured_codes: list[str] = field(default_factory=list)
    missing_codes: list[str] = field(default_factory=list)
    tax_jurisdiction_id: UUID | None = None
    errors: list[str] = field(default_factory=list)


class StatutoryDeductionCalculator:
    """Computes government-mandated deductions for an employee.

    Resolution: company -> country -> jurisdiction effective on the as-of
    date -> its active, mandatory, effective templates. A failing template is
    reported by name in ``errors`` and does not stop the others.
    """

    def __init__(
        self,
        session: AsyncSession | None = None,
        amount_calculator: AmountCalculator | None = None,
    ):
        self.session = session
        self.amount_calculator = amount_calculator or AmountCalculator()

    # === Resolution (I/O) ===

    async def resolve(self, company_id: UUID, as_of_date: date) -> StatutoryContext:
        """Load the statutory configuration in force for a company."""
        company = await self._get_company(company_id)
        if company is None:
            raise ValueError(f"Company {company_id} not found")

        context = StatutoryContext(company_id=company_id, as_of_date=as_of_date)
        await self._resolve_country(context, company.country, company.region_code)
        if context.resolved:
            context.configurations = await self._get_configurations(company_id)
        return context

    async def _resolve_country(
        self, context: StatutoryContext, country: Country | None, region_code: str | None
    ) -> None:
        if country is None or not country.is_supported_for_payroll:
            context.errors.append(COUNTRY_NOT_SUPPORTED)
            return
        context.country = country

        jurisdiction = await self._get_jurisdiction(
            country.country_id, region_code, context.as_of_date
        )
        if jurisdiction is None:
            context.errors.append(NO_JURISDICTION)
            return
        context.jurisdiction = jurisdiction
        context.templates = await self._get_templates(
            jurisdiction.tax_jurisdiction_id, context.as_of_date
        )

    async def _get_country(self, iso_code: str) -> Country | None:
        result = await self.session.execute(
            select(Country).where(Country.iso_code == iso_code.upper())
        )
        return result.scalar_one_or_none()

    async def _get_company(self, company_id: UUID) -> Company | None:
        result = await self.session.execute(
            select(Company)
            .where(Company.company_id == company_id)
            .options(selectinload(Company.country))
        )
        return result.scalar_one_or_none()

    async def _get_jurisdiction(
        self, country_id: UUID, region_code: str | None, as_of_date: date
    ) -> TaxJurisdiction | None:
        """Latest-effective active jurisdiction; a matching region wins over national."""
        result = await self.session.execute(
            select(TaxJurisdiction)
            .where(
                TaxJurisdiction.country_id == country_id,
                TaxJurisdiction.is_active.is_(True),
                TaxJurisdiction.effective_from <= as_of_date,
                (
                    TaxJurisdiction.effective_to.is_(None)
                    | (TaxJurisdiction.effective_to >= as_of_date)
                ),
            )
            .order_by(TaxJurisdiction.effective_from.desc())
        )
        candidates = list(result.scalars().all())
        if region_code is not None:
            regional = [j for j in candidates if j.region_code == region_code]
            if regional:
                return regional[0]
        national = [j for j in candidates if j.region_code is None]
        return national[0] if national else None

    async def _get_templates(
        self, tax_jurisdiction_id: UUID, as_of_date: date
    ) -> list[StatutoryDeductionTemplate]:
        result = await self.session.execute(
            select(StatutoryDeductionTemplate)
            .where(
                StatutoryDeductionTemplate.tax_jurisdiction_id == tax_jurisdiction_id,
                StatutoryDeductionTemplate.is_active.is_(True),
                StatutoryDeductionTemplate.is_mandatory.is_(True),
                StatutoryDeductionTemplate.effective_from <= as_of_date,
                (
                    StatutoryDeductionTemplate.effective_to.is_(None)
                    | (StatutoryDeductionTemplate.effective_to >= as_of_date)
                ),
            )
            .order_by(
                StatutoryDeductionTemplate.deduction_type,
                StatutoryDeductionTemplate.code,
                StatutoryDeductionTemplate.effective_from,
            )
        )
        return list(result.scalars().all())

    async def _get_configurations(
        self, company_id: UUID
    ) -> dict[UUID, CompanyStatutoryDeductionConfiguration]:
        result = await self.session.execute(
            select(CompanyStatutoryDeductionConfiguration).where(
                CompanyStatutoryDeductionConfiguration.company_id == company_id,
                CompanyStatutoryDeductionConfiguration.is_active.is_(True),
            )
        )
        return {c.statutory_deduction_template_id: c for c in result.scalars().all()}

    # === Calculation (pure) ===

    def calculate(
        self,
        context: StatutoryContext,
        employee: EmployeeProfile,
        gross_salary: Decimal,
        taxable_benefits: Decimal = ZERO,
        parameter_overrides: dict[UUID, dict[str, Any]] | None = None,
        employee_item_ids: dict[UUID, UUID] | None = None,
    ) -> StatutoryResult:
        """Compute every statutory template in the context against ``gross_salary``.

        ``parameter_overrides`` maps a template id to parameters from an
        employee payroll item; ``employee_item_ids`` records which item
        supplied them.
        """
        result = StatutoryResult(
            errors=list(context.errors),
            jurisdiction_resolved=context.resolved,
            tax_jurisdiction_id=context.jurisdiction.tax_jurisdiction_id
            if context.jurisdiction
            else None,
            taxable_benefits=taxable_benefits,
        )
        if not context.resolved:
            return result

        overrides = parameter_overrides or {}
        item_ids = employee_item_ids or {}
        templates = self._deduplicate(context.templates, result.errors)
        # Income tax runs last so employer-paid taxable benefits are included.
        ordered = [t for t in templates if t.deduction_type != INCOME_TAX] + [
            t for t in templates if t.deduction_type == INCOME_TAX
        ]

        for template in ordered:
            try:
                lines, benefit = self._calculate_template(
                    template,
                    context.configurations.get(template.statutory_deduction_template_id),
                    employee,
                    gross_salary,
                    result.taxable_benefits,
                    overrides.get(template.statutory_deduction_template_id),
                    item_ids.get(template.statutory_deduction_template_id),
                )
            except Exception as e:
                logger.error(
                    "Statutory template %s failed for employee %s: %s",
                    template.code,
                    employee.employee_id,
                    e,
                )
                result.errors.append(f"Failed to calculate {template.name}: {e}")
                continue

            result.items.extend(lines)
            result.taxable_benefits += benefit

        result.employee_total = LineItemBuilder.round_to_cents(
            sum((line.employee_amount for line in result.items), ZERO)
        )
        result.employer_total = LineItemBuilder.sum_employer(result.items)
        return result

    def _deduplicate(
        self, templates: list[StatutoryDeductionTemplate], errors: list[str]
    ) -> list[StatutoryDeductionTemplate]:
        """Keep one template per code: the most recently effective."""
        chosen: dict[str, StatutoryDeductionTemplate] = {}
        order: list[str] = []
        for template in templates:
            current = chosen.get(template.code)
            if current is None:
                chosen[template.code] = template
                order.append(template.code)
                continue
            latest = max(current, template, key=lambda t: t.effective_from)
            chosen[template.code] = latest
            errors.append(
                f"Multiple active statutory templates for code {template.code}; "
                f"using the one effective from {latest.effective_from.isoformat()}"
            )
        return [chosen[code] for code in order]

    def _calculate_template(
        self,
        template: StatutoryDeductionTemplate,
        configuration: CompanyStatutoryDeductionConfiguration | None,
        employee: EmployeeProfile,
        gross_salary: Decimal,
        taxable_benefits: Decimal,
        override_params: dict[str, Any] | None,
        employee_item_id: UUID | None,
    ) -> tuple[list[PayrollLine], Decimal]:
        # Column defaults and company overrides only reach rules that take them.
        accepted = accepted_parameters(template.calculation_method)
        params = _only(template.column_parameters(), accepted)
        params.update(template.rules or {})
        if configuration is not None:
            params.update(_only(configuration.parameter_overrides(), accepted))
        if override_params:
            params.update(override_params)

        reference = gross_salary
        if template.deduction_type == INCOME_TAX:
            reference += taxable_benefits

        base = AmountBase(
            gross_base=reference,
            basic_salary=gross_salary,
            annual_salary=employee.salary,
            periods_per_year=employee.frequency.periods_per_year,
        )
        amount = self.amount_calculator.calculate(
            template.calculation_method, params, base, source=template.code
        )
        if amount.flagged:
            raise ValueError(amount.flag_reason)

        employee_amount = amount.amount
        employer_amount = amount.employer_amount
        covered = ZERO
        taxable_benefit = ZERO
        if configuration is not None and configuration.employer_covers_employee_portion:
            covered = employee_amount
            employer_amount += covered
            employee_amount = ZERO
            if configuration.is_taxable_if_employer_paid:
                taxable_benefit = covered

        lines: list[PayrollLine] = []
        if employee_amount > 0 or employer_amount == 0:
            lines.append(
                LineItemBuilder.create_statutory_deduction_line(
                    code=template.code,
                    name=template.name,
                    deduction_type=template.deduction_type,
                    employee_amount=employee_amount,
                    result=amount,
                    statutory_deduction_template_id=template.statutory_deduction_template_id,
                    employee_payroll_item_id=employee_item_id,
                )
            )
        if employer_amount > 0:
            lines.append(
                LineItemBuilder.create_statutory_employer_line(
                    code=template.code,
                    name=template.name,
                    deduction_type=template.deduction_type,
                    employer_amount=employer_amount,
                    result=amount,
                    statutory_deduction_template_id=template.statutory_deduction_template_id,
                    covers_employee_portion=covered,
                    is_taxable=taxable_benefit > 0,
                )
            )
        return lines, taxable_benefit

    # === Convenience operations ===

    async def calculate_for_employee(
        self,
        employee: Employee | EmployeeProfile,
        gross_salary: Decimal,
        as_of_date: date,
        taxable_benefits: Decimal = ZERO,
    ) -> StatutoryResult:
        """Resolve the employee's jurisdiction and compute all statutory deductions."""
        profile = _as_profile(employee)
        context = await self.resolve(profile.company_id, as_of_date)
        return self.calculate(context, profile, gross_salary, taxable_benefits)

    async def calculate_by_type(
        self,
        employee: Employee | EmployeeProfile,
        deduction_type: str,
        gross_salary: Decimal,
        as_of_date: date,
    ) -> StatutoryResult:
        """Compute only the templates of one deduction type (``PAYE``, ``income_tax``...)."""
        profile = _as_profile(employee)
        wanted = DEDUCTION_TYPE_ALIASES.get(deduction_type.upper(), deduction_type.lower())
        context = await self.resolve(profile.company_id, as_of_date)
        context.templates = [t for t in context.templates if t.deduction_type == wanted]
        if context.resolved and not context.templates:
            context.errors.append(f"No statutory template configured for {deduction_type}")
        return self.calculate(context, profile, gross_salary)

    async def preview(
        self,
        country_code: str,
        gross_salary: Decimal,
        as_of_date: date,
        pay_frequency: str = PayFrequency.MONTHLY.value,
    ) -> StatutoryResult:
        """Statutory deductions a country's national rules take from ``gross_salary``.

        Computed for a stand-in employee earning ``gross_salary`` every
        period, with no company overrides; nothing is read or written for
        a real company or employee.
        """
        country = await self._get_country(country_code)
        if country is None:
            return StatutoryResult(errors=[f"Country {country_code} not found"])

        frequency = PayFrequency(pay_frequency)
        context = StatutoryContext(company_id=None, as_of_date=as_of_date)
        await self._resolve_country(context, country, None)
        profile = EmployeeProfile(
            employee_id=PREVIEW_ID,
            company_id=PREVIEW_ID,
            name="Preview",
            salary=gross_salary * frequency.periods_per_year,
            pay_frequency=frequency.value,
        )
        return self.calculate(context, profile, gross_salary)

    async def validate_country_configuration(
        self, country: Country, as_of_date: date
    ) -> CountryConfigurationReport:
        """Check that every deduction the country mandates has a template."""
        report = CountryConfigurationReport(
            country_code=country.iso_code,
            is_valid=False,
            mandatory_codes=country.mandatory_deduction_codes,
        )
        if not country.is_supported_for_payroll:
            report.errors.append(COUNTRY_NOT_SUPPORTED)
            return report

        jurisdiction = await self._get_jurisdiction(country.country_id, None, as_of_date)
        if jurisdiction is None:
            report.errors.append(NO_JURISDICTION)
            return report
        report.tax_jurisdiction_id = jurisdiction.tax_jurisdiction_id

        templates = await self._get_templates(jurisdiction.tax_jurisdiction_id, as_of_date)
        report.configured_codes = sorted({t.code for t in templates})
        report.missing_codes = [
            code for code in report.mandatory_codes if code not in report.configured_codes
        ]
        for code in report.missing_codes:
            report.errors.append(f"Missing mandatory deduction: {code}")
        report.is_valid = not report.missing_codes
        return report


def _as_profile(employee: Employee | EmployeeProfile) -> EmployeeProfile:
    if isinstance(employee, EmployeeProfile):
        return employee
    return EmployeeProfile.from_employee(employee)


def _only(params: dict[str, Any], accepted: frozenset[str]) -> dict[str, Any]:
    return {name: value for name, value in params.items() if name in accepted}

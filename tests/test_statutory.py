"""Tests for StatutoryDeductionCalculator."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from hr_payroll.calculators.statutory import (
    COUNTRY_NOT_SUPPORTED,
    NO_JURISDICTION,
    StatutoryContext,
    StatutoryDeductionCalculator,
)
from hr_payroll.calculators.types import EmployeeProfile, PayrollItemCategory
from tests.factories import (
    SA_PAYE_BANDS,
    SA_PRIMARY_REBATE,
    make_company,
    make_country,
    make_employee,
    make_jurisdiction,
    make_sa_templates,
    make_statutory_config,
    make_statutory_template,
)

GROSS = Decimal("25000")


def profile_for(company, **overrides):
    return EmployeeProfile.from_employee(make_employee(company.company_id, **overrides))


def by_code(result):
    return {line.code: line for line in result.items}


class TestStatutoryCalculation:
    """Test the pure calculation over a resolved context."""

    def test_south_african_monthly_deductions(self, sa_setup):
        calc = StatutoryDeductionCalculator()
        result = calc.calculate(sa_setup["context"], profile_for(sa_setup["company"]), GROSS)

        lines = by_code(result)
        assert result.errors == []
        assert result.jurisdiction_resolved is True
        assert lines["PAYE"].employee_amount == Decimal("3483.06")
        assert lines["PAYE"].category == PayrollItemCategory.TAX
        assert lines["UIF"].employee_amount == Decimal("177.12")
        assert lines["UIF"].category == PayrollItemCategory.DEDUCTION
        assert lines["UIF_EMPLOYER"].employer_amount == Decimal("177.12")
        assert lines["SDL_EMPLOYER"].employer_amount == Decimal("250.00")
        assert "SDL" not in lines
        assert result.employee_total == Decimal("3660.18")
        assert result.employer_total == Decimal("427.12")
        assert all(line.is_statutory for line in result.items)

    def test_failing_template_does_not_stop_others(self, sa_setup):
        broken = make_statutory_template(
            sa_setup["jurisdiction"], "BROKEN", "social_security", "astrology"
        )
        context = sa_setup["context"]
        context.templates = [*context.templates, broken]

        result = StatutoryDeductionCalculator().calculate(
            context, profile_for(sa_setup["company"]), GROSS
        )

        assert len(result.errors) == 1
        assert result.errors[0].startswith("Failed to calculate BROKEN:")
        assert result.employee_total == Decimal("3660.18")

    def test_unresolved_context_yields_zero_with_error(self, sa_setup):
        context = StatutoryContext(
            company_id=sa_setup["company"].company_id,
            as_of_date=date(2024, 3, 1),
            errors=[NO_JURISDICTION],
        )
        result = StatutoryDeductionCalculator().calculate(
            context, profile_for(sa_setup["company"]), GROSS
        )
        assert result.employee_total == Decimal("0")
        assert result.items == []
        assert result.errors == [NO_JURISDICTION]
        assert result.jurisdiction_resolved is False

    def test_duplicate_codes_keep_latest(self, sa_setup):
        older = make_statutory_template(
            sa_setup["jurisdiction"],
            "UIF",
            "unemployment_insurance",
            "percentage",
            employee_rate=Decimal("0.02"),
            effective_from=date(2023, 3, 1),
        )
        context = sa_setup["context"]
        context.templates = [older, *context.templates]

        result = StatutoryDeductionCalculator().calculate(
            context, profile_for(sa_setup["company"]), GROSS
        )
        assert by_code(result)["UIF"].employee_amount == Decimal("177.12")
        assert any("Multiple active statutory templates for code UIF" in e for e in result.errors)

    def test_company_rate_override(self, sa_setup):
        uif = sa_setup["templates"][1]
        context = sa_setup["context"]
        context.configurations = {
            uif.statutory_deduction_template_id: make_statutory_config(
                sa_setup["company"], uif, employee_rate_override=Decimal("0.02")
            )
        }
        result = StatutoryDeductionCalculator().calculate(
            context, profile_for(sa_setup["company"]), GROSS
        )
        assert by_code(result)["UIF"].employee_amount == Decimal("354.24")
        assert by_code(result)["UIF_EMPLOYER"].employer_amount == Decimal("177.12")

    def test_employer_covers_taxable_employee_portion(self, sa_setup):
        """The covered UIF share moves to the employer and is taxed as a benefit."""
        uif = sa_setup["templates"][1]
        context = sa_setup["context"]
        context.configurations = {
            uif.statutory_deduction_template_id: make_statutory_config(
                sa_setup["company"],
                uif,
                employer_covers_employee_portion=True,
                is_taxable_if_employer_paid=True,
            )
        }
        result = StatutoryDeductionCalculator().calculate(
            context, profile_for(sa_setup["company"]), GROSS
        )

        lines = by_code(result)
        assert "UIF" not in lines
        assert lines["UIF_EMPLOYER"].employer_amount == Decimal("354.24")
        assert lines["UIF_EMPLOYER"].is_taxable is True
        assert result.taxable_benefits == Decimal("177.12")
        # PAYE on (25000 + 177.12) * 12
        assert lines["PAYE"].employee_amount == Decimal("3529.11")
        assert result.employee_total == Decimal("3529.11")

    def test_employee_item_parameter_override(self, sa_setup):
        uif = sa_setup["templates"][1]
        result = StatutoryDeductionCalculator().calculate(
            sa_setup["context"],
            profile_for(sa_setup["company"]),
            GROSS,
            parameter_overrides={uif.statutory_deduction_template_id: {"maximum_salary": "10000"}},
        )
        assert by_code(result)["UIF"].employee_amount == Decimal("100.00")

    def test_weekly_employee_annualized_by_52(self, sa_setup):
        profile = profile_for(sa_setup["company"], pay_frequency="weekly")
        result = StatutoryDeductionCalculator().calculate(
            sa_setup["context"], profile, Decimal("5000")
        )
        # 260000 annual: 42678 + (260000 - 237101) * .26 = 48631.74; - 17235 = 31396.74; / 52
        assert by_code(result)["PAYE"].employee_amount == Decimal("603.78")


    def test_primary_rebate_from_rebates_matches_rebate(self, sa_setup):
        paye = sa_setup["templates"][0]
        paye.rules = {"bands": SA_PAYE_BANDS, "rebates": {"primary": SA_PRIMARY_REBATE}}
        result = StatutoryDeductionCalculator().calculate(
            sa_setup["context"], profile_for(sa_setup["company"]), GROSS
        )
        assert result.errors == []
        assert by_code(result)["PAYE"].employee_amount == Decimal("3483.06")

    def test_misspelt_rule_key_reported(self, sa_setup):
        paye = sa_setup["templates"][0]
        paye.rules = {"bands": SA_PAYE_BANDS, "rebat": SA_PRIMARY_REBATE}
        result = StatutoryDeductionCalculator().calculate(
            sa_setup["context"], profile_for(sa_setup["company"]), GROSS
        )
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Failed to calculate PAYE:")
        assert "PAYE" not in by_code(result)
        assert by_code(result)["UIF"].employee_amount == Decimal("177.12")

    def test_column_defaults_only_reach_methods_that_use_them(self, sa_setup):
        """Rates and caps on a bracket template's columns are not rule parameters."""
        paye = sa_setup["templates"][0]
        paye.employee_rate = Decimal("0")
        paye.minimum_salary = Decimal("0")
        paye.maximum_salary = Decimal("1000000")
        uif = sa_setup["templates"][1]
        uif.minimum_salary = Decimal("100")
        context = sa_setup["context"]
        context.configurations = {
            paye.statutory_deduction_template_id: make_statutory_config(
                sa_setup["company"], paye, maximum_salary_override=Decimal("5000")
            )
        }
        result = StatutoryDeductionCalculator().calculate(
            context, profile_for(sa_setup["company"]), GROSS
        )
        assert result.errors == []
        assert by_code(result)["PAYE"].employee_amount == Decimal("3483.06")
        assert by_code(result)["UIF"].employee_amount == Decimal("177.12")

    def test_unknown_employee_item_parameter_reported(self, sa_setup):
        uif = sa_setup["templates"][1]
        result = StatutoryDeductionCalculator().calculate(
            sa_setup["context"],
            profile_for(sa_setup["company"]),
            GROSS,
            parameter_overrides={uif.statutory_deduction_template_id: {"max_salary": "10000"}},
        )
        assert any(e.startswith("Failed to calculate UIF:") for e in result.errors)

class TestStatutoryResolution:
    """Test resolution against the database."""

    async def test_calculate_for_employee(self, session, seeded):
        calc = StatutoryDeductionCalculator(session)
        result = await calc.calculate_for_employee(seeded["employee"], GROSS, date(2024, 3, 31))

        assert result.jurisdiction_resolved is True
        assert result.tax_jurisdiction_id == seeded["jurisdiction"].tax_jurisdiction_id
        assert result.employee_total == Decimal("3660.18")
        assert result.employer_total == Decimal("427.12")

    async def test_unsupported_country(self, session):
        country = make_country(iso_code="XX", name="Nowhere", is_supported_for_payroll=False)
        company = make_company(country)
        employee = make_employee(company.company_id)
        session.add_all([country, company, employee])
        await session.flush()

        result = await StatutoryDeductionCalculator(session).calculate_for_employee(
            employee, GROSS, date(2024, 3, 1)
        )
        assert result.errors == [COUNTRY_NOT_SUPPORTED]
        assert result.employee_total == Decimal("0")

    async def test_company_without_country(self, session):
        company = make_company(None)
        employee = make_employee(company.company_id)
        session.add_all([company, employee])
        await session.flush()

        result = await StatutoryDeductionCalculator(session).calculate_for_employee(
            employee, GROSS, date(2024, 3, 1)
        )
        assert result.errors == [COUNTRY_NOT_SUPPORTED]

    async def test_missing_jurisdiction(self, session):
        country = make_country(iso_code="ZW", name="Zimbabwe")
        company = make_company(country)
        employee = make_employee(company.company_id)
        session.add_all([country, company, employee])
        await session.flush()

        result = await StatutoryDeductionCalculator(session).calculate_for_employee(
            employee, GROSS, date(2024, 3, 1)
        )
        assert result.errors == [NO_JURISDICTION]
        assert result.jurisdiction_resolved is False

    async def test_jurisdiction_effective_on_as_of_date(self, session, seeded):
        """Historical periods use the jurisdiction in force at the time."""
        old = seeded["jurisdiction"]
        old.effective_to = date(2025, 2, 28)
        new = make_jurisdiction(seeded["country"], effective_from=date(2025, 3, 1))
        new_uif = make_statutory_template(
            new,
            "UIF",
            "unemployment_insurance",
            "percentage",
            employee_rate=Decimal("0.01"),
            effective_from=date(2025, 3, 1),
        )
        session.add_all([new, new_uif])
        await session.flush()

        calc = StatutoryDeductionCalculator(session)
        company_id = seeded["company"].company_id
        before = await calc.resolve(company_id, date(2024, 6, 1))
        after = await calc.resolve(company_id, date(2025, 6, 1))

        assert before.jurisdiction.tax_jurisdiction_id == old.tax_jurisdiction_id
        assert len(before.templates) == 3
        assert after.jurisdiction.tax_jurisdiction_id == new.tax_jurisdiction_id
        assert [t.code for t in after.templates] == ["UIF"]

    async def test_regional_jurisdiction_preferred(self, session, seeded):
        company = seeded["company"]
        company.region_code = "WC"
        regional = make_jurisdiction(seeded["country"], name="Western Cape", region_code="WC")
        session.add(regional)
        await session.flush()

        context = await StatutoryDeductionCalculator(session).resolve(
            company.company_id, date(2024, 6, 1)
        )
        assert context.jurisdiction.tax_jurisdiction_id == regional.tax_jurisdiction_id

    async def test_inactive_and_optional_templates_excluded(self, session, seeded):
        optional = make_statutory_template(
            seeded["jurisdiction"], "MED", "health_insurance", "flat_amount",
            {"amount": "100"}, is_mandatory=False,
        )
        inactive = make_statutory_template(
            seeded["jurisdiction"], "OLD", "social_security", "flat_amount",
            {"amount": "100"}, is_active=False,
        )
        session.add_all([optional, inactive])
        await session.flush()

        context = await StatutoryDeductionCalculator(session).resolve(
            seeded["company"].company_id, date(2024, 6, 1)
        )
        assert sorted(t.code for t in context.templates) == ["PAYE", "SDL", "UIF"]

    async def test_company_not_found_raises(self, session):
        with pytest.raises(ValueError):
            await StatutoryDeductionCalculator(session).resolve(uuid4(), date(2024, 3, 1))

    async def test_calculate_by_type_alias(self, session, seeded):
        result = await StatutoryDeductionCalculator(session).calculate_by_type(
            seeded["employee"], "PAYE", GROSS, date(2024, 3, 31)
        )
        assert [line.code for line in result.items] == ["PAYE"]
        assert result.employee_total == Decimal("3483.06")

    async def test_calculate_by_type_not_configured(self, session, seeded):
        result = await StatutoryDeductionCalculator(session).calculate_by_type(
            seeded["employee"], "health_insurance", GROSS, date(2024, 3, 31)
        )
        assert result.items == []
        assert result.errors == ["No statutory template configured for health_insurance"]


class TestValidateCountryConfiguration:
    """Test comparison of mandated and configured deductions."""

    async def test_complete_configuration(self, session, seeded):
        report = await StatutoryDeductionCalculator(session).validate_country_configuration(
            seeded["country"], date(2024, 6, 1)
        )
        assert report.is_valid is True
        assert report.missing_codes == []
        assert report.configured_codes == ["PAYE", "SDL", "UIF"]

    async def test_missing_mandatory_code(self, session, seeded):
        seeded["country"].regulatory_framework = {
            "mandatory_deductions": ["PAYE", "UIF", "SDL", "ETI"]
        }
        report = await StatutoryDeductionCalculator(session).validate_country_configuration(
            seeded["country"], date(2024, 6, 1)
        )
        assert report.is_valid is False
        assert report.missing_codes == ["ETI"]
        assert report.errors == ["Missing mandatory deduction: ETI"]

    async def test_unsupported_country(self, session):
        country = make_country(iso_code="XX", is_supported_for_payroll=False)
        report = await StatutoryDeductionCalculator(session).validate_country_configuration(
            country, date(2024, 6, 1)
        )
        assert report.is_valid is False
        assert report.errors == [COUNTRY_NOT_SUPPORTED]


class TestPreview:
    """Test previewing a country's deductions without a company or employee."""

    async def test_preview_south_africa(self, session, seeded):
        result = await StatutoryDeductionCalculator(session).preview(
            "za", GROSS, date(2024, 3, 31)
        )
        assert result.errors == []
        assert result.jurisdiction_resolved is True
        assert by_code(result)["PAYE"].employee_amount == Decimal("3483.06")
        assert result.employee_total == Decimal("3660.18")
        assert result.employer_total == Decimal("427.12")

    async def test_preview_ignores_company_overrides(self, session, seeded):
        uif = seeded["templates"][1]
        session.add(
            make_statutory_config(
                seeded["company"], uif, employee_rate_override=Decimal("0.02")
            )
        )
        await session.flush()

        result = await StatutoryDeductionCalculator(session).preview(
            "ZA", GROSS, date(2024, 3, 31)
        )
        assert by_code(result)["UIF"].employee_amount == Decimal("177.12")

    async def test_preview_weekly(self, session, seeded):
        result = await StatutoryDeductionCalculator(session).preview(
            "ZA", Decimal("5000"), date(2024, 3, 31), pay_frequency="weekly"
        )
        assert by_code(result)["PAYE"].employee_amount == Decimal("603.78")

    async def test_preview_unknown_country(self, session):
        result = await StatutoryDeductionCalculator(session).preview(
            "QQ", GROSS, date(2024, 3, 31)
        )
        assert result.errors == ["Country QQ not found"]
        assert result.items == []
        assert result.jurisdiction_resolved is False

    async def test_preview_unsupported_country(self, session):
        session.add(make_country(iso_code="XX", is_supported_for_payroll=False))
        await session.flush()

        result = await StatutoryDeductionCalculator(session).preview(
            "XX", GROSS, date(2024, 3, 31)
        )
        assert result.errors == [COUNTRY_NOT_SUPPORTED]

"""Tests for PayrollEngine."""

import dataclasses
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from hr_payroll.calculators.engine import PayrollEngine, PayrollInputs
from hr_payroll.calculators.line_builder import LineItemBuilder
from hr_payroll.calculators.statutory import NO_JURISDICTION, StatutoryContext
from hr_payroll.calculators.types import EmployeeProfile, ItemSource, PayrollItemCategory
from tests.factories import (
    make_employee,
    make_employee_item,
    make_garnishment,
    make_statutory_template,
    make_template,
)

PERIOD_START = date(2024, 3, 1)
PERIOD_END = date(2024, 3, 31)


@pytest.fixture
def engine(settings):
    return PayrollEngine(None, settings)


@pytest.fixture
def employee(sa_setup):
    return make_employee(sa_setup["company"].company_id)


def build_inputs(sa_setup, employee, templates=(), items=(), **overrides):
    values = dict(
        employee=EmployeeProfile.from_employee(employee),
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        company_templates=list(templates),
        employee_items=list(items),
        statutory=sa_setup["context"],
    )
    values.update(overrides)
    return PayrollInputs(**values)


def line(calculation, code):
    matches = [ln for ln in calculation.lines if ln.code == code]
    assert len(matches) == 1, f"expected one {code} line, got {len(matches)}"
    return matches[0]


class TestSingleEmployee:
    """Test the pure calculation pipeline."""

    def test_salary_with_statutory_deductions(self, engine, sa_setup, employee):
        calc = engine.calculate(build_inputs(sa_setup, employee))

        assert calc.success, calc.errors
        assert calc.base_salary == Decimal("25000.00")
        assert calc.gross_salary == Decimal("25000.00")
        assert line(calc, "PAYE").employee_amount == Decimal("3483.06")
        assert line(calc, "UIF").employee_amount == Decimal("177.12")
        assert line(calc, "SDL_EMPLOYER").employer_amount == Decimal("250.00")
        assert calc.total_statutory_deductions == Decimal("3660.18")
        assert calc.total_deductions == Decimal("3660.18")
        assert calc.net_salary == Decimal("21339.82")
        assert calc.total_employer_contributions == Decimal("427.12")
        assert calc.total_cost_to_company == Decimal("25427.12")
        assert calc.jurisdiction_resolved is True

    def test_company_items_full_breakdown(self, engine, sa_setup, employee):
        company_id = sa_setup["company"].company_id
        templates = [
            make_template(company_id, "HOUSING", "allowance", "fixed_amount", {"amount": "2000"}),
            make_template(company_id, "MEDICAL", "benefit", "fixed_amount", {"amount": "1500"}),
            make_template(
                company_id, "PENSION", "deduction", "percentage_of_salary", {"percentage": "7.5"}
            ),
        ]
        calc = engine.calculate(build_inputs(sa_setup, employee, templates))

        assert calc.success, calc.errors
        assert calc.total_allowances == Decimal("2000.00")
        assert calc.total_benefits == Decimal("1500.00")
        # Benefits are a cost to company, not pay.
        assert calc.gross_salary == Decimal("27000.00")
        assert line(calc, "PAYE").employee_amount == Decimal("4003.06")
        assert line(calc, "SDL_EMPLOYER").employer_amount == Decimal("270.00")
        assert line(calc, "PENSION").employee_amount == Decimal("2025.00")
        assert calc.total_deductions == Decimal("6205.18")
        assert calc.total_other_deductions == Decimal("2025.00")
        assert calc.net_salary == Decimal("20794.82")
        assert calc.total_employer_contributions == Decimal("447.12")
        assert calc.total_cost_to_company == Decimal("28947.12")

        assert [ln.code for ln in calc.allowances["company"]] == ["HOUSING"]
        assert [ln.code for ln in calc.benefits] == ["MEDICAL"]
        assert [ln.code for ln in calc.deductions["company"]] == ["PENSION"]
        assert {ln.code for ln in calc.deductions["statutory"]} == {"PAYE", "UIF"}

    def test_net_equals_gross_minus_deductions(self, engine, sa_setup, employee):
        company_id = sa_setup["company"].company_id
        templates = [
            make_template(company_id, "BONUS", "earning", "percentage_of_basic", {"percentage": "10"}),
            make_template(company_id, "LOAN", "deduction", "fixed_amount", {"amount": "333.33"}),
        ]
        calc = engine.calculate(build_inputs(sa_setup, employee, templates))

        assert calc.net_salary == calc.gross_salary - calc.total_deductions
        assert calc.net_salary == LineItemBuilder.calculate_net_from_lines(calc.lines)
        assert LineItemBuilder.check_invariants(calc) == []
        assert calc.total_earnings == Decimal("2500.00")

    def test_employer_cost_item(self, engine, sa_setup, employee):
        company_id = sa_setup["company"].company_id
        templates = [
            make_template(
                company_id, "GROUP_LIFE", "employer_cost", "percentage_of_salary", {"percentage": "2"}
            )
        ]
        calc = engine.calculate(build_inputs(sa_setup, employee, templates))

        group_life = line(calc, "GROUP_LIFE")
        assert group_life.category == PayrollItemCategory.EMPLOYER_CONTRIBUTION
        assert group_life.employer_amount == Decimal("500.00")
        assert group_life.employee_amount == Decimal("0")
        assert calc.net_salary == Decimal("21339.82")
        assert calc.total_employer_contributions == Decimal("927.12")

    def test_weekly_pay_frequency(self, engine, sa_setup):
        weekly = make_employee(
            sa_setup["company"].company_id, salary=Decimal("260000"), pay_frequency="weekly"
        )
        calc = engine.calculate(build_inputs(sa_setup, weekly))
        assert calc.base_salary == Decimal("5000.00")
        assert line(calc, "PAYE").employee_amount == Decimal("603.78")


class TestDeterminism:
    """Test calculation ids and repeatability."""

    def test_same_inputs_same_result(self, engine, sa_setup, employee):
        inputs = build_inputs(sa_setup, employee)
        first = engine.calculate(inputs)
        second = engine.calculate(inputs)

        assert first.calculation_id == second.calculation_id
        assert first.net_salary == second.net_salary
        assert [LineItemBuilder.compute_line_hash(ln) for ln in first.lines] == [
            LineItemBuilder.compute_line_hash(ln) for ln in second.lines
        ]

    def test_salary_change_changes_id(self, engine, sa_setup, employee):
        inputs = build_inputs(sa_setup, employee)
        raised = dataclasses.replace(
            inputs, employee=dataclasses.replace(inputs.employee, salary=Decimal("360000"))
        )
        assert engine.calculate(inputs).calculation_id != engine.calculate(raised).calculation_id

    def test_engine_version_changes_id(self, settings, sa_setup, employee):
        inputs = build_inputs(sa_setup, employee)
        v1 = PayrollEngine(None, settings).calculate(inputs)
        v2 = PayrollEngine(None, dataclasses.replace(settings, engine_version="other")).calculate(
            inputs
        )
        assert v1.calculation_id != v2.calculation_id
        assert v1.net_salary == v2.net_salary


class TestProration:
    """Test mid-period joiners and leavers."""

    def test_mid_period_joiner(self, engine, sa_setup):
        company_id = sa_setup["company"].company_id
        joiner = make_employee(company_id, start_date=date(2024, 11, 16))
        templates = [
            make_template(company_id, "HOUSING", "allowance", "fixed_amount", {"amount": "2000"}),
            make_template(company_id, "MEDICAL", "benefit", "flat_amount", {"amount": "1500"}),
        ]
        calc = engine.calculate(
            build_inputs(
                sa_setup,
                joiner,
                templates,
                period_start=date(2024, 11, 1),
                period_end=date(2024, 11, 30),
            )
        )

        assert calc.prorated is True
        assert (calc.working_days, calc.period_days) == (15, 30)
        assert calc.base_salary == Decimal("12500.00")
        assert line(calc, "HOUSING").employee_amount == Decimal("1000.00")
        # flat_amount is not a prorated method
        assert line(calc, "MEDICAL").employee_amount == Decimal("1500.00")
        assert line(calc, "BASIC").details["proration"]["working_days"] == 15
        assert calc.gross_salary == Decimal("13500.00")

    def test_full_period_not_prorated(self, engine, sa_setup, employee):
        calc = engine.calculate(build_inputs(sa_setup, employee))
        assert calc.prorated is False
        assert "proration" not in line(calc, "BASIC").details


class TestItemSelection:
    """Test template eligibility and employee item handling."""

    def test_employee_item_overrides_template(self, engine, sa_setup, employee):
        company_id = sa_setup["company"].company_id
        housing = make_template(
            company_id, "HOUSING", "allowance", "fixed_amount", {"amount": "2000"}
        )
        item = make_employee_item(
            employee,
            "HOUSING",
            "allowance",
            "fixed_amount",
            company_payroll_template_id=housing.company_payroll_template_id,
            parameters={"amount": "3000"},
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, [housing], [item]))

        housing_line = line(calc, "HOUSING")
        assert housing_line.employee_amount == Decimal("3000.00")
        assert housing_line.source == ItemSource.EMPLOYEE
        assert housing_line.employee_payroll_item_id == item.employee_payroll_item_id
        assert calc.allowances["company"] == []

    def test_requires_approval_only_via_item(self, engine, sa_setup, employee):
        company_id = sa_setup["company"].company_id
        car = make_template(
            company_id,
            "CAR",
            "allowance",
            "fixed_amount",
            {"amount": "4000"},
            requires_approval=True,
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, [car]))
        assert all(ln.code != "CAR" for ln in calc.lines)

        approved = make_employee_item(
            employee,
            "CAR",
            "allowance",
            "fixed_amount",
            company_payroll_template_id=car.company_payroll_template_id,
            parameters={"amount": "4000"},
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, [car], [approved]))
        assert line(calc, "CAR").employee_amount == Decimal("4000.00")

    def test_inactive_item_ignored(self, engine, sa_setup, employee):
        pending = make_employee_item(
            employee, "OVERTIME", "earning", "manual", amount=Decimal("900"),
            status="pending_approval",
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, items=[pending]))
        assert calc.total_earnings == Decimal("0.00")

    def test_manual_employee_item_uses_amount(self, engine, sa_setup, employee):
        overtime = make_employee_item(
            employee, "OVERTIME", "earning", "manual", amount=Decimal("750")
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, items=[overtime]))
        assert line(calc, "OVERTIME").employee_amount == Decimal("750.00")
        assert calc.total_earnings == Decimal("750.00")
        assert calc.gross_salary == Decimal("25750.00")

    def test_manual_company_template_is_zero(self, engine, sa_setup, employee):
        template = make_template(sa_setup["company"].company_id, "ADHOC", "earning", "manual")
        calc = engine.calculate(build_inputs(sa_setup, employee, [template]))
        assert line(calc, "ADHOC").employee_amount == Decimal("0.00")

    def test_one_off_item_outside_period_ignored(self, engine, sa_setup, employee):
        bonus = make_employee_item(
            employee,
            "BONUS",
            "earning",
            "fixed_amount",
            parameters={"amount": "5000"},
            is_recurring=False,
            effective_from=date(2024, 2, 1),
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, items=[bonus]))
        assert all(ln.code != "BONUS" for ln in calc.lines)

    def test_eligibility_rules_filter_templates(self, engine, sa_setup, employee):
        company_id = sa_setup["company"].company_id
        templates = [
            make_template(
                company_id,
                "PART_TIME_ALLOWANCE",
                "allowance",
                "fixed_amount",
                {"amount": "500"},
                eligibility_rules={"employment_types": ["part_time"]},
            ),
            make_template(
                company_id,
                "SENIOR_ALLOWANCE",
                "allowance",
                "fixed_amount",
                {"amount": "800"},
                eligibility_rules={"min_salary": "250000"},
            ),
        ]
        calc = engine.calculate(build_inputs(sa_setup, employee, templates))
        assert [ln.code for ln in calc.allowances["company"]] == ["SENIOR_ALLOWANCE"]

    def test_template_outside_effective_window_ignored(self, engine, sa_setup, employee):
        template = make_template(
            sa_setup["company"].company_id,
            "HOUSING",
            "allowance",
            "fixed_amount",
            {"amount": "2000"},
            effective_to=date(2024, 2, 29),
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, [template]))
        assert calc.total_allowances == Decimal("0.00")

    def test_statutory_item_overrides_parameters(self, engine, sa_setup, employee):
        uif = sa_setup["templates"][1]
        item = make_employee_item(
            employee,
            "UIF",
            "deduction",
            "percentage",
            statutory_deduction_template_id=uif.statutory_deduction_template_id,
            parameters={"employee_rate": "0.02"},
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, items=[item]))
        uif_line = line(calc, "UIF")
        assert uif_line.employee_amount == Decimal("354.24")
        assert uif_line.employee_payroll_item_id == item.employee_payroll_item_id

    def test_statutory_item_brings_in_optional_template(self, engine, sa_setup, employee):
        optional = make_statutory_template(
            sa_setup["jurisdiction"],
            "MEDAID",
            "health_insurance",
            "flat_amount",
            {"amount": "350"},
            is_mandatory=False,
        )
        item = make_employee_item(
            employee,
            "MEDAID",
            "deduction",
            "flat_amount",
            statutory_deduction_template_id=optional.statutory_deduction_template_id,
            statutory_template=optional,
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, items=[item]))
        assert line(calc, "MEDAID").employee_amount == Decimal("350.00")
        assert calc.total_statutory_deductions == Decimal("4010.18")


class TestErrorIsolation:
    """Test that one bad item is reported without stopping the rest."""

    def test_unknown_method_reported(self, engine, sa_setup, employee):
        company_id = sa_setup["company"].company_id
        templates = [
            make_template(company_id, "BROKEN", "allowance", "astrology", {}),
            make_template(company_id, "HOUSING", "allowance", "fixed_amount", {"amount": "2000"}),
        ]
        calc = engine.calculate(build_inputs(sa_setup, employee, templates))

        assert not calc.success
        assert any(e.startswith("BROKEN:") for e in calc.errors)
        assert line(calc, "HOUSING").employee_amount == Decimal("2000.00")
        assert line(calc, "PAYE").employee_amount == Decimal("4003.06")

    def test_malformed_eligibility_reported(self, engine, sa_setup, employee):
        template = make_template(
            sa_setup["company"].company_id,
            "ODD",
            "allowance",
            "fixed_amount",
            {"amount": "100"},
            eligibility_rules={"favourite_colour": ["blue"]},
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, [template]))
        assert any(e.startswith("ODD:") for e in calc.errors)
        assert calc.net_salary == Decimal("21339.82")

    def test_unsafe_formula_flagged_not_evaluated(self, engine, sa_setup, employee):
        template = make_template(
            sa_setup["company"].company_id,
            "SNEAKY",
            "allowance",
            "formula",
            {"formula": "__import__('os').system('true')"},
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, [template]))

        assert line(calc, "SNEAKY").employee_amount == Decimal("0.00")
        assert len(calc.flags) == 1
        assert calc.flags[0].startswith("SNEAKY:")
        assert calc.success

    def test_formula_allowance(self, engine, sa_setup, employee):
        template = make_template(
            sa_setup["company"].company_id,
            "LONG_SERVICE",
            "allowance",
            "formula",
            {"formula": "{basic_salary} * 0.01 * {years_of_service}"},
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, [template]))
        # four full years of service on 2024-03-01
        assert line(calc, "LONG_SERVICE").employee_amount == Decimal("1000.00")

    def test_oversized_formula_flagged_others_still_paid(self, engine, sa_setup, employee):
        company_id = sa_setup["company"].company_id
        templates = [
            make_template(company_id, "HOUSING", "allowance", "fixed_amount", {"amount": "2000"}),
            make_template(
                company_id,
                "BONUS",
                "earning",
                "formula",
                {"formula": "{basic_salary} * 100000000000000000000000000"},
            ),
        ]
        calc = engine.calculate(build_inputs(sa_setup, employee, templates))

        assert calc.success, calc.errors
        assert line(calc, "BONUS").employee_amount == Decimal("0.00")
        assert line(calc, "HOUSING").employee_amount == Decimal("2000.00")
        assert line(calc, "PAYE").employee_amount == Decimal("4003.06")
        assert [f.split(":")[0] for f in calc.flags] == ["BONUS"]

    def test_negative_net_reported(self, engine, sa_setup, employee):
        template = make_template(
            sa_setup["company"].company_id, "GARNISH", "deduction", "fixed_amount",
            {"amount": "30000"},
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, [template]))
        assert calc.net_salary < 0
        assert any("Net salary is negative" in e for e in calc.errors)

    def test_unresolved_jurisdiction_still_pays_salary(self, engine, sa_setup, employee):
        context = StatutoryContext(
            company_id=sa_setup["company"].company_id,
            as_of_date=PERIOD_START,
            errors=[NO_JURISDICTION],
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, statutory=context))

        assert calc.gross_salary == Decimal("25000.00")
        assert calc.total_statutory_deductions == Decimal("0")
        assert calc.errors == [NO_JURISDICTION]
        assert calc.jurisdiction_resolved is False


class TestGarnishments:
    """Test garnishment orders taken after every other deduction."""

    def test_garnishment_reduces_net(self, engine, sa_setup, employee):
        support = make_garnishment(employee, "SUPPORT", "child_support", amount=Decimal("3000"))
        calc = engine.calculate(build_inputs(sa_setup, employee, items=[support]))

        assert calc.success, calc.errors
        assert calc.disposable_income == Decimal("21339.82")
        assert calc.total_garnishments == Decimal("3000.00")
        assert calc.total_deductions == Decimal("6660.18")
        assert calc.total_statutory_deductions == Decimal("3660.18")
        assert calc.net_salary == Decimal("18339.82")
        assert [ln.code for ln in calc.deductions["garnishments"]] == ["SUPPORT"]
        assert calc.deductions["employee"] == []
        assert LineItemBuilder.check_invariants(calc) == []
        assert calc.to_summary_dict()["total_garnishments"] == "3000.00"

    def test_disposable_income_excludes_other_deductions(self, engine, sa_setup, employee):
        """25% of (21,339.82 - 1,875 pension) = 4,866.205."""
        pension = make_template(
            sa_setup["company"].company_id,
            "PENSION",
            "deduction",
            "percentage_of_salary",
            {"percentage": "7.5"},
        )
        wage = make_garnishment(employee, "WAGE", "wage_garnishment", amount=Decimal("10000"))
        calc = engine.calculate(build_inputs(sa_setup, employee, [pension], [wage]))

        assert calc.disposable_income == Decimal("19464.82")
        assert line(calc, "WAGE").employee_amount == Decimal("4866.21")
        assert line(calc, "WAGE").details["limited_by_legal"] is True
        assert calc.net_salary == Decimal("14598.61")

    def test_suspended_garnishment_ignored(self, engine, sa_setup, employee):
        support = make_garnishment(
            employee, "SUPPORT", "child_support", amount=Decimal("3000"), status="suspended"
        )
        calc = engine.calculate(build_inputs(sa_setup, employee, items=[support]))
        assert calc.total_garnishments == Decimal("0")
        assert calc.net_salary == Decimal("21339.82")

    def test_amount_garnished_to_date_changes_id(self, engine, sa_setup, employee):
        order = dict(amount=Decimal("500"), total_amount_to_garnish=Decimal("5000"))
        first = make_garnishment(employee, "LOAN", "student_loan", **order)
        later = make_garnishment(
            employee,
            "LOAN",
            "student_loan",
            employee_payroll_item_id=first.employee_payroll_item_id,
            amount_garnished_to_date=Decimal("500"),
            **order,
        )
        a = engine.calculate(build_inputs(sa_setup, employee, items=[first]))
        b = engine.calculate(build_inputs(sa_setup, employee, items=[later]))
        assert a.net_salary == b.net_salary
        assert a.calculation_id != b.calculation_id


class TestDatabaseBackedCalculation:
    """Test loading inputs from the database."""

    async def test_calculate_employee_payroll(self, session, seeded, settings):
        engine = PayrollEngine(session, settings)
        calc = await engine.calculate_employee_payroll(seeded["employee"], PERIOD_START, PERIOD_END)

        assert calc.success, calc.errors
        assert calc.net_salary == Decimal("21339.82")
        assert calc.company_id == seeded["company"].company_id

    async def test_loads_templates_and_items(self, session, seeded, settings):
        company_id = seeded["company"].company_id
        employee = seeded["employee"]
        housing = make_template(company_id, "HOUSING", "allowance", "fixed_amount", {"amount": "2000"})
        medical = make_template(company_id, "MEDICAL", "benefit", "fixed_amount", {"amount": "1500"})
        retired = make_template(
            company_id, "RETIRED", "allowance", "fixed_amount", {"amount": "1"}, is_active=False
        )
        override = make_employee_item(
            employee,
            "HOUSING",
            "allowance",
            "fixed_amount",
            company_payroll_template_id=housing.company_payroll_template_id,
            parameters={"amount": "2500"},
        )
        session.add_all([housing, medical, retired, override])
        await session.flush()

        engine = PayrollEngine(session, settings)
        calc = await engine.calculate_employee_payroll(employee, PERIOD_START, PERIOD_END)

        assert line(calc, "HOUSING").employee_amount == Decimal("2500.00")
        assert line(calc, "MEDICAL").employee_amount == Decimal("1500.00")
        assert all(ln.code != "RETIRED" for ln in calc.lines)
        assert calc.gross_salary == Decimal("27500.00")

    async def test_invalid_period_rejected(self, session, seeded, settings):
        engine = PayrollEngine(session, settings)
        with pytest.raises(ValueError):
            await engine.calculate_employee_payroll(
                seeded["employee"], PERIOD_END, PERIOD_START
            )

    async def test_batch_isolates_failures(self, session, seeded, settings):
        colleague = make_employee(
            seeded["company"].company_id,
            employee_number="E002",
            first_name="Sipho",
            salary=Decimal("600000"),
        )
        session.add(colleague)
        await session.flush()
        orphan = make_employee(uuid4(), employee_number="E999", first_name="Orphan")

        engine = PayrollEngine(session, settings)
        result = await engine.calculate_batch_payroll(
            [seeded["employee"], orphan, colleague], PERIOD_START, PERIOD_END
        )

        summary = result.summary
        assert summary.total_employees == 3
        assert summary.successful_calculations == 2
        assert summary.failed_calculations == 1
        assert summary.total_gross_salary == Decimal("75000.00")
        assert [c.employee_id for c in result.calculations] == [
            seeded["employee"].employee_id,
            colleague.employee_id,
        ]
        assert summary.total_net_salary == sum(c.net_salary for c in result.calculations)

        assert len(result.errors) == 1
        failure = result.errors[0]
        assert failure["employee_id"] == str(orphan.employee_id)
        assert failure["fatal"] is True
        assert "not found" in failure["errors"][0]

    async def test_batch_reports_non_fatal_errors(self, session, seeded, settings):
        broken = make_template(
            seeded["company"].company_id, "BROKEN", "allowance", "astrology", {}
        )
        session.add(broken)
        await session.flush()

        engine = PayrollEngine(session, settings)
        result = await engine.calculate_batch_payroll(
            [seeded["employee"]], PERIOD_START, PERIOD_END
        )

        assert result.summary.successful_calculations == 1
        assert result.summary.failed_calculations == 0
        assert result.errors[0]["fatal"] is False
        assert result.errors[0]["errors"][0].startswith("BROKEN:")

    async def test_batch_summary_dict(self, session, seeded, settings):
        engine = PayrollEngine(session, settings)
        result = await engine.calculate_batch_payroll(
            [seeded["employee"]], PERIOD_START, PERIOD_END
        )
        assert result.summary.to_dict() == {
            "total_employees": 1,
            "successful_calculations": 1,
            "failed_calculations": 0,
            "total_gross_salary": "25000.00",
            "total_net_salary": "21339.82",
            "total_statutory_deductions": "3660.18",
            "total_employer_contributions": "427.12",
        }

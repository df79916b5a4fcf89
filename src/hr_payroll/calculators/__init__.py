"""Payroll calculation engine."""

from hr_payroll.calculators.amount import AmountCalculator
from hr_payroll.calculators.eligibility import EligibilityEvaluator
from hr_payroll.calculators.engine import PayrollEngine, PayrollInputs
from hr_payroll.calculators.formula import UnsafeFormulaError, compile_formula
from hr_payroll.calculators.garnishment import GarnishmentCalculator
from hr_payroll.calculators.line_builder import LineItemBuilder, PayrollInvariantError
from hr_payroll.calculators.proration import ProrationEngine
from hr_payroll.calculators.rules import RuleConfigurationError, parse_rule
from hr_payroll.calculators.statutory import StatutoryDeductionCalculator
from hr_payroll.calculators.types import (
    BatchPayrollResult,
    EmployeeProfile,
    PayrollCalculation,
    StatutoryResult,
)

__all__ = [
    "AmountCalculator",
    "EligibilityEvaluator",
    "PayrollEngine",
    "PayrollInputs",
    "UnsafeFormulaError",
    "compile_formula",
    "GarnishmentCalculator",
    "LineItemBuilder",
    "PayrollInvariantError",
    "ProrationEngine",
    "RuleConfigurationError",
    "parse_rule",
    "StatutoryDeductionCalculator",
    "BatchPayrollResult",
    "EmployeeProfile",
    "PayrollCalculation",
    "StatutoryResult",
]

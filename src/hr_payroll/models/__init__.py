"""SQLAlchemy ORM models for the payroll engine."""

from hr_payroll.models.base import Base, TimestampMixin
from hr_payroll.models.company import (
    Company,
    Country,
    Department,
    Position,
    TaxJurisdiction,
)
from hr_payroll.models.employee import Employee
from hr_payroll.models.payroll import (
    EmployeePayrollItem,
    ImmutableRecordError,
    Payroll,
    PayrollItem,
)
from hr_payroll.models.templates import (
    CompanyPayrollTemplate,
    CompanyStatutoryDeductionConfiguration,
    StatutoryDeductionTemplate,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "Company",
    "Country",
    "Department",
    "Position",
    "TaxJurisdiction",
    "Employee",
    "EmployeePayrollItem",
    "ImmutableRecordError",
    "Payroll",
    "PayrollItem",
    "CompanyPayrollTemplate",
    "CompanyStatutoryDeductionConfiguration",
    "StatutoryDeductionTemplate",
]

"""Template eligibility evaluation."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from pydantic import BaseModel, ConfigDict, ValidationError

from hr_payroll.calculators.rules import RuleConfigurationError
from hr_payroll.models.base import is_within


class EligibleEmployee(Protocol):
    salary: Decimal
    employment_type: str | None
    department_id: UUID | None
    position_id: UUID | None


class EligibilityRules(BaseModel):
    """Structured eligibility predicate.

    An absent dimension, or an empty membership list, is unrestricted.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    departments: list[str] | None = None
    positions: list[str] | None = None
    employment_types: list[str] | None = None
    min_salary: Decimal | None = None
    max_salary: Decimal | None = None

    def failures(self, employee: EligibleEmployee) -> list[str]:
        """Names of the predicates the employee does not satisfy."""
        failed = []
        if self.departments and not _member(employee.department_id, self.departments):
            failed.append("departments")
        if self.positions and not _member(employee.position_id, self.positions):
            failed.append("positions")
        if (
            self.employment_types
            and employee.employment_type not in self.employment_types
        ):
            failed.append("employment_types")
        if self.min_salary is not None and employee.salary < self.min_salary:
            failed.append("min_salary")
        if self.max_salary is not None and employee.salary > self.max_salary:
            failed.append("max_salary")
        return failed


def _member(value: UUID | None, allowed: list[str]) -> bool:
    return value is not None and str(value) in {str(a) for a in allowed}


def parse_eligibility_rules(
    raw: dict[str, Any] | None, source: str | None = None
) -> EligibilityRules:
    """Validate stored eligibility rules. Raises RuleConfigurationError."""
    try:
        return EligibilityRules.model_validate(raw or {})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'rules'}: {err['msg']}"
            for err in e.errors()
        )
        raise RuleConfigurationError("eligibility", problems, source) from e


class EligibilityEvaluator:
    """Decides whether a company template applies to an employee."""

    def is_applicable(self, template: Any, employee: EligibleEmployee, as_of_date: date) -> bool:
        """Active, in force on ``as_of_date``, and every configured predicate holds.

        Raises RuleConfigurationError if the template's rules are malformed.
        """
        if not template.is_active:
            return False
        if not is_within(as_of_date, template.effective_from, template.effective_to):
            return False
        rules = parse_eligibility_rules(template.eligibility_rules, source=template.code)
        return not rules.failures(employee)

    def is_item_effective(self, item: Any, period_start: date, period_end: date) -> bool:
        """Whether an employee payroll item applies to the pay period."""
        return item.is_effective_for(period_start, period_end)

"""Company payroll templates and statutory deduction templates."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hr_payroll.models.base import Base, TimestampMixin, is_within

if TYPE_CHECKING:
    from hr_payroll.models.company import Company, TaxJurisdiction


class CompanyPayrollTemplate(Base, TimestampMixin):
    """Company-defined earning, allowance, benefit, deduction or employer cost."""

    __tablename__ = "company_payroll_template"

    company_payroll_template_id: Mapped[UUID] = mapped_column(
        primary_key=True, default=uuid4
    )
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    item_type: Mapped[str] = mapped_column(String, nullable=False)
    calculation_method: Mapped[str] = mapped_column(String, nullable=False)
    parameters: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_pensionable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    eligibility_rules: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    requires_approval: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    effective_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        UniqueConstraint("company_id", "code", name="company_template_code_unique"),
        CheckConstraint(
            "item_type IN ('earning', 'allowance', 'benefit', 'deduction', 'employer_cost')",
            name="company_template_item_type_check",
        ),
    )

    # Relationships
    company: Mapped[Company] = relationship(back_populates="payroll_templates")

    def is_effective_on(self, as_of_date: date) -> bool:
        """Check if template is active and in force on a given date."""
        return self.is_active and is_within(
            as_of_date, self.effective_from, self.effective_to
        )


class StatutoryDeductionTemplate(Base, TimestampMixin):
    """Government-mandated deduction rule scoped to a tax jurisdiction."""

    __tablename__ = "statutory_deduction_template"

    statutory_deduction_template_id: Mapped[UUID] = mapped_column(
        primary_key=True, default=uuid4
    )
    tax_jurisdiction_id: Mapped[UUID] = mapped_column(
        ForeignKey("tax_jurisdiction.tax_jurisdiction_id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    deduction_type: Mapped[str] = mapped_column(String, nullable=False)
    calculation_method: Mapped[str] = mapped_column(String, nullable=False)
    # Method specific: {"bands": [...], "rebate": "17235"}, {"amount": "150"}, ...
    rules: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    employee_rate: Mapped[Decimal | None] = mapped_column(Numeric(9, 6), nullable=True)
    employer_rate: Mapped[Decimal | None] = mapped_column(Numeric(9, 6), nullable=True)
    minimum_salary: Mapped[Decimal | None] = mapped_column(nullable=True)
    maximum_salary: Mapped[Decimal | None] = mapped_column(nullable=True)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_mandatory: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "employee_rate IS NULL OR employee_rate >= 0",
            name="statutory_employee_rate_non_negative",
        ),
        CheckConstraint(
            "employer_rate IS NULL OR employer_rate >= 0",
            name="statutory_employer_rate_non_negative",
        ),
    )

    # Relationships
    jurisdiction: Mapped[TaxJurisdiction] = relationship(
        back_populates="statutory_templates"
    )

    def is_effective_on(self, as_of_date: date) -> bool:
        """Check if template is active and in force on a given date."""
        return self.is_active and is_within(
            as_of_date, self.effective_from, self.effective_to
        )

    def column_parameters(self) -> dict[str, Any]:
        """Column-level rates and caps that are set."""
        params: dict[str, Any] = {}
        for name in ("employee_rate", "employer_rate", "minimum_salary", "maximum_salary"):
            value = getattr(self, name)
            if value is not None:
                params[name] = value
        return params

    def base_parameters(self) -> dict[str, Any]:
        """Rule parameters with the column-level rates and caps as defaults."""
        params = self.column_parameters()
        params.update(self.rules or {})
        return params


class CompanyStatutoryDeductionConfiguration(Base, TimestampMixin):
    """Per-company override of a statutory deduction template."""

    __tablename__ = "company_statutory_deduction_configuration"

    configuration_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
    )
    statutory_deduction_template_id: Mapped[UUID] = mapped_column(
        ForeignKey(
            "statutory_deduction_template.statutory_deduction_template_id",
            ondelete="CASCADE",
        ),
        nullable=False,
    )
    employee_rate_override: Mapped[Decimal | None] = mapped_column(
        Numeric(9, 6), nullable=True
    )
    employer_rate_override: Mapped[Decimal | None] = mapped_column(
        Numeric(9, 6), nullable=True
    )
    minimum_salary_override: Mapped[Decimal | None] = mapped_column(nullable=True)
    maximum_salary_override: Mapped[Decimal | None] = mapped_column(nullable=True)
    employer_covers_employee_portion: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    is_taxable_if_employer_paid: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint(
            "company_id",
            "statutory_deduction_template_id",
            name="company_statutory_config_unique",
        ),
    )

    # Relationships
    company: Mapped[Company] = relationship(back_populates="statutory_configurations")
    template: Mapped[StatutoryDeductionTemplate] = relationship()

    def parameter_overrides(self) -> dict[str, Any]:
        """Rates and caps that replace the template's values."""
        overrides: dict[str, Any] = {}
        if self.employee_rate_override is not None:
            overrides["employee_rate"] = self.employee_rate_override
        if self.employer_rate_override is not None:
            overrides["employer_rate"] = self.employer_rate_override
        if self.minimum_salary_override is not None:
            overrides["minimum_salary"] = self.minimum_salary_override
        if self.maximum_salary_override is not None:
            overrides["maximum_salary"] = self.maximum_salary_override
        return overrides

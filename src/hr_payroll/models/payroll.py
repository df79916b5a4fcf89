"""Employee payroll items, payroll batches and persisted payroll lines."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hr_payroll.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from hr_payroll.models.company import Company
    from hr_payroll.models.employee import Employee
    from hr_payroll.models.templates import (
        CompanyPayrollTemplate,
        StatutoryDeductionTemplate,
    )


class ImmutableRecordError(Exception):
    """Raised when a persisted payroll line is modified or deleted."""

    def __init__(self, entity_type: str, entity_id: str, action: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.action = action
        super().__init__(f"{entity_type} {entity_id} is immutable: cannot {action}")


class EmployeePayrollItem(Base, TimestampMixin):
    """Employee-specific override or ad hoc payroll item.

    Sourced from at most one of a company template or a statutory template;
    manual items reference neither and carry a literal `amount`.
    """

    __tablename__ = "employee_payroll_item"

    employee_payroll_item_id: Mapped[UUID] = mapped_column(
        primary_key=True, default=uuid4
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    company_payroll_template_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("company_payroll_template.company_payroll_template_id"),
        nullable=True,
    )
    statutory_deduction_template_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("statutory_deduction_template.statutory_deduction_template_id"),
        nullable=True,
    )
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    item_type: Mapped[str] = mapped_column(String, nullable=False)
    calculation_method: Mapped[str] = mapped_column(String, nullable=False)
    parameters: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending_approval"
    )
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Garnishment orders (item_type = "garnishment")
    garnishment_type: Mapped[str | None] = mapped_column(String, nullable=True)
    priority_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    maximum_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    total_amount_to_garnish: Mapped[Decimal | None] = mapped_column(nullable=True)
    amount_garnished_to_date: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0")
    )
    court_order_number: Mapped[str | None] = mapped_column(String, nullable=True)
    garnishment_authority: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "company_payroll_template_id IS NULL OR statutory_deduction_template_id IS NULL",
            name="employee_item_single_source",
        ),
        CheckConstraint(
            "status IN ('pending_approval', 'active', 'suspended', 'cancelled')",
            name="employee_item_status_check",
        ),
        CheckConstraint(
            "amount IS NULL OR amount >= 0", name="employee_item_amount_non_negative"
        ),
        CheckConstraint(
            "item_type != 'garnishment' OR (garnishment_type IS NOT NULL AND garnishment_type IN "
            "('wage_garnishment', 'child_support', 'tax_levy', 'student_loan', "
            "'bankruptcy', 'other'))",
            name="employee_item_garnishment_type_check",
        ),
        CheckConstraint(
            "maximum_percentage IS NULL OR (maximum_percentage >= 0 AND maximum_percentage <= 100)",
            name="employee_item_maximum_percentage_range",
        ),
    )

    # Relationships
    employee: Mapped[Employee] = relationship(back_populates="payroll_items")
    company_template: Mapped[CompanyPayrollTemplate | None] = relationship()
    statutory_template: Mapped[StatutoryDeductionTemplate | None] = relationship()

    def is_effective_for(self, period_start: date, period_end: date) -> bool:
        """Check if the item applies to a pay period.

        Recurring items apply while their window overlaps the period;
        one-off items only in the period their effective date falls in.
        """
        if self.status != "active":
            return False
        if self.effective_from > period_end:
            return False
        if self.effective_to is not None and self.effective_to < period_start:
            return False
        if not self.is_recurring and self.effective_from < period_start:
            return False
        return True

    @property
    def remaining_to_garnish(self) -> Decimal | None:
        """Outstanding balance of a garnishment order with a total, else None."""
        if not self.total_amount_to_garnish:
            return None
        garnished = self.amount_garnished_to_date or Decimal("0")
        return max(self.total_amount_to_garnish - garnished, Decimal("0"))


class Payroll(Base, TimestampMixin):
    """Payroll batch for one company and pay period."""

    __tablename__ = "payroll"

    payroll_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    employee_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    base_salary: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_earnings: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_allowances: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0")
    )
    gross_salary: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_deductions: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0")
    )
    net_salary: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_employer_contributions: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0")
    )
    total_benefits: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_cost_to_company: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0")
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    calculation_errors: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("period_end >= period_start", name="payroll_period_order"),
        CheckConstraint(
            "status IN ('draft', 'approved', 'processed')",
            name="payroll_status_check",
        ),
    )

    # Relationships
    company: Mapped[Company] = relationship()
    items: Mapped[list[PayrollItem]] = relationship(
        back_populates="payroll", order_by="PayrollItem.line_number"
    )


class PayrollItem(Base, TimestampMixin):
    """One computed payroll line. Immutable once flushed."""

    __tablename__ = "payroll_item"

    payroll_item_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll.payroll_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=False,
    )
    calculation_id: Mapped[UUID] = mapped_column(nullable=False)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    calculation_base: Mapped[Decimal | None] = mapped_column(nullable=True)
    rate_applied: Mapped[Decimal | None] = mapped_column(Numeric(9, 6), nullable=True)
    employee_amount: Mapped[Decimal] = mapped_column(nullable=False)
    employer_amount: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0")
    )
    is_statutory: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    calculation_details: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    company_payroll_template_id: Mapped[UUID | None] = mapped_column(nullable=True)
    statutory_deduction_template_id: Mapped[UUID | None] = mapped_column(nullable=True)
    employee_payroll_item_id: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "category IN ('income', 'allowance', 'benefit', 'deduction', "
            "'employer_contribution', 'tax')",
            name="payroll_item_category_check",
        ),
        CheckConstraint(
            "employee_amount >= 0 AND employer_amount >= 0",
            name="payroll_item_amounts_non_negative",
        ),
    )

    # Relationships
    payroll: Mapped[Payroll] = relationship(back_populates="items")
    employee: Mapped[Employee] = relationship()


@event.listens_for(PayrollItem, "before_update")
def prevent_payroll_item_update(mapper, connection, target):
    """Reject any UPDATE flush of a persisted payroll line."""
    raise ImmutableRecordError("PayrollItem", str(target.payroll_item_id), "modify")


@event.listens_for(PayrollItem, "before_delete")
def prevent_payroll_item_delete(mapper, connection, target):
    """Reject any DELETE flush of a persisted payroll line."""
    raise ImmutableRecordError("PayrollItem", str(target.payroll_item_id), "delete")

"""Employee model."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hr_payroll.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from hr_payroll.models.company import Company, Department, Position
    from hr_payroll.models.payroll import EmployeePayrollItem


class Employee(Base, TimestampMixin):
    """Employee record.

    `salary` is the annual base salary; the pay frequency decides how it is
    divided into a period amount.
    """

    __tablename__ = "employee"

    employee_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_number: Mapped[str] = mapped_column(String, nullable=False)
    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False)
    salary: Mapped[Decimal] = mapped_column(nullable=False)
    pay_frequency: Mapped[str] = mapped_column(String, nullable=False, default="monthly")
    employment_type: Mapped[str] = mapped_column(
        String, nullable=False, default="full_time"
    )
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    hire_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    termination_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    department_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("department.department_id"), nullable=True
    )
    position_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("position.position_id"), nullable=True
    )
    manager_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")

    __table_args__ = (
        UniqueConstraint(
            "company_id", "employee_number", name="employee_company_number_unique"
        ),
        CheckConstraint("salary >= 0", name="employee_salary_non_negative"),
        CheckConstraint(
            "pay_frequency IN ('weekly', 'bi_weekly', 'monthly', 'quarterly', 'annually')",
            name="employee_pay_frequency_check",
        ),
        CheckConstraint(
            "status IN ('active', 'inactive', 'terminated')",
            name="employee_status_check",
        ),
    )

    # Relationships
    company: Mapped[Company] = relationship(back_populates="employees")
    department: Mapped[Department | None] = relationship()
    position: Mapped[Position | None] = relationship()
    manager: Mapped[Employee | None] = relationship(remote_side=[employee_id])
    payroll_items: Mapped[list[EmployeePayrollItem]] = relationship(
        back_populates="employee"
    )

    @property
    def full_name(self) -> str:
        """Get full name."""
        return f"{self.first_name} {self.last_name}"

    @property
    def employment_start(self) -> date | None:
        """First day of employment, falling back to the hire date."""
        return self.start_date or self.hire_date

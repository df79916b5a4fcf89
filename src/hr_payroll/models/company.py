"""Country, jurisdiction, and company organization models."""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, Date, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hr_payroll.models.base import Base, TimestampMixin, is_within

if TYPE_CHECKING:
    from hr_payroll.models.employee import Employee
    from hr_payroll.models.templates import (
        CompanyPayrollTemplate,
        CompanyStatutoryDeductionConfiguration,
        StatutoryDeductionTemplate,
    )


class Country(Base, TimestampMixin):
    """Country with its payroll regulatory framework."""

    __tablename__ = "country"

    country_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    iso_code: Mapped[str] = mapped_column(String(2), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    is_supported_for_payroll: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    # {"mandatory_deductions": ["PAYE", "UIF"], "tax_year_start": "03-01", ...}
    regulatory_framework: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )

    # Relationships
    jurisdictions: Mapped[list[TaxJurisdiction]] = relationship(
        back_populates="country"
    )

    @property
    def mandatory_deduction_codes(self) -> list[str]:
        """Deduction codes the country requires every payroll to carry."""
        return list((self.regulatory_framework or {}).get("mandatory_deductions", []))


class TaxJurisdiction(Base, TimestampMixin):
    """Tax authority scope for a country (optionally a region) and tax year."""

    __tablename__ = "tax_jurisdiction"

    tax_jurisdiction_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    country_id: Mapped[UUID] = mapped_column(
        ForeignKey("country.country_id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    region_code: Mapped[str | None] = mapped_column(String, nullable=True)
    tax_year_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    tax_year_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Relationships
    country: Mapped[Country] = relationship(back_populates="jurisdictions")
    statutory_templates: Mapped[list[StatutoryDeductionTemplate]] = relationship(
        back_populates="jurisdiction"
    )

    def is_active_on(self, as_of_date: date) -> bool:
        """Check if jurisdiction is in force on a given date."""
        return self.is_active and is_within(
            as_of_date, self.effective_from, self.effective_to
        )


class Company(Base, TimestampMixin):
    """Employing company (tenant)."""

    __tablename__ = "company"

    company_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    registration_number: Mapped[str | None] = mapped_column(String, nullable=True)
    country_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("country.country_id"),
        nullable=True,
    )
    region_code: Mapped[str | None] = mapped_column(String, nullable=True)

    # Relationships
    country: Mapped[Country | None] = relationship()
    departments: Mapped[list[Department]] = relationship(back_populates="company")
    positions: Mapped[list[Position]] = relationship(back_populates="company")
    employees: Mapped[list[Employee]] = relationship(back_populates="company")
    payroll_templates: Mapped[list[CompanyPayrollTemplate]] = relationship(
        back_populates="company"
    )
    statutory_configurations: Mapped[
        list[CompanyStatutoryDeductionConfiguration]
    ] = relationship(back_populates="company")


class Department(Base, TimestampMixin):
    """Department within a company."""

    __tablename__ = "department"

    department_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("company_id", "code", name="department_company_code_unique"),
    )

    # Relationships
    company: Mapped[Company] = relationship(back_populates="departments")


class Position(Base, TimestampMixin):
    """Job position within a company."""

    __tablename__ = "position"

    position_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("company_id", "code", name="position_company_code_unique"),
    )

    # Relationships
    company: Mapped[Company] = relationship(back_populates="positions")

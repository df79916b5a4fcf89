"""Payroll service - persistence and lifecycle of payroll batches."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterable
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from hr_payroll.calculators.line_builder import LineItemBuilder, PayrollInvariantError
from hr_payroll.calculators.types import ZERO, ItemStatus, ItemType
from hr_payroll.config import Settings, get_settings
from hr_payroll.models import Company, EmployeePayrollItem, Payroll, PayrollItem
from hr_payroll.services.state_machine import (
    PayrollItemStateMachine,
    PayrollStateMachine,
    PayrollStatus,
)

if TYPE_CHECKING:
    from hr_payroll.calculators.types import PayrollCalculation, PayrollLine

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PayrollService:
    """Service for persisting payroll calculations and managing their lifecycle.

    Operations:
    - create_payroll_records: persist a Payroll header and its lines, all or nothing
    - approve_payroll: draft → approved, recording the approver
    - process_payroll: approved → processed (terminal), recording garnished amounts
    - approve/suspend/resume/cancel_payroll_item: employee item status

    Transitions are guarded by a conditional UPDATE on the expected status;
    a caller that loses a race, or asks from the wrong status, gets False and
    nothing changes.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    async def get_payroll(self, payroll_id: UUID, load_items: bool = False) -> Payroll | None:
        """Load a payroll with optional items."""
        options = [selectinload(Payroll.items)] if load_items else []
        result = await self.session.execute(
            select(Payroll).where(Payroll.payroll_id == payroll_id).options(*options)
        )
        return result.scalar_one_or_none()

    async def create_payroll_records(
        self,
        company: Company | UUID,
        calculations: Iterable[PayrollCalculation],
        period_start: date,
        period_end: date,
        created_by: UUID | None = None,
    ) -> Payroll:
        """Persist a draft Payroll and one PayrollItem per computed line.

        Raises PayrollInvariantError if any calculation does not reconcile or
        belongs to another company or period; nothing is written in that case.
        """
        company_id = company.company_id if isinstance(company, Company) else company
        calculations = list(calculations)
        self._validate_calculations(company_id, calculations, period_start, period_end)

        payroll_id = uuid4()
        totals = self._totals(calculations)
        payroll = Payroll(
            payroll_id=payroll_id,
            company_id=company_id,
            period_start=period_start,
            period_end=period_end,
            employee_count=len(calculations),
            status=PayrollStatus.DRAFT.value,
            calculation_errors=[
                {"employee_id": str(c.employee_id), "errors": list(c.errors)}
                for c in calculations
                if c.errors
            ],
            created_by=created_by,
            **totals,
        )

        items: list[PayrollItem] = []
        for calculation in calculations:
            for line in calculation.lines:
                items.append(
                    self._build_item(payroll_id, calculation, line, line_number=len(items) + 1)
                )

        try:
            self.session.add(payroll)
            self.session.add_all(items)
            await asyncio.wait_for(
                self.session.flush(), timeout=self.settings.io_timeout_seconds
            )
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Created payroll %s for company %s (%s..%s): %d employees, %d lines",
            payroll_id,
            company_id,
            period_start,
            period_end,
            len(calculations),
            len(items),
        )
        return payroll

    def _validate_calculations(
        self,
        company_id: UUID,
        calculations: list[PayrollCalculation],
        period_start: date,
        period_end: date,
    ) -> None:
        for calculation in calculations:
            problems = LineItemBuilder.check_invariants(calculation)
            if calculation.company_id != company_id:
                problems.append(f"belongs to company {calculation.company_id}")
            if (calculation.period_start, calculation.period_end) != (period_start, period_end):
                problems.append(
                    f"calculated for {calculation.period_start}..{calculation.period_end}"
                )
            if problems:
                raise PayrollInvariantError(calculation.employee_id, problems)

    def _totals(self, calculations: list[PayrollCalculation]) -> dict[str, Decimal]:
        fields = (
            "base_salary",
            "total_earnings",
            "total_allowances",
            "gross_salary",
            "total_deductions",
            "net_salary",
            "total_employer_contributions",
            "total_benefits",
            "total_cost_to_company",
        )
        return {
            name: LineItemBuilder.round_to_cents(
                sum((getattr(c, name) for c in calculations), ZERO)
            )
            for name in fields
        }

    def _build_item(
        self,
        payroll_id: UUID,
        calculation: PayrollCalculation,
        line: PayrollLine,
        line_number: int,
    ) -> PayrollItem:
        details: dict[str, Any] = {
            **line.details,
            "source": line.source.value,
            "line_hash": LineItemBuilder.compute_line_hash(line),
        }
        return PayrollItem(
            payroll_id=payroll_id,
            employee_id=calculation.employee_id,
            calculation_id=calculation.calculation_id,
            line_number=line_number,
            code=line.code,
            name=line.name,
            category=line.category.value,
            calculation_base=line.calculation_base,
            rate_applied=line.rate_applied,
            employee_amount=line.employee_amount,
            employer_amount=line.employer_amount,
            is_statutory=line.is_statutory,
            is_taxable=line.is_taxable,
            calculation_details=details,
            company_payroll_template_id=line.company_payroll_template_id,
            statutory_deduction_template_id=line.statutory_deduction_template_id,
            employee_payroll_item_id=line.employee_payroll_item_id,
        )

    # === Payroll lifecycle ===

    async def approve_payroll(self, payroll: Payroll, approver_id: UUID) -> bool:
        """Approve a draft payroll. Returns False if it is not in draft."""
        return await self._transition(
            payroll,
            PayrollStatus.APPROVED,
            approved_by=approver_id,
            approved_at=_utcnow(),
        )

    async def process_payroll(self, payroll: Payroll) -> bool:
        """Mark an approved payroll processed. Returns False if it is not approved.

        Processing also adds each garnishment line to its order's amount
        garnished to date.
        """
        if not await self._transition(
            payroll, PayrollStatus.PROCESSED, processed_at=_utcnow()
        ):
            return False
        await self._record_garnishments(payroll.payroll_id)
        return True

    async def _record_garnishments(self, payroll_id: UUID) -> None:
        result = await self.session.execute(
            select(
                PayrollItem.employee_payroll_item_id,
                func.sum(PayrollItem.employee_amount),
            )
            .join(
                EmployeePayrollItem,
                EmployeePayrollItem.employee_payroll_item_id
                == PayrollItem.employee_payroll_item_id,
            )
            .where(
                PayrollItem.payroll_id == payroll_id,
                EmployeePayrollItem.item_type == ItemType.GARNISHMENT.value,
            )
            .group_by(PayrollItem.employee_payroll_item_id)
        )
        for item_id, amount in result.all():
            await self.session.execute(
                update(EmployeePayrollItem)
                .where(EmployeePayrollItem.employee_payroll_item_id == item_id)
                .values(
                    amount_garnished_to_date=EmployeePayrollItem.amount_garnished_to_date
                    + amount
                )
                .execution_options(synchronize_session=False)
            )
            logger.info(
                "Garnishment %s: %s garnished by payroll %s", item_id, amount, payroll_id
            )

    async def _transition(
        self, payroll: Payroll, to_status: PayrollStatus, **values: Any
    ) -> bool:
        expected = PayrollStateMachine.required_source(to_status)
        result = await self.session.execute(
            update(Payroll)
            .where(
                Payroll.payroll_id == payroll.payroll_id,
                Payroll.status == expected,
            )
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info(
                "Rejected payroll %s transition to %s: not in status %s",
                payroll.payroll_id,
                to_status.value,
                expected.value if expected else None,
            )
            return False

        set_committed_value(payroll, "status", to_status.value)
        for key, value in values.items():
            set_committed_value(payroll, key, value)
        logger.info(
            "Payroll %s transitioned %s -> %s", payroll.payroll_id, expected.value, to_status.value
        )
        return True

    # === Employee payroll item lifecycle ===

    async def approve_payroll_item(self, item: EmployeePayrollItem, approver_id: UUID) -> bool:
        """Approve a pending item so the engine starts applying it."""
        return await self._transition_item(
            item,
            ItemStatus.ACTIVE,
            [ItemStatus.PENDING_APPROVAL.value],
            approved_by=approver_id,
            approved_at=_utcnow(),
        )

    async def suspend_payroll_item(self, item: EmployeePayrollItem) -> bool:
        return await self._transition_item(
            item, ItemStatus.SUSPENDED, [ItemStatus.ACTIVE.value]
        )

    async def resume_payroll_item(self, item: EmployeePayrollItem) -> bool:
        return await self._transition_item(
            item, ItemStatus.ACTIVE, [ItemStatus.SUSPENDED.value]
        )

    async def cancel_payroll_item(self, item: EmployeePayrollItem) -> bool:
        return await self._transition_item(
            item,
            ItemStatus.CANCELLED,
            PayrollItemStateMachine.sources_for(ItemStatus.CANCELLED),
        )

    async def _transition_item(
        self,
        item: EmployeePayrollItem,
        to_status: ItemStatus,
        from_statuses: list[str],
        **values: Any,
    ) -> bool:
        result = await self.session.execute(
            update(EmployeePayrollItem)
            .where(
                EmployeePayrollItem.employee_payroll_item_id == item.employee_payroll_item_id,
                EmployeePayrollItem.status.in_(from_statuses),
            )
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info(
                "Rejected payroll item %s transition to %s",
                item.employee_payroll_item_id,
                to_status.value,
            )
            return False

        set_committed_value(item, "status", to_status.value)
        for key, value in values.items():
            set_committed_value(item, key, value)
        return True

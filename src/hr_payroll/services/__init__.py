"""Payroll lifecycle services."""

from hr_payroll.services.payroll_service import PayrollService
from hr_payroll.services.reporting_lines import (
    ReportingCycleError,
    find_cycles,
    management_chain,
    would_create_cycle,
)
from hr_payroll.services.state_machine import (
    PayrollItemStateMachine,
    PayrollStateMachine,
    PayrollStatus,
)

__all__ = [
    "PayrollService",
    "ReportingCycleError",
    "find_cycles",
    "management_chain",
    "would_create_cycle",
    "PayrollItemStateMachine",
    "PayrollStateMachine",
    "PayrollStatus",
]

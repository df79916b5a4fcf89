"""Payroll and employee payroll item state machines."""

from __future__ import annotations

from enum import Enum

from hr_payroll.calculators.types import ItemStatus


class PayrollStatus(str, Enum):
    """Payroll status values."""

    DRAFT = "draft"
    APPROVED = "approved"
    PROCESSED = "processed"


class PayrollStateMachine:
    """State machine for payroll status transitions.

    Allowed transitions:
    - draft → approved
    - approved → processed

    Processed is terminal; there are no backward transitions.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayrollStatus.DRAFT: [PayrollStatus.APPROVED],
        PayrollStatus.APPROVED: [PayrollStatus.PROCESSED],
        PayrollStatus.PROCESSED: [],  # Terminal state
    }

    @classmethod
    def required_source(cls, to_status: str) -> str | None:
        """The single status a payroll must be in to move to ``to_status``."""
        for from_status, targets in cls.VALID_TRANSITIONS.items():
            if to_status in targets:
                return from_status
        return None


class PayrollItemStateMachine:
    """State machine for employee payroll item status.

    - pending_approval → active (approval)
    - active ↔ suspended
    - any non-cancelled status → cancelled (terminal)
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        ItemStatus.PENDING_APPROVAL: [ItemStatus.ACTIVE, ItemStatus.CANCELLED],
        ItemStatus.ACTIVE: [ItemStatus.SUSPENDED, ItemStatus.CANCELLED],
        ItemStatus.SUSPENDED: [ItemStatus.ACTIVE, ItemStatus.CANCELLED],
        ItemStatus.CANCELLED: [],
    }

    @classmethod
    def sources_for(cls, to_status: str) -> list[str]:
        """Every status from which ``to_status`` is reachable."""
        return [
            from_status.value
            for from_status, targets in cls.VALID_TRANSITIONS.items()
            if to_status in targets
        ]

"""Reporting-line (manager graph) traversal and cycle detection.

Walks are iterative over stable employee ids with a visited set and a depth
bound, so a corrupted graph can never recurse without end.
"""

from __future__ import annotations

from typing import Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hr_payroll.models import Employee

DEFAULT_MAX_DEPTH = 64

ManagerMap = Mapping[UUID, "UUID | None"]


class ReportingCycleError(Exception):
    """Raised when a management chain loops back on itself or runs too deep."""

    def __init__(self, employee_id: UUID, path: list[UUID], reason: str):
        self.employee_id = employee_id
        self.path = path
        self.reason = reason
        super().__init__(f"Reporting line of {employee_id} is invalid: {reason}")


def management_chain(
    employee_id: UUID, manager_map: ManagerMap, max_depth: int = DEFAULT_MAX_DEPTH
) -> list[UUID]:
    """Managers above ``employee_id``, nearest first.

    Raises ReportingCycleError on a cycle or when the chain exceeds max_depth.
    """
    chain: list[UUID] = []
    visited = {employee_id}
    current = manager_map.get(employee_id)
    while current is not None:
        if current in visited:
            raise ReportingCycleError(employee_id, chain + [current], "cycle detected")
        if len(chain) >= max_depth:
            raise ReportingCycleError(employee_id, chain, f"deeper than {max_depth} levels")
        visited.add(current)
        chain.append(current)
        current = manager_map.get(current)
    return chain


def would_create_cycle(
    employee_id: UUID,
    proposed_manager_id: UUID | None,
    manager_map: ManagerMap,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> bool:
    """Whether assigning ``proposed_manager_id`` as manager would close a loop.

    A chain that is already cyclic or too deep above the proposed manager
    also counts, since the assignment could not be verified.
    """
    if proposed_manager_id is None:
        return False
    if proposed_manager_id == employee_id:
        return True
    try:
        chain = management_chain(proposed_manager_id, manager_map, max_depth)
    except ReportingCycleError:
        return True
    return employee_id in chain or len(chain) >= max_depth


def find_cycles(manager_map: ManagerMap) -> list[list[UUID]]:
    """Every distinct cycle in the graph, each listed once from its smallest id."""
    cycles: list[list[UUID]] = []
    seen_in_cycle: set[UUID] = set()
    done: set[UUID] = set()

    for start in manager_map:
        if start in done:
            continue
        path: list[UUID] = []
        position: dict[UUID, int] = {}
        current: UUID | None = start
        while current is not None and current not in done:
            if current in position:
                loop = path[position[current]:]
                if not seen_in_cycle.intersection(loop):
                    pivot = loop.index(min(loop, key=str))
                    cycles.append(loop[pivot:] + loop[:pivot])
                    seen_in_cycle.update(loop)
                break
            position[current] = len(path)
            path.append(current)
            current = manager_map.get(current)
        done.update(path)
    return cycles


async def load_manager_map(session: AsyncSession, company_id: UUID) -> dict[UUID, UUID | None]:
    """Employee id -> manager id for every employee of a company."""
    result = await session.execute(
        select(Employee.employee_id, Employee.manager_id).where(
            Employee.company_id == company_id
        )
    )
    return {row.employee_id: row.manager_id for row in result}

"""
Drop validation.
Pre-flight check of a proposed move before any store call is made.
"""

from datetime import date
from typing import Iterable

from .types import Allocation, Employee, DropValidationResult


ALLOCATION_NOT_FOUND = "Allocation not found"
EMPLOYEE_NOT_FOUND = "Target employee not found"
SLOT_TAKEN = "Time slot already allocated"


def validate_drop(
    allocation_id: int,
    target_employee_id: int,
    target_date: date,
    allocations: Iterable[Allocation],
    employees: Iterable[Employee],
) -> DropValidationResult:
    """
    Check whether an allocation can be dropped onto an employee's date.

    Advisory only: the store may still reject the update.
    """
    allocs = list(allocations)

    if not any(a.id == allocation_id for a in allocs):
        return DropValidationResult(is_valid=False, reason=ALLOCATION_NOT_FOUND)

    if not any(e.id == target_employee_id for e in employees):
        return DropValidationResult(is_valid=False, reason=EMPLOYEE_NOT_FOUND)

    slot_taken = any(
        a.id != allocation_id
        and a.employee_id == target_employee_id
        and a.covers(target_date)
        for a in allocs
    )
    if slot_taken:
        return DropValidationResult(is_valid=False, reason=SLOT_TAKEN)

    return DropValidationResult(is_valid=True)

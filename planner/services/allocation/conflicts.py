"""
Conflict detection over an allocation set.
Handles time overlaps between an employee's allocations and capacity overallocation.
"""

from collections import defaultdict
from datetime import date
from typing import Iterable

from .types import (
    Allocation,
    Employee,
    Conflict,
    ConflictType,
    ConflictSeverity,
)


SEVERITY_BY_TYPE = {
    ConflictType.TIME_OVERLAP: ConflictSeverity.HIGH,
    ConflictType.OVERALLOCATION: ConflictSeverity.MEDIUM,
}


def date_ranges_overlap(
    start1: date, end1: date,
    start2: date, end2: date
) -> bool:
    """Check if two date ranges overlap. Touching on a single day counts."""
    return start1 <= end2 and end1 >= start2


def conflict_id(conflict_type: ConflictType, allocation_ids: Iterable[int]) -> str:
    """Stable id built from the conflict kind and the sorted participant ids."""
    joined = "-".join(str(i) for i in sorted(allocation_ids))
    return f"{conflict_type.value}:{joined}"


def group_by_employee(allocations: Iterable[Allocation]) -> dict[int, list[Allocation]]:
    buckets: dict[int, list[Allocation]] = defaultdict(list)
    for alloc in allocations:
        buckets[alloc.employee_id].append(alloc)
    return buckets


def _label(employee_id: int, employee_map: dict[int, Employee]) -> str:
    employee = employee_map.get(employee_id)
    return employee.name if employee else str(employee_id)


def find_time_overlaps(
    allocations: list[Allocation],
    employee_map: dict[int, Employee],
) -> list[Conflict]:
    """
    Every unordered pair of same-employee allocations whose ranges overlap.

    Each employee's allocations are sorted by start date, so the inner scan can
    stop at the first allocation starting after the current one ends.
    """
    conflicts = []
    for employee_id, employee_allocs in group_by_employee(allocations).items():
        ordered = sorted(employee_allocs, key=lambda a: (a.start_date, a.end_date, a.id))
        for i, alloc in enumerate(ordered):
            for other in ordered[i + 1:]:
                if other.start_date > alloc.end_date:
                    break
                ids = (alloc.id, other.id)
                conflicts.append(Conflict(
                    id=conflict_id(ConflictType.TIME_OVERLAP, ids),
                    type=ConflictType.TIME_OVERLAP,
                    affected_allocations=tuple(sorted(ids)),
                    message=f"Overlapping allocations for employee {_label(employee_id, employee_map)}",
                    severity=SEVERITY_BY_TYPE[ConflictType.TIME_OVERLAP],
                ))
    return conflicts


def calculate_employee_hours(allocations: Iterable[Allocation]) -> dict[int, float]:
    """Total allocated hours per employee across the whole set."""
    hours: dict[int, float] = defaultdict(float)
    for alloc in allocations:
        hours[alloc.employee_id] += alloc.allocated_hours
    return dict(hours)


def find_overallocations(
    allocations: list[Allocation],
    employee_map: dict[int, Employee],
) -> list[Conflict]:
    """
    One conflict per allocation of every employee whose summed hours exceed
    their weekly capacity. Allocations of unknown employees are skipped.
    """
    totals = calculate_employee_hours(allocations)
    conflicts = []
    for alloc in allocations:
        employee = employee_map.get(alloc.employee_id)
        if employee is None:
            continue
        total = totals[alloc.employee_id]
        capacity = employee.capacity
        if total <= capacity:
            continue
        conflicts.append(Conflict(
            id=conflict_id(ConflictType.OVERALLOCATION, [alloc.id]),
            type=ConflictType.OVERALLOCATION,
            affected_allocations=(alloc.id,),
            message=f"Employee {employee.name} over-allocated ({total:g}h/{capacity:g}h capacity)",
            severity=SEVERITY_BY_TYPE[ConflictType.OVERALLOCATION],
        ))
    return conflicts


def detect_conflicts(
    allocations: Iterable[Allocation],
    employees: Iterable[Employee],
) -> list[Conflict]:
    """
    Detect all scheduling conflicts in an allocation set.

    Pure and deterministic: the result is sorted by conflict id, so the same
    set of allocations yields the same list regardless of input order.
    """
    allocs = list(allocations)
    employee_map = {e.id: e for e in employees}

    conflicts = find_time_overlaps(allocs, employee_map)
    conflicts.extend(find_overallocations(allocs, employee_map))

    return sorted(conflicts, key=lambda c: c.id)

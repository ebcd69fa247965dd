"""
Resource lane aggregation and calendar columns for the scheduler view.
"""

import calendar
from datetime import date, timedelta
from typing import Iterable, Optional

from .types import Allocation, Employee, ResourceLane, TimeSlot


VIEW_MODES = ("week", "month", "quarter")


def utilization_pct(total_hours: float, capacity: float) -> int:
    """Raw utilization, may exceed 100. Zero capacity reports 0."""
    if capacity <= 0:
        return 0
    return round(total_hours / capacity * 100)


def compute_lanes(
    employees: Iterable[Employee],
    allocations: Iterable[Allocation],
) -> list[ResourceLane]:
    """One lane per employee, including employees with no allocations."""
    allocs = list(allocations)
    lanes = []
    for employee in employees:
        employee_allocs = [a for a in allocs if a.employee_id == employee.id]
        total_hours = sum(a.allocated_hours for a in employee_allocs)
        capacity = employee.capacity
        lanes.append(ResourceLane(
            employee=employee,
            allocations=employee_allocs,
            total_hours=total_hours,
            capacity=capacity,
            utilization=utilization_pct(total_hours, capacity),
        ))
    return lanes


def view_window(selected_date: date, view_mode: str) -> tuple[date, date]:
    """First and last calendar day shown for a view mode."""
    if view_mode == "week":
        start = selected_date - timedelta(days=selected_date.weekday())
        return start, start + timedelta(days=6)

    if view_mode == "month":
        last_day = calendar.monthrange(selected_date.year, selected_date.month)[1]
        return selected_date.replace(day=1), selected_date.replace(day=last_day)

    if view_mode == "quarter":
        first_month = 3 * ((selected_date.month - 1) // 3) + 1
        last_month = first_month + 2
        last_day = calendar.monthrange(selected_date.year, last_month)[1]
        return (
            date(selected_date.year, first_month, 1),
            date(selected_date.year, last_month, last_day),
        )

    raise ValueError(f"Unknown view mode: {view_mode}")


def build_time_slots(
    selected_date: date,
    view_mode: str = "week",
    today: Optional[date] = None,
) -> list[TimeSlot]:
    today = today or date.today()
    start, end = view_window(selected_date, view_mode)

    slots = []
    current = start
    while current <= end:
        slots.append(TimeSlot(
            date=current,
            is_weekend=current.weekday() >= 5,
            is_today=current == today,
        ))
        current += timedelta(days=1)
    return slots

"""
Seed script for the resource planner development database.

- 4 employees (one part-time, one with no capacity on record)
- 3 projects
- Allocations for the current week, including one overlapping pair and one
  over-capacity employee so the conflict list is not empty

Run with: python -m scripts.seed_data
"""

import asyncio
from datetime import date, timedelta

from sqlalchemy import delete
from sqlalchemy.orm import Session

from planner.core.logging import configure_logging
from planner.db.database import Base, SessionLocal, engine
from planner.db.models.employees import Employees
from planner.db.models.projects import Projects
from planner.db.models.allocations import Allocations, AllocationStatus
from planner.services.allocation import (
    SchedulingEngine,
    SqlAllocationStore,
    load_employees,
    load_projects,
)


def clear_tables(db: Session) -> None:
    """Delete all rows, children first."""
    for model in (Allocations, Projects, Employees):
        db.execute(delete(model))
    db.commit()


def get_current_week_monday() -> date:
    today = date.today()
    return today - timedelta(days=today.weekday())


def seed_employees(db: Session) -> None:
    employees = [
        Employees(id=1, first_name="Alice", last_name="Moreau", weekly_capacity_hours=40),
        Employees(id=2, first_name="Bob", last_name="Okafor", weekly_capacity_hours=40),
        Employees(id=3, first_name="Carol", last_name="Lindqvist", weekly_capacity_hours=24),
        Employees(id=4, first_name="David", last_name="Tanaka", weekly_capacity_hours=None),
    ]
    db.add_all(employees)
    db.commit()


def seed_projects(db: Session) -> None:
    db.add_all([
        Projects(id=1, name="Billing Platform Migration"),
        Projects(id=2, name="Mobile App Redesign"),
        Projects(id=3, name="Data Warehouse"),
    ])
    db.commit()


def seed_allocations(db: Session, monday: date) -> None:
    def day(offset: int) -> date:
        return monday + timedelta(days=offset)

    db.add_all([
        # Alice: Mon-Wed and Wed-Fri overlap on Wednesday, 48h > 40h
        Allocations(employee_id=1, project_id=1, start_date=day(0), end_date=day(2),
                    allocated_hours=24, role="Backend Engineer", status=AllocationStatus.ACTIVE),
        Allocations(employee_id=1, project_id=2, start_date=day(2), end_date=day(4),
                    allocated_hours=24, role="Backend Engineer", status=AllocationStatus.ACTIVE),
        # Bob: fully booked, no conflicts
        Allocations(employee_id=2, project_id=2, start_date=day(0), end_date=day(4),
                    allocated_hours=40, role="Designer", status=AllocationStatus.ACTIVE),
        # Carol: part-time, planned work next week
        Allocations(employee_id=3, project_id=3, start_date=day(7), end_date=day(9),
                    allocated_hours=16, role="Analyst", status=AllocationStatus.PLANNED,
                    notes="Pending data access"),
    ])
    db.commit()


def seed_all(db: Session, monday: date) -> None:
    clear_tables(db)
    seed_employees(db)
    seed_projects(db)
    seed_allocations(db, monday)


def main():
    configure_logging()
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        monday = get_current_week_monday()
        print(f"Seeding week of {monday}...")
        seed_all(db, monday)

        scheduler = SchedulingEngine(SqlAllocationStore(db), load_employees(db), load_projects(db))
        asyncio.run(scheduler.refresh())

        print("\n" + "=" * 50)
        print("Seeding complete!")
        print("=" * 50)
        print("\nResource lanes:")
        for lane in scheduler.resource_lanes:
            print(f"  {lane.employee_name:<20} {lane.total_hours:>5g}h / {lane.capacity:g}h  ({lane.utilization}%)")
        print("\nConflicts:")
        for conflict in scheduler.conflicts:
            print(f"  [{conflict.severity.value}] {conflict.message}")
        print("=" * 50 + "\n")

    except Exception as e:
        db.rollback()
        print(f"\nError during seeding: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()

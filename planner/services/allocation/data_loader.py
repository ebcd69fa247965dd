"""
Data loader for the allocation engine.
Fetches the read-only reference data from the database and converts to internal types.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from planner.db.models.employees import Employees
from planner.db.models.projects import Projects

from .types import Employee, Project


def load_employees(db: Session) -> list[Employee]:
    """Load active employees ordered by id."""
    stmt = select(Employees).where(Employees.is_active == True).order_by(Employees.id)
    rows = db.execute(stmt).scalars().all()
    return [
        Employee(
            id=row.id,
            first_name=row.first_name,
            last_name=row.last_name,
            weekly_capacity=row.weekly_capacity_hours,
        )
        for row in rows
    ]


def load_projects(db: Session) -> list[Project]:
    stmt = select(Projects).order_by(Projects.id)
    rows = db.execute(stmt).scalars().all()
    return [Project(id=row.id, name=row.name) for row in rows]

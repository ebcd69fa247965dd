from planner.db.database import Base

# Import models
from planner.db.models.employees import Employees
from planner.db.models.projects import Projects
from planner.db.models.allocations import Allocations, AllocationStatus

__all__ = [
    "Base",
    # Models
    "Employees",
    "Projects",
    "Allocations",
    # Enums
    "AllocationStatus",
]

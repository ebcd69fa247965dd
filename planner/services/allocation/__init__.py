"""
Allocation scheduling engine package.

Usage:
    import asyncio
    from planner.db.database import SessionLocal
    from planner.services.allocation import (
        SchedulingEngine, SqlAllocationStore, load_employees, load_projects,
    )

    db = SessionLocal()
    store = SqlAllocationStore(db)
    engine = SchedulingEngine(store, load_employees(db), load_projects(db))
    asyncio.run(engine.refresh())

    ok = asyncio.run(engine.move(allocation_id=3, target_employee_id=2, target_date="2025-03-10"))
    for conflict in engine.conflicts:
        print(conflict.message)
"""

from .types import (
    Allocation,
    AllocationStatus,
    Employee,
    Project,
    Conflict,
    ConflictType,
    ConflictSeverity,
    ResourceLane,
    Operation,
    OperationType,
    SelectionState,
    SelectionMode,
    DropValidationResult,
    BulkOperationResult,
    BulkItemError,
    NotificationKind,
    EngineState,
    TimeSlot,
)
from .exceptions import SchedulingError, ValidationError, PersistenceError, NotFoundError
from .conflicts import detect_conflicts, date_ranges_overlap
from .validation import validate_drop
from .lanes import compute_lanes, build_time_slots
from .history import OperationLog
from .store import AllocationStore, InMemoryAllocationStore, SqlAllocationStore
from .notifications import NotificationSink, LoggingNotificationSink
from .data_loader import load_employees, load_projects
from .engine import SchedulingEngine

__all__ = [
    # Types
    "Allocation",
    "AllocationStatus",
    "Employee",
    "Project",
    "Conflict",
    "ConflictType",
    "ConflictSeverity",
    "ResourceLane",
    "Operation",
    "OperationType",
    "SelectionState",
    "SelectionMode",
    "DropValidationResult",
    "BulkOperationResult",
    "BulkItemError",
    "NotificationKind",
    "EngineState",
    "TimeSlot",
    # Errors
    "SchedulingError",
    "ValidationError",
    "PersistenceError",
    "NotFoundError",
    # Main entry point
    "SchedulingEngine",
    # Collaborators
    "AllocationStore",
    "InMemoryAllocationStore",
    "SqlAllocationStore",
    "NotificationSink",
    "LoggingNotificationSink",
    "load_employees",
    "load_projects",
    # Lower-level functions
    "detect_conflicts",
    "date_ranges_overlap",
    "validate_drop",
    "compute_lanes",
    "build_time_slots",
    "OperationLog",
]

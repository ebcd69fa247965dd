"""
Internal data types for the allocation engine.
decoupled from SQLAlchemy models and pydantic schemas for cleaner logic.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional

from planner.core.config import settings


class AllocationStatus(str, Enum):
    PLANNED = "planned"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ConflictType(str, Enum):
    TIME_OVERLAP = "time_overlap"
    OVERALLOCATION = "overallocation"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MOVE = "move"


class SelectionMode(str, Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"


class NotificationKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class EngineState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    PERSISTING = "persisting"
    APPLYING = "applying"
    FAILED = "failed"


# Fields a caller may write through the store; id and timestamps are store-owned.
WRITABLE_FIELDS = (
    "employee_id",
    "project_id",
    "start_date",
    "end_date",
    "allocated_hours",
    "role",
    "status",
    "is_active",
    "notes",
)


@dataclass(frozen=True)
class Allocation:
    """A time-bounded commitment of an employee's hours to a project."""
    id: int
    employee_id: int
    project_id: int
    start_date: date
    end_date: date
    allocated_hours: float
    role: str = ""
    status: AllocationStatus = AllocationStatus.ACTIVE
    is_active: bool = True
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def duration_days(self) -> int:
        return (self.end_date - self.start_date).days

    def covers(self, day: date) -> bool:
        """Inclusive at both ends."""
        return self.start_date <= day <= self.end_date

    def to_fields(self) -> dict:
        return {name: getattr(self, name) for name in WRITABLE_FIELDS}


@dataclass(frozen=True)
class Employee:
    id: int
    first_name: str
    last_name: str = ""
    weekly_capacity: Optional[float] = None

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def capacity(self) -> float:
        # None means no figure on record, 0 is a real capacity
        if self.weekly_capacity is None:
            return settings.DEFAULT_WEEKLY_CAPACITY
        return self.weekly_capacity


@dataclass(frozen=True)
class Project:
    id: int
    name: str


@dataclass(frozen=True)
class Conflict:
    """A derived finding; recomputed wholesale, never persisted."""
    id: str
    type: ConflictType
    affected_allocations: tuple[int, ...]
    message: str
    severity: ConflictSeverity
    can_auto_resolve: bool = False


@dataclass
class ResourceLane:
    employee: Employee
    allocations: list[Allocation]
    total_hours: float
    capacity: float
    utilization: int

    @property
    def employee_id(self) -> int:
        return self.employee.id

    @property
    def employee_name(self) -> str:
        return self.employee.name


@dataclass(frozen=True)
class Operation:
    """One applied mutation in the undo/redo history."""
    type: OperationType
    allocation_ids: tuple[int, ...]
    old_data: tuple[Allocation, ...] = ()
    new_data: tuple[Allocation, ...] = ()
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class SelectionState:
    selected_allocations: set[int] = field(default_factory=set)
    selection_mode: SelectionMode = SelectionMode.SINGLE


@dataclass(frozen=True)
class DropValidationResult:
    is_valid: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class BulkItemError:
    allocation_id: int
    error: str


@dataclass
class BulkOperationResult:
    successful: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    errors: list[BulkItemError] = field(default_factory=list)


@dataclass(frozen=True)
class TimeSlot:
    """One calendar column of the scheduler view."""
    date: date
    is_weekend: bool
    is_today: bool

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, model_validator
from datetime import date, datetime
from typing import Any, Optional
from planner.services.allocation.types import Allocation, AllocationStatus


class AllocationBase(BaseModel):
    employee_id: int
    project_id: int
    start_date: date
    end_date: date
    allocated_hours: float = Field(ge=0)
    role: str = ""
    status: AllocationStatus = AllocationStatus.ACTIVE
    is_active: bool = True
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_date_order(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self


class AllocationCreate(AllocationBase):
    pass


class AllocationUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    employee_id: Optional[int] = None
    project_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    allocated_hours: Optional[float] = Field(default=None, ge=0)
    role: Optional[str] = None
    status: Optional[AllocationStatus] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_date_order(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self


class AllocationResponse(AllocationBase):
    id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AllocationIn(BaseModel):
    """
    Normalizes either upstream allocation shape into the canonical one.

    Accepts camelCase or snake_case keys, `hours` for `allocatedHours`,
    `roleOnProject` for `role`, and a single `date` in place of a range.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    employee_id: int = Field(validation_alias=AliasChoices("employee_id", "employeeId"))
    project_id: int = Field(validation_alias=AliasChoices("project_id", "projectId"))
    start_date: Optional[date] = Field(default=None, validation_alias=AliasChoices("start_date", "startDate"))
    end_date: Optional[date] = Field(default=None, validation_alias=AliasChoices("end_date", "endDate"))
    day: Optional[date] = Field(default=None, validation_alias=AliasChoices("date", "day"))
    allocated_hours: float = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("allocated_hours", "allocatedHours", "hours"),
    )
    role: str = Field(default="", validation_alias=AliasChoices("role", "roleOnProject", "role_on_project"))
    status: AllocationStatus = AllocationStatus.ACTIVE
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive"))
    notes: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("created_at", "createdAt"))
    updated_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("updated_at", "updatedAt"))

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        # upstream sends explicit nulls for absent optional fields
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    @model_validator(mode="after")
    def resolve_range(self):
        if self.start_date is None:
            self.start_date = self.day
        if self.end_date is None:
            self.end_date = self.day or self.start_date
        if self.start_date is None:
            raise ValueError("start_date or date is required")
        if self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self

    def to_allocation(self) -> Allocation:
        return Allocation(
            id=self.id,
            employee_id=self.employee_id,
            project_id=self.project_id,
            start_date=self.start_date,
            end_date=self.end_date,
            allocated_hours=self.allocated_hours,
            role=self.role,
            status=self.status,
            is_active=self.is_active,
            notes=self.notes,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


def normalize_allocation(raw: Any) -> Allocation:
    """Boundary adapter: anything a store hands back becomes an Allocation."""
    if isinstance(raw, Allocation):
        return raw
    return AllocationIn.model_validate(raw).to_allocation()

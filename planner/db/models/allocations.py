from sqlalchemy import Integer, String, Text, Date, DateTime, Float, Boolean, ForeignKey, Enum as SQLEnum, Index, CheckConstraint, func
from datetime import date, datetime
from sqlalchemy.orm import Mapped, mapped_column
from enum import Enum
from typing import Optional
from planner.db.database import Base


class AllocationStatus(str, Enum):
    PLANNED = "planned"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Allocations(Base):
    __tablename__ = "allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id"), nullable=False)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    allocated_hours: Mapped[float] = mapped_column(Float, nullable=False)
    role: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    status: Mapped[AllocationStatus] = mapped_column(
        SQLEnum(AllocationStatus, name="allocation_status_enum", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=AllocationStatus.ACTIVE,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("start_date <= end_date", name="ck_allocations_date_order"),
        CheckConstraint("allocated_hours >= 0", name="ck_allocations_hours_non_negative"),
        Index("ix_allocations_employee_start", "employee_id", "start_date"),
        Index("ix_allocations_project", "project_id"),
        # ids are never reused, undo history refers to them
        {"sqlite_autoincrement": True},
    )

"""
Allocation store abstraction layer.
The engine only talks to the AllocationStore interface; failures surface as PersistenceError.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from planner.db.models.allocations import Allocations, AllocationStatus as DbAllocationStatus

from .exceptions import NotFoundError, PersistenceError
from .types import Allocation, AllocationStatus, WRITABLE_FIELDS


logger = logging.getLogger(__name__)


class AllocationStore(ABC):
    """Durable source of truth for allocations. Every call may fail."""

    @abstractmethod
    async def list(self) -> list[Allocation]:
        ...

    @abstractmethod
    async def create(self, fields: dict) -> Allocation:
        ...

    @abstractmethod
    async def update(self, allocation_id: int, fields: dict) -> Allocation:
        ...

    @abstractmethod
    async def delete(self, allocation_id: int) -> None:
        ...


def _check_fields(fields: dict) -> None:
    unknown = set(fields) - set(WRITABLE_FIELDS)
    if unknown:
        raise PersistenceError(f"Unknown allocation fields: {sorted(unknown)}")


class InMemoryAllocationStore(AllocationStore):
    """Dict-backed store, used for tests and local demos."""

    def __init__(self, allocations: Optional[list[Allocation]] = None):
        self._rows: dict[int, Allocation] = {}
        for alloc in allocations or []:
            self._rows[alloc.id] = alloc
        self._next_id = max(self._rows, default=0) + 1

    async def list(self) -> list[Allocation]:
        return sorted(self._rows.values(), key=lambda a: a.id)

    async def create(self, fields: dict) -> Allocation:
        _check_fields(fields)
        now = datetime.now()
        alloc = Allocation(id=self._next_id, created_at=now, updated_at=now, **fields)
        self._rows[alloc.id] = alloc
        self._next_id += 1
        return alloc

    async def update(self, allocation_id: int, fields: dict) -> Allocation:
        _check_fields(fields)
        current = self._rows.get(allocation_id)
        if current is None:
            raise NotFoundError(f"Allocation {allocation_id} not found")
        updated = replace(current, updated_at=datetime.now(), **fields)
        if updated.start_date > updated.end_date:
            raise PersistenceError("start_date must be on or before end_date")
        self._rows[allocation_id] = updated
        return updated

    async def delete(self, allocation_id: int) -> None:
        if self._rows.pop(allocation_id, None) is None:
            raise NotFoundError(f"Allocation {allocation_id} not found")


def allocation_from_row(row: Allocations) -> Allocation:
    return Allocation(
        id=row.id,
        employee_id=row.employee_id,
        project_id=row.project_id,
        start_date=row.start_date,
        end_date=row.end_date,
        allocated_hours=row.allocated_hours,
        role=row.role or "",
        status=AllocationStatus(row.status.value),
        is_active=row.is_active,
        notes=row.notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_columns(fields: dict) -> dict:
    columns = dict(fields)
    if "status" in columns:
        columns["status"] = DbAllocationStatus(AllocationStatus(columns["status"]).value)
    return columns


class SqlAllocationStore(AllocationStore):
    """
    Store backed by a SQLAlchemy session. Calls run synchronously inside the
    coroutine; the session is not shared across threads.
    """

    def __init__(self, db: Session):
        self.db = db

    async def list(self) -> list[Allocation]:
        try:
            stmt = select(Allocations).order_by(Allocations.start_date, Allocations.id)
            rows = self.db.execute(stmt).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to list allocations: {e}")
            raise PersistenceError("Failed to load allocations") from e
        return [allocation_from_row(r) for r in rows]

    async def create(self, fields: dict) -> Allocation:
        _check_fields(fields)
        row = Allocations(**_to_columns(fields))
        try:
            self.db.add(row)
            self.db.commit()
            self.db.refresh(row)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to create allocation: {e}")
            raise PersistenceError("Failed to create allocation") from e
        return allocation_from_row(row)

    async def update(self, allocation_id: int, fields: dict) -> Allocation:
        _check_fields(fields)
        row = self.db.get(Allocations, allocation_id)
        if row is None:
            raise NotFoundError(f"Allocation {allocation_id} not found")
        try:
            for field, value in _to_columns(fields).items():
                setattr(row, field, value)
            self.db.commit()
            self.db.refresh(row)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to update allocation {allocation_id}: {e}")
            raise PersistenceError("Failed to update allocation") from e
        return allocation_from_row(row)

    async def delete(self, allocation_id: int) -> None:
        row = self.db.get(Allocations, allocation_id)
        if row is None:
            raise NotFoundError(f"Allocation {allocation_id} not found")
        try:
            self.db.delete(row)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to delete allocation {allocation_id}: {e}")
            raise PersistenceError("Failed to delete allocation") from e

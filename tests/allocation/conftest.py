import asyncio
import pytest
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from planner.db.models import Base
from planner.services.allocation.engine import SchedulingEngine
from planner.services.allocation.notifications import NotificationSink
from planner.services.allocation.store import InMemoryAllocationStore
from planner.services.allocation.types import (
    Allocation,
    Employee,
    Project,
    NotificationKind,
)


def get_test_monday() -> date:
    # returns a fixed Monday for deterministic tests
    return date(2025, 1, 20)


def day(offset: int) -> date:
    return get_test_monday() + timedelta(days=offset)


def make_allocation(
    id: int,
    employee_id: int,
    start: int,
    end: int,
    hours: float = 8,
    project_id: int = 1,
) -> Allocation:
    return Allocation(
        id=id,
        employee_id=employee_id,
        project_id=project_id,
        start_date=day(start),
        end_date=day(end),
        allocated_hours=hours,
        role="Engineer",
    )


def run(coro):
    return asyncio.run(coro)


class CollectingSink(NotificationSink):
    """Keeps every notification for assertions."""

    def __init__(self):
        self.messages: list[tuple[str, NotificationKind]] = []

    def notify(self, message: str, kind: NotificationKind = NotificationKind.INFO) -> None:
        self.messages.append((message, NotificationKind(kind)))

    def of_kind(self, kind: NotificationKind) -> list[str]:
        return [m for m, k in self.messages if k == kind]


class FlakyStore(InMemoryAllocationStore):
    """In-memory store that rejects calls for chosen allocation ids."""

    def __init__(self, allocations: Optional[list[Allocation]] = None):
        super().__init__(allocations)
        self.fail_update: set[int] = set()
        self.fail_delete: set[int] = set()
        self.fail_create_for_employee: set[int] = set()
        self.fail_list = False
        self.gate: Optional[asyncio.Event] = None
        self.calls: list[tuple] = []

    async def list(self):
        self.calls.append(("list",))
        if self.fail_list:
            raise ConnectionError("store unreachable")
        return await super().list()

    async def create(self, fields):
        self.calls.append(("create", fields["employee_id"]))
        if fields["employee_id"] in self.fail_create_for_employee:
            raise ConnectionError("create rejected")
        return await super().create(fields)

    async def update(self, allocation_id, fields):
        self.calls.append(("update", allocation_id))
        if self.gate is not None:
            await self.gate.wait()
        if allocation_id in self.fail_update:
            raise TimeoutError("update timed out")
        return await super().update(allocation_id, fields)

    async def delete(self, allocation_id):
        self.calls.append(("delete", allocation_id))
        if allocation_id in self.fail_delete:
            raise ConnectionError("delete rejected")
        return await super().delete(allocation_id)


@pytest.fixture
def employees() -> list[Employee]:
    # 3 employees: two full-time, one part-time
    return [
        Employee(id=1, first_name="Alice", last_name="Moreau", weekly_capacity=40),
        Employee(id=2, first_name="Bob", last_name="Okafor", weekly_capacity=40),
        Employee(id=3, first_name="Carol", last_name="Lindqvist", weekly_capacity=24),
    ]


@pytest.fixture
def projects() -> list[Project]:
    return [
        Project(id=1, name="Billing Platform"),
        Project(id=2, name="Mobile App"),
    ]


@pytest.fixture
def allocations() -> list[Allocation]:
    # Alice Mon-Tue, Bob Wed-Fri, Carol next Monday. No conflicts.
    return [
        make_allocation(1, employee_id=1, start=0, end=1, hours=16),
        make_allocation(2, employee_id=2, start=2, end=4, hours=24, project_id=2),
        make_allocation(3, employee_id=3, start=7, end=7, hours=8),
    ]


@pytest.fixture
def store(allocations) -> FlakyStore:
    return FlakyStore(allocations)


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def engine(store, employees, projects, allocations, sink) -> SchedulingEngine:
    return SchedulingEngine(
        store,
        employees,
        projects=projects,
        allocations=allocations,
        sink=sink,
    )


@pytest.fixture
def db_session():
    """Fresh in-memory SQLite database per test."""
    db_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=db_engine)
    session = sessionmaker(bind=db_engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        db_engine.dispose()

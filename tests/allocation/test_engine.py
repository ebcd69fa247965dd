"""
Tests for the scheduling engine's single-item operations, selection,
refresh and export. Store calls go to an in-memory store with failure hooks.
"""
import asyncio
import csv
import io
import json
import pytest
from datetime import date

from planner.services.allocation.engine import SchedulingEngine
from planner.services.allocation.types import (
    AllocationStatus,
    ConflictType,
    EngineState,
    Employee,
    NotificationKind,
    OperationType,
    SelectionMode,
)

from conftest import CollectingSink, FlakyStore, day, make_allocation, run


class TestMove:

    def test_move_to_free_slot(self, engine, store, sink):
        # allocation 3 (Carol, next Monday) to Bob on 2025-03-10
        ok = run(engine.move(3, 2, date(2025, 3, 10)))

        assert ok is True
        moved = engine.get_allocation(3)
        assert moved.employee_id == 2
        assert moved.start_date == date(2025, 3, 10)
        assert len(engine.operations) == 1
        op = engine.operations[0]
        assert op.type == OperationType.MOVE
        assert op.allocation_ids == (3,)
        assert op.old_data[0].employee_id == 3
        assert op.new_data[0].employee_id == 2
        assert ("update", 3) in store.calls

    def test_move_keeps_duration(self, engine):
        # Bob's allocation spans Wed-Fri
        assert run(engine.move(2, 1, day(7))) is True
        moved = engine.get_allocation(2)
        assert moved.start_date == day(7)
        assert moved.end_date == day(9)

    def test_move_accepts_iso_date(self, engine):
        assert run(engine.move(3, 2, "2025-03-10")) is True
        assert engine.get_allocation(3).start_date == date(2025, 3, 10)

    def test_rejected_drop_makes_no_store_call(self, engine, store, sink):
        before = engine.allocations
        ok = run(engine.move(1, 2, day(3)))

        assert ok is False
        assert engine.allocations == before
        assert engine.operations == []
        assert not any(c[0] == "update" for c in store.calls)
        assert sink.of_kind(NotificationKind.ERROR) == ["Time slot already allocated"]

    def test_unknown_allocation(self, engine, sink):
        assert run(engine.move(999, 2, day(0))) is False
        assert sink.of_kind(NotificationKind.ERROR) == ["Allocation not found"]

    def test_unknown_employee(self, engine, sink):
        assert run(engine.move(1, 99, day(0))) is False
        assert sink.of_kind(NotificationKind.ERROR) == ["Target employee not found"]

    def test_invalid_date(self, engine, sink):
        assert run(engine.move(1, 2, "not-a-date")) is False
        assert sink.of_kind(NotificationKind.ERROR)[0].startswith("Invalid date")

    def test_store_failure_leaves_state_untouched(self, engine, store, sink):
        store.fail_update.add(3)
        before = engine.allocations

        ok = run(engine.move(3, 2, day(10)))

        assert ok is False
        assert engine.allocations == before
        assert engine.operations == []
        assert sink.of_kind(NotificationKind.ERROR) == ["Failed to update allocation"]
        assert engine.state == EngineState.IDLE

    def test_move_recomputes_conflicts_and_lanes(self, engine):
        assert engine.conflicts == []
        # Bob's 24h onto Alice two weeks out brings Alice to exactly 40h
        assert run(engine.move(2, 1, day(14))) is True
        lanes = {lane.employee_id: lane for lane in engine.resource_lanes}
        assert lanes[1].total_hours == 40
        assert lanes[2].total_hours == 0
        assert engine.conflicts == []

        # Carol's 8h onto Alice on a free day tips her over capacity
        assert run(engine.move(3, 1, day(17))) is True
        assert {c.type for c in engine.conflicts} == {ConflictType.OVERALLOCATION}

        # stretching it over the moved range adds a time overlap
        assert run(engine.update(3, {"start_date": day(16)})) is True
        types = {c.type for c in engine.conflicts}
        assert types == {ConflictType.TIME_OVERLAP, ConflictType.OVERALLOCATION}


class TestCreate:

    def test_creates_one_per_employee(self, engine, store, sink):
        ok = run(engine.create([1, 2], project_id=2, start_date=day(21), hours=8))

        assert ok is True
        created = [a for a in engine.allocations if a.start_date == day(21)]
        assert {a.employee_id for a in created} == {1, 2}
        assert all(a.end_date == day(21) for a in created)
        assert len(engine.operations) == 1
        op = engine.operations[0]
        assert op.type == OperationType.CREATE
        assert set(op.allocation_ids) == {a.id for a in created}
        assert len(op.new_data) == 2
        assert sink.of_kind(NotificationKind.SUCCESS) == ["Created 2 allocation(s)"]

    def test_create_with_range_and_role(self, engine):
        ok = run(engine.create([3], project_id=1, start_date="2025-02-03", hours=12,
                               end_date="2025-02-05", role="Analyst", status="planned"))
        assert ok is True
        created = engine.allocations[-1]
        assert created.end_date == date(2025, 2, 5)
        assert created.role == "Analyst"
        assert created.status == AllocationStatus.PLANNED

    def test_partial_store_failure_merges_nothing(self, engine, store, sink):
        store.fail_create_for_employee.add(2)
        before = engine.allocations

        ok = run(engine.create([1, 2, 3], project_id=1, start_date=day(21), hours=8))

        assert ok is False
        assert engine.allocations == before
        assert engine.operations == []
        # the rows that did get created were rolled back
        assert sorted(a.id for a in run(store.list())) == sorted(a.id for a in before)
        assert sink.of_kind(NotificationKind.ERROR) == ["Failed to create allocation"]

    def test_negative_hours_rejected_before_store(self, engine, store):
        assert run(engine.create([1], project_id=1, start_date=day(21), hours=-1)) is False
        assert not any(c[0] == "create" for c in store.calls)

    def test_end_before_start_rejected(self, engine, sink):
        assert run(engine.create([1], project_id=1, start_date=day(5), hours=8, end_date=day(4))) is False
        assert "start_date must be on or before end_date" in sink.of_kind(NotificationKind.ERROR)[0]

    def test_unknown_employee(self, engine, sink):
        assert run(engine.create([1, 42], project_id=1, start_date=day(21), hours=8)) is False
        assert sink.of_kind(NotificationKind.ERROR) == ["Employee not found"]

    def test_no_employees(self, engine):
        assert run(engine.create([], project_id=1, start_date=day(21), hours=8)) is False


class TestUpdate:

    def test_update_fields(self, engine):
        ok = run(engine.update(1, {"allocated_hours": 20, "notes": "Sprint 4", "status": "completed"}))

        assert ok is True
        updated = engine.get_allocation(1)
        assert updated.allocated_hours == 20
        assert updated.notes == "Sprint 4"
        assert updated.status == AllocationStatus.COMPLETED
        op = engine.operations[0]
        assert op.type == OperationType.UPDATE
        assert op.old_data[0].allocated_hours == 16

    def test_update_reruns_conflict_detection(self, engine):
        assert run(engine.update(3, {"allocated_hours": 30})) is True
        over = [c for c in engine.conflicts if c.type == ConflictType.OVERALLOCATION]
        assert [c.affected_allocations for c in over] == [(3,)]

    def test_unknown_field_rejected(self, engine, store, sink):
        assert run(engine.update(1, {"colour": "red"})) is False
        assert not any(c[0] == "update" for c in store.calls)
        assert sink.of_kind(NotificationKind.ERROR)[0].startswith("Invalid update")

    def test_dates_out_of_order_after_merge(self, engine):
        # allocation 1 runs Mon-Tue; moving only the end before the start is invalid
        assert run(engine.update(1, {"end_date": day(-3)})) is False
        assert engine.get_allocation(1).end_date == day(1)

    def test_unknown_target_employee(self, engine, sink):
        assert run(engine.update(1, {"employee_id": 77})) is False
        assert sink.of_kind(NotificationKind.ERROR) == ["Target employee not found"]

    def test_missing_allocation(self, engine, sink):
        assert run(engine.update(404, {"allocated_hours": 1})) is False
        assert sink.of_kind(NotificationKind.ERROR) == ["Allocation not found"]

    def test_empty_update(self, engine):
        assert run(engine.update(1, {})) is False

    def test_non_mapping_update_rejected(self, engine, store, sink):
        assert run(engine.update(1, None)) is False
        assert run(engine.update(1, ["allocated_hours", 4])) is False
        assert not any(c[0] == "update" for c in store.calls)
        errors = sink.of_kind(NotificationKind.ERROR)
        assert len(errors) == 2
        assert all(e.startswith("Invalid update") for e in errors)
        assert engine.get_allocation(1).allocated_hours == 16

    def test_store_failure(self, engine, store):
        store.fail_update.add(1)
        assert run(engine.update(1, {"allocated_hours": 2})) is False
        assert engine.get_allocation(1).allocated_hours == 16


class TestDelete:

    def test_delete_many(self, engine, sink):
        engine.set_selection([1, 2], mode="multiple")
        ok = run(engine.delete([1, 2]))

        assert ok is True
        assert [a.id for a in engine.allocations] == [3]
        op = engine.operations[0]
        assert op.type == OperationType.DELETE
        assert {a.id for a in op.old_data} == {1, 2}
        assert engine.selection.selected_allocations == set()
        assert sink.of_kind(NotificationKind.SUCCESS) == ["Deleted 2 allocation(s)"]

    def test_store_failure_keeps_allocation(self, engine, store, sink):
        store.fail_delete.add(1)
        assert run(engine.delete([1])) is False
        assert engine.get_allocation(1) is not None
        assert engine.operations == []
        assert sink.of_kind(NotificationKind.ERROR) == ["Failed to delete allocations"]

    def test_partial_failure_mirrors_store(self, engine, store):
        store.fail_delete.add(2)
        assert run(engine.delete([1, 2])) is False
        # the store did delete 1, so the engine must not keep showing it
        assert engine.get_allocation(1) is None
        assert engine.get_allocation(2) is not None
        assert engine.operations[0].allocation_ids == (1,)

    def test_unknown_id(self, engine, store):
        assert run(engine.delete([1, 999])) is False
        assert engine.get_allocation(1) is not None
        assert not any(c[0] == "delete" for c in store.calls)


class TestConcurrency:

    def test_mutations_are_serialized(self, engine, store):
        async def scenario():
            store.gate = asyncio.Event()
            first = asyncio.ensure_future(engine.move(3, 2, day(14)))
            second = asyncio.ensure_future(engine.update(3, {"allocated_hours": 4}))
            for _ in range(20):
                if ("update", 3) in store.calls:
                    break
                await asyncio.sleep(0)
            for _ in range(5):
                await asyncio.sleep(0)

            # the move is parked inside the store; the update has not reached it
            busy_while_parked = engine.is_busy
            parked_calls = [c for c in store.calls if c[0] == "update"]
            store.gate.set()
            results = await asyncio.gather(first, second)
            return busy_while_parked, parked_calls, results

        busy, parked, results = run(scenario())
        assert busy is True
        assert parked == [("update", 3)]
        assert results == [True, True]
        final = engine.get_allocation(3)
        assert final.employee_id == 2
        assert final.allocated_hours == 4
        assert [op.type for op in engine.operations] == [OperationType.MOVE, OperationType.UPDATE]
        assert engine.is_busy is False
        assert engine.state == EngineState.IDLE

    def test_engine_reused_across_event_loops(self, engine, store):
        async def contended(hours):
            store.gate = asyncio.Event()
            first = asyncio.ensure_future(engine.update(1, {"allocated_hours": hours}))
            second = asyncio.ensure_future(engine.update(2, {"allocated_hours": hours}))
            for _ in range(10):
                await asyncio.sleep(0)
            store.gate.set()
            return await asyncio.gather(first, second)

        assert run(contended(4)) == [True, True]
        assert run(contended(6)) == [True, True]
        assert engine.get_allocation(1).allocated_hours == 6
        assert engine.get_allocation(2).allocated_hours == 6
        assert len(engine.operations) == 4

    def test_abandoned_call_still_completes(self, engine):
        async def scenario():
            task = asyncio.ensure_future(engine.move(3, 2, day(14)))
            await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            # let the shielded mutation finish
            for _ in range(10):
                await asyncio.sleep(0)

        run(scenario())
        assert engine.get_allocation(3).employee_id == 2
        assert len(engine.operations) == 1


class TestNotificationsAndCallbacks:

    def test_failing_sink_does_not_change_outcome(self, store, employees, allocations):
        class BrokenSink(CollectingSink):
            def notify(self, message, kind=NotificationKind.INFO):
                raise RuntimeError("toast service down")

        engine = SchedulingEngine(store, employees, allocations=allocations, sink=BrokenSink())
        assert run(engine.delete([1])) is True
        assert engine.get_allocation(1) is None

    def test_async_sink_is_not_awaited_inline(self, store, employees, allocations):
        received = []

        class AsyncSink(CollectingSink):
            async def notify(self, message, kind=NotificationKind.INFO):
                received.append(message)

        engine = SchedulingEngine(store, employees, allocations=allocations, sink=AsyncSink())

        async def scenario():
            ok = await engine.delete([1])
            await asyncio.sleep(0)
            return ok

        assert run(scenario()) is True
        assert received == ["Deleted 1 allocation(s)"]

    def test_callbacks_fire_after_recompute(self, store, employees, allocations):
        changes, conflict_snapshots = [], []
        engine = SchedulingEngine(
            store, employees, allocations=allocations, sink=CollectingSink(),
            on_allocation_change=changes.append,
            on_conflict_detected=conflict_snapshots.append,
        )
        run(engine.update(3, {"allocated_hours": 30}))

        assert len(changes) == 2  # construction + update
        assert changes[-1][-1].allocated_hours == 30
        assert len(conflict_snapshots[-1]) == 1


class TestSelection:

    def test_set_selection_ignores_unknown_ids(self, engine):
        engine.set_selection([1, 999])
        assert engine.selection.selected_allocations == {1}
        assert engine.selection.selection_mode == SelectionMode.SINGLE

    def test_select_all_and_clear(self, engine):
        engine.select_all()
        assert engine.selection.selected_allocations == {1, 2, 3}
        assert engine.selection.selection_mode == SelectionMode.MULTIPLE
        engine.clear_selection()
        assert engine.selection.selected_allocations == set()
        assert engine.selection.selection_mode == SelectionMode.SINGLE

    def test_selection_view_is_a_copy(self, engine):
        engine.select_all()
        engine.selection.selected_allocations.clear()
        assert engine.selection.selected_allocations == {1, 2, 3}


class TestRefreshAndReferenceData:

    def test_refresh_picks_up_external_changes(self, engine, store):
        run(store.create({
            "employee_id": 1, "project_id": 1, "start_date": day(0), "end_date": day(0),
            "allocated_hours": 40, "role": "", "status": AllocationStatus.ACTIVE,
            "is_active": True, "notes": None,
        }))
        assert run(engine.refresh()) is True
        assert len(engine.allocations) == 4
        assert any(c.type == ConflictType.TIME_OVERLAP for c in engine.conflicts)

    def test_refresh_failure(self, engine, store, sink):
        store.fail_list = True
        before = engine.allocations
        assert run(engine.refresh()) is False
        assert engine.allocations == before
        assert sink.of_kind(NotificationKind.ERROR) == ["Failed to refresh allocation data"]

    def test_set_employees_recomputes_lanes(self, engine):
        engine.set_employees([Employee(id=1, first_name="Alice", weekly_capacity=10)])
        assert len(engine.resource_lanes) == 1
        assert engine.resource_lanes[0].utilization == 160
        assert [c.type for c in engine.conflicts] == [ConflictType.OVERALLOCATION]

    def test_validate_drop_passthrough(self, engine):
        assert engine.validate_drop(1, 2, "2025-01-23").reason == "Time slot already allocated"
        assert engine.validate_drop(1, 2, "garbage").is_valid is False

    def test_time_slots_default_week(self, engine):
        assert len(engine.time_slots(day(2))) == 7


class TestExport:

    def test_json(self, engine):
        payload = json.loads(engine.export("json"))
        assert [a["id"] for a in payload["allocations"]] == [1, 2, 3]
        assert payload["allocations"][0]["start_date"] == "2025-01-20"
        assert payload["allocations"][0]["status"] == "active"
        assert payload["conflicts"] == []
        assert payload["resource_lanes"][0]["employee_name"] == "Alice Moreau"
        assert "exported_at" in payload

    def test_csv(self, engine):
        rows = list(csv.reader(io.StringIO(engine.export("csv"))))
        assert rows[0] == ["ID", "Employee", "Project", "Hours", "Start Date", "End Date", "Status"]
        assert rows[1] == ["1", "Alice Moreau", "Billing Platform", "16", "2025-01-20", "2025-01-21", "active"]
        assert len(rows) == 4

    def test_csv_unknown_references(self, store, employees):
        engine = SchedulingEngine(
            store, employees,
            allocations=[make_allocation(1, employee_id=50, start=0, end=0, project_id=9)],
            sink=CollectingSink(),
        )
        rows = list(csv.reader(io.StringIO(engine.export("csv"))))
        assert rows[1][1:3] == ["Unknown", "Unknown"]

    def test_unsupported_format(self, engine):
        with pytest.raises(ValueError):
            engine.export("pdf")


class TestNormalizedInput:

    def test_accepts_upstream_shapes(self, store, employees):
        engine = SchedulingEngine(
            store,
            employees,
            allocations=[
                {"id": "7", "employeeId": 1, "projectId": "2", "date": "2025-01-20", "hours": 6},
                {"id": 8, "employee_id": 2, "project_id": 1, "startDate": "2025-01-20",
                 "endDate": "2025-01-22", "allocatedHours": 12, "roleOnProject": "QA", "isActive": False},
            ],
            sink=CollectingSink(),
        )
        first, second = engine.allocations
        assert first.id == 7
        assert first.start_date == first.end_date == date(2025, 1, 20)
        assert first.allocated_hours == 6
        assert second.role == "QA"
        assert second.is_active is False

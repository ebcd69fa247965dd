"""
Scheduling engine - main orchestration layer.

Owns the live allocation set and is its only writer. Every mutation follows
the same flow:
1. Validate the request against current state (no I/O)
2. Call the allocation store
3. Apply the store's result to the in-memory set
4. Recompute conflicts and resource lanes
5. Record the transition in the operation log
6. Report the outcome through the notification sink

A failed call leaves the allocation set exactly as the store left it.
"""

import asyncio
import csv
import inspect
import io
import json
import logging
from dataclasses import asdict, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

import pydantic

from planner.core.config import settings
from planner.schemas import allocations as allocation_schemas

from .conflicts import detect_conflicts
from .exceptions import SchedulingError, ValidationError, PersistenceError, NotFoundError
from .history import OperationLog
from .lanes import compute_lanes, build_time_slots
from .notifications import NotificationSink, LoggingNotificationSink
from .store import AllocationStore
from .types import (
    Allocation,
    AllocationStatus,
    Employee,
    Project,
    Conflict,
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
from .validation import validate_drop, ALLOCATION_NOT_FOUND, EMPLOYEE_NOT_FOUND


logger = logging.getLogger(__name__)

BULK_KINDS = ("move", "update", "delete")

CSV_HEADERS = ["ID", "Employee", "Project", "Hours", "Start Date", "End Date", "Status"]

DateLike = Union[date, str]


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid date: {value!r}") from e


def _first_error(e: pydantic.ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err['msg']}" if loc else err["msg"]


def _describe(exc: SchedulingError) -> str:
    # report the root cause alongside the user-facing message
    root = exc
    while root.__cause__ is not None:
        root = root.__cause__
    if root is exc:
        return str(exc)
    return f"{exc}: {root}"


def _json_default(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class SchedulingEngine:
    """
    Orchestrates moves, creates, updates, deletes, bulk operations and
    undo/redo over one allocation set.

    Mutating calls are serialized: a second call waits until the first has
    fully completed, including the post-mutation recompute. A call whose
    caller goes away still runs to completion in the background.
    """

    def __init__(
        self,
        store: AllocationStore,
        employees: Iterable[Employee],
        projects: Iterable[Project] = (),
        allocations: Iterable[Any] = (),
        sink: Optional[NotificationSink] = None,
        max_undo_operations: Optional[int] = None,
        on_allocation_change: Optional[Callable[[list[Allocation]], None]] = None,
        on_conflict_detected: Optional[Callable[[list[Conflict]], None]] = None,
    ):
        self._store = store
        self._employees = list(employees)
        self._projects = list(projects)
        self._allocations: dict[int, Allocation] = {}
        for raw in allocations:
            alloc = allocation_schemas.normalize_allocation(raw)
            self._allocations[alloc.id] = alloc

        self._sink = sink or LoggingNotificationSink()
        self._history = OperationLog(
            settings.MAX_UNDO_OPERATIONS if max_undo_operations is None else max_undo_operations
        )
        self._selection = SelectionState()
        self._on_allocation_change = on_allocation_change
        self._on_conflict_detected = on_conflict_detected

        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._busy = False
        self._state = EngineState.IDLE
        self._background: set[asyncio.Future] = set()

        self._conflicts: list[Conflict] = []
        self._lanes: list[ResourceLane] = []
        self._recompute()

    # ==================== Read-only views ====================

    @property
    def allocations(self) -> list[Allocation]:
        return list(self._allocations.values())

    @property
    def conflicts(self) -> list[Conflict]:
        return list(self._conflicts)

    @property
    def resource_lanes(self) -> list[ResourceLane]:
        return list(self._lanes)

    @property
    def employees(self) -> list[Employee]:
        return list(self._employees)

    @property
    def projects(self) -> list[Project]:
        return list(self._projects)

    @property
    def selection(self) -> SelectionState:
        return SelectionState(
            selected_allocations=set(self._selection.selected_allocations),
            selection_mode=self._selection.selection_mode,
        )

    @property
    def operations(self) -> list[Operation]:
        return self._history.operations

    @property
    def current_operation_index(self) -> int:
        return self._history.current_index

    @property
    def can_undo(self) -> bool:
        return self._history.can_undo

    @property
    def can_redo(self) -> bool:
        return self._history.can_redo

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def state(self) -> EngineState:
        return self._state

    def get_allocation(self, allocation_id: int) -> Optional[Allocation]:
        return self._allocations.get(allocation_id)

    def time_slots(
        self,
        selected_date: Optional[date] = None,
        view_mode: Optional[str] = None,
    ) -> list[TimeSlot]:
        return build_time_slots(selected_date or date.today(), view_mode or settings.DEFAULT_VIEW_MODE)

    # ==================== Pure passthroughs ====================

    def validate_drop(
        self,
        allocation_id: int,
        target_employee_id: int,
        target_date: DateLike,
    ) -> DropValidationResult:
        try:
            day = _as_date(target_date)
        except ValidationError as e:
            return DropValidationResult(is_valid=False, reason=str(e))
        return validate_drop(allocation_id, target_employee_id, day, self.allocations, self._employees)

    def detect_conflicts(self, allocations: Optional[Iterable[Allocation]] = None) -> list[Conflict]:
        return detect_conflicts(self.allocations if allocations is None else allocations, self._employees)

    # ==================== Reference data ====================

    def set_employees(self, employees: Iterable[Employee]) -> None:
        self._employees = list(employees)
        self._recompute()

    def set_projects(self, projects: Iterable[Project]) -> None:
        self._projects = list(projects)

    # ==================== Selection ====================

    def set_selection(self, allocation_ids: Iterable[int], mode: Union[SelectionMode, str] = SelectionMode.SINGLE) -> None:
        self._selection = SelectionState(
            selected_allocations={i for i in allocation_ids if i in self._allocations},
            selection_mode=SelectionMode(mode),
        )

    def clear_selection(self) -> None:
        self._selection = SelectionState()

    def select_all(self) -> None:
        self._selection = SelectionState(
            selected_allocations=set(self._allocations),
            selection_mode=SelectionMode.MULTIPLE,
        )

    # ==================== Mutations ====================

    async def move(self, allocation_id: int, target_employee_id: int, target_date: DateLike) -> bool:
        return await self._dispatch(self._attempt, self._move, allocation_id, target_employee_id, target_date)

    async def create(
        self,
        employee_ids: Iterable[int],
        project_id: int,
        start_date: DateLike,
        hours: float,
        end_date: Optional[DateLike] = None,
        role: str = "",
        notes: Optional[str] = None,
        status: AllocationStatus = AllocationStatus.ACTIVE,
    ) -> bool:
        return await self._dispatch(
            self._attempt, self._create,
            list(employee_ids), project_id, start_date, hours, end_date, role, notes, status,
        )

    async def update(self, allocation_id: int, updates: Union[dict, "allocation_schemas.AllocationUpdate"]) -> bool:
        return await self._dispatch(self._attempt, self._update, allocation_id, updates)

    async def delete(self, allocation_ids: Iterable[int]) -> bool:
        return await self._dispatch(self._attempt, self._delete, list(allocation_ids))

    async def bulk_operation(
        self,
        kind: str,
        allocation_ids: Iterable[int],
        params: Optional[dict] = None,
    ) -> BulkOperationResult:
        """
        Apply one kind of operation to many allocations, strictly one at a time.

        params:
            move   -> {"target_employee_id": int, "target_date": date | str}
            update -> {"updates": dict}
            delete -> not used
        """
        if kind not in BULK_KINDS:
            raise ValueError(f"Unsupported bulk operation: {kind}")
        params = params or {}
        required = {"move": ("target_employee_id", "target_date"), "update": ("updates",)}.get(kind, ())
        missing = [key for key in required if key not in params]
        if missing:
            raise ValueError(f"Bulk {kind} requires params: {', '.join(missing)}")

        return await self._dispatch(self._bulk, kind, list(allocation_ids), params)

    async def undo(self) -> bool:
        return await self._dispatch(self._attempt, self._undo)

    async def redo(self) -> bool:
        return await self._dispatch(self._attempt, self._redo)

    async def refresh(self) -> bool:
        """Re-fetch the full allocation set from the store."""
        return await self._dispatch(self._attempt, self._refresh)

    # ==================== Export ====================

    def export(self, fmt: str = "json") -> str:
        if fmt == "json":
            payload = {
                "allocations": [asdict(a) for a in self._allocations.values()],
                "conflicts": [asdict(c) for c in self._conflicts],
                "resource_lanes": [
                    {**asdict(lane), "employee_name": lane.employee_name} for lane in self._lanes
                ],
                "exported_at": datetime.now().isoformat(),
            }
            return json.dumps(payload, indent=2, default=_json_default)

        if fmt == "csv":
            employee_map = {e.id: e for e in self._employees}
            project_map = {p.id: p for p in self._projects}
            buf = io.StringIO()
            writer = csv.writer(buf, lineterminator="\n")
            writer.writerow(CSV_HEADERS)
            for alloc in self._allocations.values():
                employee = employee_map.get(alloc.employee_id)
                project = project_map.get(alloc.project_id)
                writer.writerow([
                    alloc.id,
                    employee.name if employee else "Unknown",
                    project.name if project else "Unknown",
                    f"{alloc.allocated_hours:g}",
                    alloc.start_date.isoformat(),
                    alloc.end_date.isoformat(),
                    alloc.status.value,
                ])
            return buf.getvalue().rstrip("\n")

        raise ValueError(f"Unsupported export format: {fmt}")

    # ==================== Dispatch ====================

    async def _dispatch(self, runner: Callable, *args: Any) -> Any:
        # shielded so an abandoned caller cannot cut a mutation in half
        task = asyncio.ensure_future(self._run_exclusive(runner, *args))
        self._track(task)
        return await asyncio.shield(task)

    def _writer_lock(self) -> asyncio.Lock:
        # one lock per event loop; an asyncio.Lock cannot cross loops
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def _run_exclusive(self, runner: Callable, *args: Any) -> Any:
        async with self._writer_lock():
            self._busy = True
            try:
                return await runner(*args)
            finally:
                self._busy = False
                self._state = EngineState.IDLE

    async def _attempt(self, op: Callable, *args: Any) -> bool:
        try:
            await op(*args)
        except SchedulingError as e:
            self._state = EngineState.FAILED
            logger.warning(f"{op.__name__.lstrip('_')} failed: {_describe(e)}")
            self._notify(str(e), NotificationKind.ERROR)
            return False
        return True

    def _track(self, task: asyncio.Future) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()!r}")

    # ==================== Single-item operations ====================

    async def _move(self, allocation_id: int, target_employee_id: int, target_date: DateLike) -> None:
        self._state = EngineState.VALIDATING
        day = _as_date(target_date)
        result = validate_drop(allocation_id, target_employee_id, day, self.allocations, self._employees)
        if not result.is_valid:
            if result.reason in (ALLOCATION_NOT_FOUND, EMPLOYEE_NOT_FOUND):
                raise NotFoundError(result.reason)
            raise ValidationError(result.reason or "Invalid move")

        old = self._allocations[allocation_id]
        # shift the whole range so the allocation keeps its length
        fields = {
            "employee_id": target_employee_id,
            "start_date": day,
            "end_date": day + timedelta(days=old.duration_days),
        }

        self._state = EngineState.PERSISTING
        updated = await self._persist_allocation(
            self._store.update, allocation_id, fields, failure="Failed to update allocation",
        )

        self._state = EngineState.APPLYING
        self._put(updated)
        self._history.record(Operation(
            type=OperationType.MOVE,
            allocation_ids=(allocation_id,),
            old_data=(old,),
            new_data=(updated,),
        ))
        self._recompute()
        logger.info(f"Moved allocation {allocation_id} to employee {target_employee_id} on {day}")

    async def _create(
        self,
        employee_ids: list[int],
        project_id: int,
        start_date: DateLike,
        hours: float,
        end_date: Optional[DateLike],
        role: str,
        notes: Optional[str],
        status: AllocationStatus,
    ) -> None:
        self._state = EngineState.VALIDATING
        if not employee_ids:
            raise ValidationError("No employees selected")
        known = {e.id for e in self._employees}
        if any(employee_id not in known for employee_id in employee_ids):
            raise NotFoundError("Employee not found")

        start = _as_date(start_date)
        end = _as_date(end_date) if end_date is not None else start
        payloads = [
            self._validated_create(
                employee_id=employee_id,
                project_id=project_id,
                start_date=start,
                end_date=end,
                allocated_hours=hours,
                role=role,
                status=status,
                notes=notes,
            )
            for employee_id in employee_ids
        ]

        # each create targets a distinct new row, so these may run concurrently
        self._state = EngineState.PERSISTING
        results = await asyncio.gather(
            *(
                self._persist_allocation(self._store.create, payload, failure="Failed to create allocation")
                for payload in payloads
            ),
            return_exceptions=True,
        )
        created = [r for r in results if isinstance(r, Allocation)]
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            await self._discard_created(created)
            raise PersistenceError("Failed to create allocation") from errors[0]

        self._state = EngineState.APPLYING
        for alloc in created:
            self._put(alloc)
        self._history.record(Operation(
            type=OperationType.CREATE,
            allocation_ids=tuple(a.id for a in created),
            new_data=tuple(created),
        ))
        self._recompute()
        logger.info(f"Created {len(created)} allocation(s) for project {project_id}")
        self._notify(f"Created {len(created)} allocation(s)", NotificationKind.SUCCESS)

    async def _update(self, allocation_id: int, updates: Any) -> None:
        self._state = EngineState.VALIDATING
        old = self._require(allocation_id)

        if isinstance(updates, allocation_schemas.AllocationUpdate):
            model = updates
        else:
            try:
                model = allocation_schemas.AllocationUpdate.model_validate(updates)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid update: {_first_error(e)}") from e

        changes = {
            k: v for k, v in model.model_dump(exclude_unset=True).items()
            if v is not None or k == "notes"
        }
        if not changes:
            raise ValidationError("No changes to apply")

        merged = replace(old, **changes)
        if merged.start_date > merged.end_date:
            raise ValidationError("Invalid update: start_date must be on or before end_date")
        if "employee_id" in changes and not any(e.id == merged.employee_id for e in self._employees):
            raise NotFoundError(EMPLOYEE_NOT_FOUND)

        self._state = EngineState.PERSISTING
        updated = await self._persist_allocation(
            self._store.update, allocation_id, changes, failure="Failed to update allocation",
        )

        self._state = EngineState.APPLYING
        self._put(updated)
        self._history.record(Operation(
            type=OperationType.UPDATE,
            allocation_ids=(allocation_id,),
            old_data=(old,),
            new_data=(updated,),
        ))
        self._recompute()
        logger.info(f"Updated allocation {allocation_id}: {sorted(changes)}")

    async def _delete(self, allocation_ids: list[int]) -> None:
        """
        Delete each id through the store.

        On partial failure the call still fails, but rows the store did delete
        are removed from memory and recorded, so the set mirrors the store
        rather than staying exactly as it was before the call.
        """
        self._state = EngineState.VALIDATING
        ids = list(dict.fromkeys(allocation_ids))
        if not ids:
            raise ValidationError("No allocations selected")
        old = [self._require(i) for i in ids]

        self._state = EngineState.PERSISTING
        results = await asyncio.gather(
            *(self._persist(self._store.delete, i, failure="Failed to delete allocations") for i in ids),
            return_exceptions=True,
        )
        deleted = [alloc for alloc, r in zip(old, results) if not isinstance(r, BaseException)]
        errors = [r for r in results if isinstance(r, BaseException)]

        # whatever the store did delete is gone, failed or not
        if deleted:
            self._state = EngineState.APPLYING
            for alloc in deleted:
                self._drop(alloc.id)
            self._history.record(Operation(
                type=OperationType.DELETE,
                allocation_ids=tuple(a.id for a in deleted),
                old_data=tuple(deleted),
            ))
            self._recompute()

        if errors:
            raise PersistenceError("Failed to delete allocations") from errors[0]

        logger.info(f"Deleted allocation(s) {ids}")
        self._notify(f"Deleted {len(deleted)} allocation(s)", NotificationKind.SUCCESS)

    # ==================== Bulk ====================

    async def _bulk(self, kind: str, allocation_ids: list[int], params: dict) -> BulkOperationResult:
        result = BulkOperationResult()

        for allocation_id in allocation_ids:
            try:
                if kind == "move":
                    await self._move(allocation_id, params["target_employee_id"], params["target_date"])
                elif kind == "update":
                    await self._update(allocation_id, params["updates"])
                else:
                    await self._delete([allocation_id])
            except SchedulingError as e:
                self._state = EngineState.FAILED
                logger.warning(f"Bulk {kind} failed for allocation {allocation_id}: {_describe(e)}")
                result.failed.append(allocation_id)
                result.errors.append(BulkItemError(allocation_id=allocation_id, error=_describe(e)))
            else:
                result.successful.append(allocation_id)

        if result.failed:
            self._notify(
                f"Bulk {kind}: {len(result.successful)} succeeded, {len(result.failed)} failed",
                NotificationKind.ERROR,
            )
        else:
            self._notify(f"Bulk {kind}: {len(result.successful)} allocation(s) processed", NotificationKind.SUCCESS)
        return result

    # ==================== Undo / redo ====================

    async def _undo(self) -> None:
        op = self._history.current()
        if op is None:
            raise ValidationError("Nothing to undo")
        await self._replay(op, forward=False)
        self._history.step_back()
        self._notify(f"Undid {op.type.value}", NotificationKind.INFO)

    async def _redo(self) -> None:
        op = self._history.next()
        if op is None:
            raise ValidationError("Nothing to redo")
        await self._replay(op, forward=True)
        self._history.step_forward()
        self._notify(f"Redid {op.type.value}", NotificationKind.INFO)

    async def _replay(self, op: Operation, forward: bool) -> None:
        """
        Re-issue store calls that revert (forward=False) or re-apply an operation.

        Each item is applied in memory as soon as the store accepts it, so the
        set always mirrors the store. If a replay fails part-way the history
        can no longer be replayed safely and is cleared.
        """
        self._state = EngineState.PERSISTING
        progress = [0]
        try:
            if op.type == OperationType.CREATE:
                if forward:
                    await self._recreate(op.new_data, progress)
                else:
                    await self._remove(op.new_data, progress)
            elif op.type == OperationType.DELETE:
                if forward:
                    await self._remove(op.old_data, progress)
                else:
                    await self._recreate(op.old_data, progress)
            else:
                for alloc in (op.new_data if forward else op.old_data):
                    await self._restore(alloc)
                    progress[0] += 1
        except PersistenceError:
            if progress[0]:
                logger.warning(f"Partial replay of {op.type.value} operation; clearing history")
                self._history.clear()
                self._recompute()
            raise

        self._state = EngineState.APPLYING
        self._recompute()
        logger.info(f"Replayed {op.type.value} ({'redo' if forward else 'undo'}) for {list(op.allocation_ids)}")

    async def _remove(self, allocs: Iterable[Allocation], progress: list[int]) -> None:
        for alloc in allocs:
            await self._persist(self._store.delete, alloc.id, failure="Failed to delete allocation")
            self._drop(alloc.id)
            progress[0] += 1

    async def _recreate(self, allocs: Iterable[Allocation], progress: list[int]) -> None:
        # the store assigns fresh ids, so the history is rewritten to follow them
        mapping: dict[int, int] = {}
        try:
            for alloc in allocs:
                created = await self._persist_allocation(
                    self._store.create, alloc.to_fields(), failure="Failed to create allocation",
                )
                self._put(created)
                mapping[alloc.id] = created.id
                progress[0] += 1
        finally:
            self._history.remap_ids(mapping)

    async def _restore(self, alloc: Allocation) -> None:
        restored = await self._persist_allocation(
            self._store.update, alloc.id, alloc.to_fields(), failure="Failed to update allocation",
        )
        self._put(restored)

    # ==================== Refresh ====================

    async def _refresh(self) -> None:
        self._state = EngineState.PERSISTING
        failure = "Failed to refresh allocation data"
        rows = await self._persist(self._store.list, failure=failure)
        try:
            fresh = [allocation_schemas.normalize_allocation(r) for r in rows or []]
        except pydantic.ValidationError as e:
            logger.error(f"{failure}: {e}")
            raise PersistenceError(failure) from e

        self._state = EngineState.APPLYING
        self._allocations = {a.id: a for a in fresh}
        self._prune_selection()
        self._recompute()
        logger.info(f"Refreshed {len(fresh)} allocation(s) from store")

    # ==================== Helpers ====================

    def _validated_create(self, **data: Any) -> dict:
        try:
            return allocation_schemas.AllocationCreate(**data).model_dump()
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid allocation: {_first_error(e)}") from e

    def _require(self, allocation_id: int) -> Allocation:
        alloc = self._allocations.get(allocation_id)
        if alloc is None:
            raise NotFoundError(ALLOCATION_NOT_FOUND)
        return alloc

    async def _persist(self, call: Callable, *args: Any, failure: str) -> Any:
        """Every store rejection, whatever its cause, becomes a PersistenceError."""
        try:
            return await call(*args)
        except Exception as e:
            logger.error(f"{failure}: {e!r}")
            raise PersistenceError(failure) from e

    async def _persist_allocation(self, call: Callable, *args: Any, failure: str) -> Allocation:
        raw = await self._persist(call, *args, failure=failure)
        if raw is None:
            logger.error(f"{failure}: store returned nothing")
            raise PersistenceError(failure)
        try:
            return allocation_schemas.normalize_allocation(raw)
        except pydantic.ValidationError as e:
            logger.error(f"{failure}: unreadable store response: {e}")
            raise PersistenceError(failure) from e

    async def _discard_created(self, created: list[Allocation]) -> None:
        for alloc in created:
            try:
                await self._store.delete(alloc.id)
            except Exception as e:
                logger.warning(f"Could not roll back allocation {alloc.id}: {e!r}")

    def _put(self, alloc: Allocation) -> None:
        self._allocations[alloc.id] = alloc

    def _drop(self, allocation_id: int) -> None:
        self._allocations.pop(allocation_id, None)
        self._selection.selected_allocations.discard(allocation_id)

    def _prune_selection(self) -> None:
        self._selection.selected_allocations &= set(self._allocations)

    def _recompute(self) -> None:
        allocs = self.allocations
        self._conflicts = detect_conflicts(allocs, self._employees)
        self._lanes = compute_lanes(self._employees, allocs)
        self._emit(self._on_allocation_change, allocs)
        self._emit(self._on_conflict_detected, self.conflicts)

    def _emit(self, callback: Optional[Callable], payload: Any) -> None:
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:
            logger.exception("Allocation engine callback failed")

    def _notify(self, message: str, kind: NotificationKind) -> None:
        """Fire-and-forget: a failing sink never changes an operation's outcome."""
        try:
            result = self._sink.notify(message, kind)
        except Exception:
            logger.exception("Notification sink failed")
            return
        if inspect.isawaitable(result):
            self._track(asyncio.ensure_future(result))

"""
Bounded linear undo/redo history.
"""

from dataclasses import replace
from typing import Optional

from .types import Allocation, Operation


class OperationLog:
    """
    Array-backed history with a cursor pointing at the most recently applied
    operation. Recording after an undo discards the redo tail; recording past
    max_size evicts the oldest entry.
    """

    def __init__(self, max_size: int = 50):
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self.max_size = max_size
        self._operations: list[Operation] = []
        self._current_index = -1

    @property
    def operations(self) -> list[Operation]:
        return list(self._operations)

    @property
    def current_index(self) -> int:
        return self._current_index

    def __len__(self) -> int:
        return len(self._operations)

    @property
    def can_undo(self) -> bool:
        return self._current_index >= 0

    @property
    def can_redo(self) -> bool:
        return self._current_index < len(self._operations) - 1

    def record(self, operation: Operation) -> None:
        del self._operations[self._current_index + 1:]
        self._operations.append(operation)
        if len(self._operations) > self.max_size:
            self._operations.pop(0)
        self._current_index = len(self._operations) - 1

    def current(self) -> Optional[Operation]:
        """The operation an undo would revert."""
        if not self.can_undo:
            return None
        return self._operations[self._current_index]

    def next(self) -> Optional[Operation]:
        """The operation a redo would re-apply."""
        if not self.can_redo:
            return None
        return self._operations[self._current_index + 1]

    def step_back(self) -> Operation:
        if not self.can_undo:
            raise IndexError("Nothing to undo")
        operation = self._operations[self._current_index]
        self._current_index -= 1
        return operation

    def step_forward(self) -> Operation:
        if not self.can_redo:
            raise IndexError("Nothing to redo")
        self._current_index += 1
        return self._operations[self._current_index]

    def remap_ids(self, mapping: dict[int, int]) -> None:
        """
        Rewrite allocation ids across the whole history. Needed when a replay
        re-creates an allocation and the store hands back a new id.
        """
        if not mapping:
            return

        def _remap(alloc: Allocation) -> Allocation:
            if alloc.id in mapping:
                return replace(alloc, id=mapping[alloc.id])
            return alloc

        self._operations = [
            replace(
                op,
                allocation_ids=tuple(mapping.get(i, i) for i in op.allocation_ids),
                old_data=tuple(_remap(a) for a in op.old_data),
                new_data=tuple(_remap(a) for a in op.new_data),
            )
            for op in self._operations
        ]

    def clear(self) -> None:
        self._operations.clear()
        self._current_index = -1

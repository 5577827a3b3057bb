"""Dispatch queue: in-memory priority queue with predicate dequeue.

Ordering key is ``(priority ascending, submission sequence ascending)``:
lower numbers are more urgent, and equal priorities are FIFO.

``dequeue_next(predicate)`` scans in that order and atomically removes the
first entry the predicate accepts. Entries it skips stay exactly where they
are, so an execution that cannot be serviced right now keeps its place
relative to later arrivals.

.. code-block:: text

    priority levels (sorted)        per-level FIFO
    ┌────┐
    │  1 │ ──> [exec_a, exec_d]
    │  5 │ ──> [exec_b, exec_c, exec_e]
    │  9 │ ──> [exec_f]
    └────┘
    enqueue(e)           append to its level's deque (new level: bisect insert)
    dequeue_next(pred)   first e in level order with pred(e) → removed
    remove(id)           drop a queued entry (cancellation)
    requeue(entry)       put a dequeued entry back under its original sequence

The queue is guarded by a ``threading.Lock`` that covers only the queue's
own structures; predicates must be cheap and must not call back into the
queue.
"""

from __future__ import annotations

import bisect
import threading
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from conduit.core.errors import ValidationError
from conduit.execution.models import Execution


@dataclass(order=True)
class QueueEntry:
    priority: int
    sequence: int
    execution: Execution = field(compare=False)


class DispatchQueue:
    """Thread-safe priority queue of executions awaiting a provider."""

    def __init__(self) -> None:
        self._levels: dict[int, deque[QueueEntry]] = {}
        self._priorities: list[int] = []
        self._index: dict[str, QueueEntry] = {}
        self._sequence = 0
        self._lock = threading.Lock()

    def enqueue(self, execution: Execution) -> QueueEntry:
        """Add *execution*.

        Raises:
            ValidationError: If the execution id is already queued.
        """
        with self._lock:
            self._check_absent(execution)
            self._sequence += 1
            entry = QueueEntry(execution.priority, self._sequence, execution)
            self._level(entry.priority).append(entry)
            self._index[execution.id] = entry
            return entry

    def requeue(self, entry: QueueEntry) -> QueueEntry:
        """Put a previously dequeued entry back at its original position.

        The entry keeps its sequence number, so it stays ahead of same-priority
        executions that arrived after it.

        Raises:
            ValidationError: If the execution id is already queued.
        """
        with self._lock:
            self._check_absent(entry.execution)
            bisect.insort(self._level(entry.priority), entry)
            self._index[entry.execution.id] = entry
            return entry

    def dequeue_entry(
        self, predicate: Callable[[Execution], bool] | None = None
    ) -> QueueEntry | None:
        """Remove and return the first entry (in order) accepted by *predicate*."""
        with self._lock:
            for priority in self._priorities:
                level = self._levels[priority]
                for entry in level:
                    if predicate is None or predicate(entry.execution):
                        level.remove(entry)
                        self._drop_level_if_empty(priority)
                        del self._index[entry.execution.id]
                        return entry
            return None

    def dequeue_next(
        self, predicate: Callable[[Execution], bool] | None = None
    ) -> Execution | None:
        """Remove and return the first execution (in order) accepted by *predicate*.

        Returns None if the queue is empty or nothing matches.
        """
        entry = self.dequeue_entry(predicate)
        return entry.execution if entry else None

    def remove(self, execution_id: str) -> Execution | None:
        """Remove a queued execution by id. Returns it, or None if absent."""
        with self._lock:
            entry = self._index.pop(execution_id, None)
            if entry is None:
                return None
            self._levels[entry.priority].remove(entry)
            self._drop_level_if_empty(entry.priority)
            return entry.execution

    def peek_all(self) -> list[Execution]:
        """Snapshot of queued executions in dispatch order."""
        with self._lock:
            return [e.execution for e in self._iter_entries()]

    def get(self, execution_id: str) -> Execution | None:
        entry = self._index.get(execution_id)
        return entry.execution if entry else None

    def _iter_entries(self) -> Iterator[QueueEntry]:
        for priority in self._priorities:
            yield from self._levels[priority]

    def _check_absent(self, execution: Execution) -> None:
        if execution.id in self._index:
            raise ValidationError(
                f"Execution {execution.id} is already queued", field="execution_id"
            )

    def _level(self, priority: int) -> deque[QueueEntry]:
        level = self._levels.get(priority)
        if level is None:
            level = self._levels[priority] = deque()
            bisect.insort(self._priorities, priority)
        return level

    def _drop_level_if_empty(self, priority: int) -> None:
        if not self._levels[priority]:
            del self._levels[priority]
            self._priorities.remove(priority)

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, execution_id: object) -> bool:
        return execution_id in self._index

    def __repr__(self) -> str:
        return f"DispatchQueue(size={len(self)}, priorities={self._priorities})"

"""Mutable gate state behind an injectable store.

The confidence gate keeps no state of its own: task workflow records and the
research quota live here, and every read-modify-write happens in one call.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol

from .errors import TaskBusyError
from .types import ConfidenceLevel, DelegationTask, MergedResponse


class GateState(str, Enum):
    EVALUATING = "evaluating"
    AUTO_PROCEED = "auto_proceed"
    AWAITING_HUMAN = "awaiting_human"
    RESEARCHING = "researching"
    RESOLVED = "resolved"


@dataclass
class TaskRecord:
    """Workflow state for one task id."""

    task_id: str
    state: GateState
    research_count: int = 0
    tasks: tuple[DelegationTask, ...] = ()
    merged: MergedResponse | None = None
    confidence_level: ConfidenceLevel | None = None
    rationale: str = ""
    updated_at: float = 0.0


@dataclass
class ResearchQuota:
    """Fixed-window counter of automatic research escalations."""

    window_start: float
    count: int = 0
    limit: int = 5
    window_s: float = 3600.0

    def _roll(self, now: float) -> None:
        if now - self.window_start >= self.window_s:
            self.window_start = now
            self.count = 0

    def remaining(self, now: float) -> int:
        self._roll(now)
        return max(0, self.limit - self.count)

    def try_consume(self, now: float) -> bool:
        self._roll(now)
        if self.count >= self.limit:
            return False
        self.count += 1
        return True


class GateStateStore(Protocol):
    def claim_new(self, task_id: str) -> TaskRecord: ...

    def transition(self, task_id: str, expected: GateState, new: GateState) -> bool: ...

    def get(self, task_id: str) -> TaskRecord | None: ...

    def update(self, task_id: str, **fields: Any) -> None: ...

    def release(self, task_id: str) -> None: ...

    def try_consume_research(self, limit: int, window_s: float) -> bool: ...

    def research_remaining(self, limit: int, window_s: float) -> int: ...


class InMemoryStateStore:
    """
    Thread-safe process-local store. Pass ``clock`` to control time in tests.

    Resolved records are kept so a task id cannot be reused, which makes
    memory grow with the number of task ids seen by the process. Set
    ``resolved_ttl_s`` to forget resolved records after that many seconds;
    active records are never evicted.
    """

    def __init__(
        self, clock: Callable[[], float] = time.time, resolved_ttl_s: float | None = None
    ):
        if resolved_ttl_s is not None and resolved_ttl_s <= 0:
            raise ValueError("resolved_ttl_s must be positive")
        self.clock = clock
        self.resolved_ttl_s = resolved_ttl_s
        self._lock = threading.Lock()
        self._records: dict[str, TaskRecord] = {}
        self._quota: ResearchQuota | None = None

    def _evict_resolved(self) -> None:
        # Caller holds the lock.
        if self.resolved_ttl_s is None:
            return
        cutoff = self.clock() - self.resolved_ttl_s
        expired = [
            task_id
            for task_id, record in self._records.items()
            if record.state == GateState.RESOLVED and record.updated_at <= cutoff
        ]
        for task_id in expired:
            del self._records[task_id]

    def claim_new(self, task_id: str) -> TaskRecord:
        with self._lock:
            self._evict_resolved()
            existing = self._records.get(task_id)
            if existing is not None:
                raise TaskBusyError(task_id, existing.state.value)
            record = TaskRecord(task_id=task_id, state=GateState.EVALUATING, updated_at=self.clock())
            self._records[task_id] = record
            return dataclasses.replace(record)

    def transition(self, task_id: str, expected: GateState, new: GateState) -> bool:
        with self._lock:
            record = self._records.get(task_id)
            if record is None or record.state != expected:
                return False
            record.state = new
            record.updated_at = self.clock()
            return True

    def get(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            record = self._records.get(task_id)
            return dataclasses.replace(record) if record is not None else None

    def update(self, task_id: str, **fields: Any) -> None:
        with self._lock:
            record = self._records[task_id]
            for name, value in fields.items():
                if name in ("task_id", "state"):
                    raise ValueError(f"{name} cannot be updated directly")
                setattr(record, name, value)
            record.updated_at = self.clock()

    def release(self, task_id: str) -> None:
        with self._lock:
            self._records.pop(task_id, None)

    def _quota_for(self, limit: int, window_s: float) -> ResearchQuota:
        if self._quota is None:
            self._quota = ResearchQuota(window_start=self.clock(), limit=limit, window_s=window_s)
        else:
            self._quota.limit = limit
            self._quota.window_s = window_s
        return self._quota

    def try_consume_research(self, limit: int, window_s: float) -> bool:
        with self._lock:
            return self._quota_for(limit, window_s).try_consume(self.clock())

    def research_remaining(self, limit: int, window_s: float) -> int:
        with self._lock:
            return self._quota_for(limit, window_s).remaining(self.clock())

"""Core data types for the delegation core.

Fact types are frozen and hold tuples, so a snapshot cannot change once built.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class ConfidenceLevel(str, Enum):
    """Worker-declared confidence, ordered low < medium < high."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]

    @classmethod
    def minimum(cls, levels: list[ConfidenceLevel]) -> ConfidenceLevel:
        """Most conservative level; an empty list is treated as low."""
        if not levels:
            return cls.LOW
        return min(levels, key=lambda lvl: lvl.rank)


class WorkerKind(str, Enum):
    """Closed set of worker kinds fixed at deploy time."""

    RESEARCH = "research"
    SECURITY_SCAN = "security_scan"
    TEST_GENERATION = "test_generation"
    REFACTOR_ANALYSIS = "refactor_analysis"
    DOCUMENTATION = "documentation"


class GateAction(str, Enum):
    AUTO_PROCEED = "auto_proceed"
    USER_CHOICE = "user_choice"
    RESEARCH_TRIGGERED = "research_triggered"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Unavailable:
    """Marker for a fact whose sub-fetch failed or timed out."""

    field: str
    reason: str


@dataclass(frozen=True)
class RepositoryFact:
    root_path: str
    remote_url: str | None
    is_clean: bool


@dataclass(frozen=True)
class BranchFact:
    current_name: str
    upstream_name: str | None
    is_tracking: bool
    commits_ahead: int = 0
    commits_behind: int = 0


@dataclass(frozen=True)
class ChangeSet:
    staged: tuple[str, ...] = ()
    modified: tuple[str, ...] = ()
    untracked: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()
    rejected_paths: int = 0  # Paths dropped by traversal validation

    @property
    def is_empty(self) -> bool:
        return not (self.staged or self.modified or self.untracked or self.deleted)


@dataclass(frozen=True)
class CommitFact:
    full_hash: str
    short_hash: str
    author_name: str
    author_email: str
    committed_at: datetime
    subject: str
    body: str


@dataclass(frozen=True)
class DiffHunk:
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: tuple[str, ...] = ()


@dataclass(frozen=True)
class DiffFile:
    path: str
    change_kind: ChangeKind
    additions: int = 0
    deletions: int = 0
    hunks: tuple[DiffHunk, ...] = ()
    old_path: str | None = None
    binary: bool = False


@dataclass(frozen=True)
class DiffTotals:
    files_changed: int = 0
    additions: int = 0
    deletions: int = 0


@dataclass(frozen=True)
class DiffFact:
    files: tuple[DiffFile, ...] = ()
    totals: DiffTotals = field(default_factory=DiffTotals)


CONTEXT_FIELDS = ("repository", "branch", "changes", "commits", "diff")


@dataclass(frozen=True)
class GitContext:
    """Sanitized, read-only snapshot of repository facts handed to workers."""

    repository: Union[RepositoryFact, Unavailable]
    branch: Union[BranchFact, Unavailable]
    changes: Union[ChangeSet, Unavailable]
    commits: Union[tuple[CommitFact, ...], Unavailable]
    diff: Union[DiffFact, Unavailable]
    sanitized: bool = False
    captured_at: float = 0.0

    @property
    def unavailable(self) -> tuple[Unavailable, ...]:
        return tuple(
            value
            for value in (self.repository, self.branch, self.changes, self.commits, self.diff)
            if isinstance(value, Unavailable)
        )

    @property
    def is_partial(self) -> bool:
        return bool(self.unavailable)

    @property
    def changed_files(self) -> list[dict[str, str]]:
        """Flat list of changed paths with their status label."""
        if isinstance(self.changes, Unavailable):
            return []
        files: list[dict[str, str]] = []
        for status in ("staged", "modified", "untracked", "deleted"):
            for path in getattr(self.changes, status):
                files.append({"path": path, "status": status})
        return files

    def to_payload(self, fields: tuple[str, ...] | None = None) -> dict[str, Any]:
        """JSON-safe rendering of the selected fields (all by default)."""
        selected = fields or CONTEXT_FIELDS
        payload: dict[str, Any] = {}
        for name in CONTEXT_FIELDS:
            if name in selected:
                payload[name] = _jsonable(getattr(self, name))
        if "changes" in selected:
            payload["changed_files"] = self.changed_files
        payload["sanitized"] = self.sanitized
        payload["unavailable"] = [u.field for u in self.unavailable if u.field in selected]
        return payload


def _jsonable(value: Any) -> Any:
    if isinstance(value, Unavailable):
        return {"unavailable": True, "reason": value.reason}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class DelegationTask:
    """Caller-facing unit of work for one worker."""

    task_id: str
    instruction: str
    worker_kind: WorkerKind
    focus_areas: tuple[str, ...] = ()
    context_fields: tuple[str, ...] | None = None


@dataclass
class MergedResponse:
    """Per-cycle result of one orchestrated delegation."""

    task_id: str
    confidence_level: ConfidenceLevel
    rationale: str
    uncertainty_factors: list[str] = field(default_factory=list)
    responses: list[Any] = field(default_factory=list)
    partial_context: bool = False


@dataclass(frozen=True)
class GateDecision:
    """One append-only audit record of a gate decision."""

    task_id: str
    confidence_level: ConfidenceLevel
    action: GateAction
    rationale: str
    actor: str
    timestamp: float
    choice: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "confidence_level": self.confidence_level.value,
            "action": self.action.value,
            "rationale": self.rationale,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "iso_time": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            "choice": self.choice,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> GateDecision:
        return cls(
            task_id=str(data["task_id"]),
            confidence_level=ConfidenceLevel(data["confidence_level"]),
            action=GateAction(data["action"]),
            rationale=str(data.get("rationale", "")),
            actor=str(data.get("actor", "")),
            timestamp=float(data["timestamp"]),
            choice=data.get("choice"),
        )

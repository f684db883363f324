"""Error taxonomy for the delegation core.

Input that an attacker could influence halts the task (ValidationError).
Partial unavailability is absorbed and shows up as lowered confidence.
"""

from __future__ import annotations


class HandoffError(Exception):
    """Base class for all handoff errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(HandoffError):
    """Malformed or disallowed input. Never retried."""


class ExecutionError(HandoffError):
    """The underlying command failed. The message is already redacted."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class NotARepositoryError(HandoffError):
    """No git repository root could be discovered."""


class MalformedResponseError(HandoffError):
    """A worker response did not match the delegation contract."""


class QuotaExceededError(HandoffError):
    """The research quota for the current window is spent."""


class TaskBusyError(HandoffError):
    """A workflow for this task id is already active or resolved."""

    def __init__(self, task_id: str, state: str):
        self.task_id = task_id
        self.state = state
        super().__init__(f"Task {task_id} is already {state}")


class GateStateError(HandoffError):
    """An illegal transition was requested on the confidence gate."""


class AuditWriteError(HandoffError, OSError):
    """An audit record could not be written completely."""


class PartialContextWarning(UserWarning):
    """A git fact degraded to unavailable; downstream confidence is capped."""

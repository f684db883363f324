"""Append-only audit trail of gate decisions (one JSON object per line)."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterator
from pathlib import Path

from .errors import AuditWriteError
from .types import GateDecision

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_PATH = ".handoff/audit.jsonl"

# Shared by every AuditLog in the process so two instances on one file
# cannot interleave their writes.
_WRITE_LOCK = threading.Lock()


class AuditLog:
    """
    Durable decision log.

    Each record is written with a single ``os.write`` on an ``O_APPEND``
    descriptor, so a record is either fully present or reported as failed.
    The file is never rewritten or truncated here; rotation is external.
    """

    def __init__(self, path: Path | str, fsync: bool = False):
        self.path = Path(path)
        self.fsync = fsync

    def append(self, decision: GateDecision) -> None:
        line = (json.dumps(decision.to_record(), ensure_ascii=False) + "\n").encode("utf-8")
        with _WRITE_LOCK:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
            except OSError as e:
                raise AuditWriteError(f"Cannot open audit log: {e.strerror or e}") from e
            try:
                written = os.write(fd, line)
                if written != len(line):
                    raise AuditWriteError(
                        f"Short audit write: {written} of {len(line)} bytes for task {decision.task_id}"
                    )
                if self.fsync:
                    os.fsync(fd)
            except AuditWriteError:
                raise
            except OSError as e:
                raise AuditWriteError(f"Audit write failed: {e.strerror or e}") from e
            finally:
                os.close(fd)

    def records(self) -> Iterator[GateDecision]:
        """Yield decisions in write order, skipping corrupt lines."""
        if not self.path.exists():
            return
        with open(self.path, encoding="utf-8") as f:
            for lineno, ln in enumerate(f, start=1):
                ln = ln.strip()
                if not ln:
                    continue
                try:
                    yield GateDecision.from_record(json.loads(ln))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    logger.warning("Skipping corrupt audit record at line %d", lineno)
                    continue

    def for_task(self, task_id: str) -> list[GateDecision]:
        return [d for d in self.records() if d.task_id == task_id]

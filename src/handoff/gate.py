"""Confidence-gated decision state machine.

    Evaluating -> AutoProceed   -> Resolved(auto_proceed)
    Evaluating -> AwaitingHuman -> Resolved(user_choice | cancelled)
                                -> Researching (choice "research")
    Evaluating -> Researching   -> Evaluating (at most once per task id)

Research is bounded twice: once per task id, and by a process-wide quota
held in the state store. AwaitingHuman is returned to the caller as a
pending prompt; nothing blocks or holds a lock while a human decides.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .agents import SupportsRun, build_workers
from .approval import ALL_CHOICES, HumanChannel, HumanChoice, HumanPrompt
from .audit import AuditLog
from .config import GateConfig, HandoffConfig, load_config
from .contract import TASK_ID_PATTERN
from .errors import AuditWriteError, GateStateError, QuotaExceededError, ValidationError
from .git_facts import GitFactExtractor
from .orchestrator import Orchestrator
from .safety.telemetry import TelemetrySink
from .state import GateState, GateStateStore, InMemoryStateStore
from .types import (
    ConfidenceLevel,
    DelegationTask,
    GateAction,
    GateDecision,
    MergedResponse,
    WorkerKind,
)

logger = logging.getLogger(__name__)

MAX_RESEARCH_RUNS = 1
RESEARCH_LIMIT_REACHED = "research limit reached"
RESEARCH_QUOTA_EXCEEDED = "research quota exceeded"

__all__ = [
    "ConfidenceGate",
    "build_gate",
    "GateResult",
    "GateState",
    "HumanPrompt",
    "MAX_RESEARCH_RUNS",
]


@dataclass
class GateResult:
    """Outcome of one gate call: either resolved or pending a human."""

    task_id: str
    state: GateState
    confidence_level: ConfidenceLevel
    rationale: str
    action: GateAction | None = None
    choice: HumanChoice | None = None
    pending: HumanPrompt | None = None
    merged: MergedResponse | None = None
    research_count: int = 0
    decisions: list[GateDecision] = field(default_factory=list)
    audit_error: AuditWriteError | None = None

    @property
    def resolved(self) -> bool:
        return self.state == GateState.RESOLVED


class ConfidenceGate:
    """Routes merged worker confidence to auto-proceed, a human, or research."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        audit: AuditLog,
        store: GateStateStore | None = None,
        config: GateConfig | None = None,
        telemetry: TelemetrySink | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.orchestrator = orchestrator
        self.audit = audit
        self.store = store or InMemoryStateStore(clock=clock)
        self.config = config or GateConfig()
        self.telemetry = telemetry or TelemetrySink.disabled()
        self.clock = clock

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def evaluate(self, task_id: str, tasks: Sequence[DelegationTask]) -> GateResult:
        """
        Start a workflow for ``task_id``.

        Raises:
            TaskBusyError: The task id is active or already resolved
            ValidationError, NotARepositoryError: Delegation could not start;
                the claim is released and nothing is audited

        A failure after research was triggered does not raise; the task moves
        to AwaitingHuman with a "research failed" note instead.
        """
        if not isinstance(task_id, str) or not re.fullmatch(TASK_ID_PATTERN, task_id):
            raise ValidationError("Invalid task id")
        if not tasks:
            raise ValidationError("At least one delegation task is required")

        self.store.claim_new(task_id)
        try:
            self.store.update(task_id, tasks=tuple(tasks))
            merged = await self.orchestrator.delegate_merged(list(tasks), task_id=task_id)
            result = GateResult(
                task_id, GateState.EVALUATING, merged.confidence_level, merged.rationale
            )
            return await self._settle(task_id, merged, result)
        except BaseException:
            self._abandon(task_id)
            raise

    async def resume(
        self, task_id: str, choice: HumanChoice | str, actor: str = "human"
    ) -> GateResult:
        """
        Continue a workflow that is awaiting a human decision.

        Raises:
            ValidationError: ``choice`` is not one of the fixed tokens
            GateStateError: The task is not awaiting a human (or another
                resume won the race)
        """
        choice = HumanChoice.parse(choice)
        record = self.store.get(task_id)
        if record is None or record.merged is None:
            raise GateStateError(f"Task {task_id} has no pending decision")
        merged = record.merged
        result = GateResult(
            task_id,
            GateState.AWAITING_HUMAN,
            merged.confidence_level,
            record.rationale,
            merged=merged,
            research_count=record.research_count,
        )

        if choice == HumanChoice.RESEARCH:
            claimed = self.store.transition(
                task_id, GateState.AWAITING_HUMAN, GateState.RESEARCHING
            )
            if not claimed:
                raise self._not_awaiting(task_id)
            try:
                self._claim_research(task_id)
            except QuotaExceededError as e:
                return self._await_human(
                    task_id, merged, GateState.RESEARCHING, result, note=str(e)
                )
            try:
                researched = await self._research(task_id, merged, result, actor=actor)
                if researched is None:
                    return result
                return await self._settle(task_id, researched, result)
            except BaseException:
                self._abandon(task_id)
                raise

        if not self.store.transition(task_id, GateState.AWAITING_HUMAN, GateState.RESOLVED):
            raise self._not_awaiting(task_id)
        if choice == HumanChoice.CANCEL:
            action = GateAction.CANCELLED
        else:
            action = GateAction.USER_CHOICE
        return self._finish(task_id, merged, result, action, actor=actor, choice=choice)

    async def run(
        self, task_id: str, tasks: Sequence[DelegationTask], channel: HumanChannel
    ) -> GateResult:
        """Drive a workflow to resolution, asking ``channel`` whenever a human is needed."""
        result = await self.evaluate(task_id, tasks)
        while result.pending is not None:
            choice = HumanChoice.parse(await channel.ask(result.pending))
            if choice not in result.pending.choices:
                raise ValidationError(f"Choice {choice.value!r} is not available for task {task_id}")
            result = await self.resume(task_id, choice, actor=f"human:{channel.name}")
        return result

    def research_remaining(self) -> int:
        return self.store.research_remaining(
            self.config.research_quota_limit, self.config.research_window_seconds
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _settle(self, task_id: str, merged: MergedResponse, result: GateResult) -> GateResult:
        """Run the Evaluating state until the task resolves or needs a human."""
        while True:
            result.merged = merged
            result.confidence_level = merged.confidence_level
            result.rationale = merged.rationale
            self.store.update(
                task_id,
                merged=merged,
                confidence_level=merged.confidence_level,
                rationale=merged.rationale,
            )
            level = merged.confidence_level

            if level == ConfidenceLevel.HIGH:
                self._move(task_id, GateState.EVALUATING, GateState.AUTO_PROCEED)
                self._move(task_id, GateState.AUTO_PROCEED, GateState.RESOLVED)
                note = self._quota_note(self.research_remaining())
                result.rationale = f"{merged.rationale}\n{note}"
                return self._finish(task_id, merged, result, GateAction.AUTO_PROCEED, actor="gate")

            if level == ConfidenceLevel.MEDIUM:
                return self._await_human(task_id, merged, GateState.EVALUATING, result)

            try:
                self._claim_research(task_id)
            except QuotaExceededError as e:
                return self._await_human(
                    task_id, merged, GateState.EVALUATING, result, note=str(e)
                )
            self._move(task_id, GateState.EVALUATING, GateState.RESEARCHING)
            researched = await self._research(task_id, merged, result, actor="gate")
            if researched is None:
                return result
            merged = researched

    def _claim_research(self, task_id: str) -> None:
        record = self.store.get(task_id)
        if record is not None and record.research_count >= MAX_RESEARCH_RUNS:
            raise QuotaExceededError(RESEARCH_LIMIT_REACHED)
        if not self.store.try_consume_research(
            self.config.research_quota_limit, self.config.research_window_seconds
        ):
            raise QuotaExceededError(RESEARCH_QUOTA_EXCEEDED)

    async def _research(
        self, task_id: str, merged: MergedResponse, result: GateResult, actor: str
    ) -> MergedResponse | None:
        """Run one research cycle.

        Returns None when the research delegation failed; the task is then
        awaiting a human with the pre-research findings.
        """
        record = self.store.get(task_id)
        if record is None:
            raise GateStateError(f"Task {task_id} is not known")
        research_count = record.research_count + 1
        self.store.update(task_id, research_count=research_count)
        result.research_count = research_count

        remaining = self.research_remaining()
        decision = self._decision(
            task_id,
            merged.confidence_level,
            GateAction.RESEARCH_TRIGGERED,
            f"{merged.rationale}\n{self._quota_note(remaining)}",
            actor,
        )
        self._write(decision, result)
        self.telemetry.log(
            task_id,
            "research_triggered",
            {"actor": actor, "research_count": research_count, "quota_remaining": remaining},
        )
        logger.info("Research triggered for task %s by %s", task_id, actor)

        try:
            new_merged = await self.orchestrator.delegate_merged(
                list(record.tasks),
                research=True,
                prior_factors=merged.uncertainty_factors,
                task_id=task_id,
            )
        except Exception as e:
            kind = getattr(e, "kind", type(e).__name__)
            logger.warning("Research for task %s failed: %s", task_id, kind)
            self.telemetry.log(task_id, "research_failed", {"error": kind})
            self._await_human(
                task_id, merged, GateState.RESEARCHING, result, note=f"research failed: {kind}"
            )
            return None
        self._move(task_id, GateState.RESEARCHING, GateState.EVALUATING)
        result.state = GateState.EVALUATING
        return new_merged

    def _await_human(
        self,
        task_id: str,
        merged: MergedResponse,
        from_state: GateState,
        result: GateResult,
        note: str | None = None,
    ) -> GateResult:
        self._move(task_id, from_state, GateState.AWAITING_HUMAN)
        record = self.store.get(task_id)
        research_count = record.research_count if record else 0
        remaining = self.research_remaining()

        lines = [merged.rationale]
        if note:
            lines.append(f"Automatic research unavailable: {note}.")
        lines.append(self._quota_note(remaining))
        rationale = "\n".join(lines)
        self.store.update(task_id, rationale=rationale)

        can_research = research_count < MAX_RESEARCH_RUNS and remaining > 0
        choices = ALL_CHOICES if can_research else tuple(
            c for c in ALL_CHOICES if c != HumanChoice.RESEARCH
        )
        if merged.confidence_level == ConfidenceLevel.LOW:
            recommendation = "reject: confidence is low and the findings could not be verified"
        else:
            recommendation = "review the findings, then accept or reject"

        result.state = GateState.AWAITING_HUMAN
        result.rationale = rationale
        result.research_count = research_count
        result.pending = HumanPrompt(
            task_id=task_id,
            confidence_level=merged.confidence_level,
            recommendation=recommendation,
            rationale=rationale,
            uncertainty_factors=tuple(merged.uncertainty_factors),
            choices=choices,
            research_remaining=remaining if can_research else 0,
            created_at=self.clock(),
        )
        self.telemetry.log(
            task_id,
            "awaiting_human",
            {"confidence_level": merged.confidence_level.value, "note": note},
        )
        return result

    def _finish(
        self,
        task_id: str,
        merged: MergedResponse,
        result: GateResult,
        action: GateAction,
        actor: str,
        choice: HumanChoice | None = None,
    ) -> GateResult:
        rationale = result.rationale or merged.rationale
        decision = self._decision(
            task_id,
            merged.confidence_level,
            action,
            rationale,
            actor,
            choice=choice.value if choice else None,
        )
        self._write(decision, result)
        self.store.update(task_id, rationale=rationale)

        result.state = GateState.RESOLVED
        result.action = action
        result.choice = choice
        result.rationale = rationale
        result.pending = None
        self.telemetry.log(
            task_id,
            "gate_decision",
            {
                "action": action.value,
                "confidence_level": merged.confidence_level.value,
                "choice": decision.choice,
                "actor": actor,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _decision(
        self,
        task_id: str,
        level: ConfidenceLevel,
        action: GateAction,
        rationale: str,
        actor: str,
        choice: str | None = None,
    ) -> GateDecision:
        return GateDecision(
            task_id=task_id,
            confidence_level=level,
            action=action,
            rationale=rationale,
            actor=actor,
            timestamp=self.clock(),
            choice=choice,
        )

    def _write(self, decision: GateDecision, result: GateResult) -> None:
        # The decided action stands even when the record cannot be written.
        try:
            self.audit.append(decision)
        except AuditWriteError as e:
            logger.error(
                "Audit write failed for task %s (%s): %s", decision.task_id, decision.action.value, e
            )
            self.telemetry.log(
                decision.task_id,
                "audit_write_failed",
                {"action": decision.action.value, "error": str(e)},
            )
            if result.audit_error is None:
                result.audit_error = e
        result.decisions.append(decision)

    def _abandon(self, task_id: str) -> None:
        # Once research has been audited the claim is kept, so the id cannot
        # start a second research cycle.
        record = self.store.get(task_id)
        if record is not None and record.research_count == 0:
            self.store.release(task_id)

    def _move(self, task_id: str, expected: GateState, new: GateState) -> None:
        if not self.store.transition(task_id, expected, new):
            record = self.store.get(task_id)
            current = record.state.value if record else "unknown"
            raise GateStateError(
                f"Illegal transition for task {task_id}: {expected.value} -> {new.value} "
                f"(current state: {current})"
            )

    def _not_awaiting(self, task_id: str) -> GateStateError:
        record = self.store.get(task_id)
        current = record.state.value if record else "unknown"
        return GateStateError(f"Task {task_id} is not awaiting a human decision (state: {current})")

    def _quota_note(self, remaining: int) -> str:
        return (
            f"Research quota: {remaining}/{self.config.research_quota_limit} remaining "
            f"in the current {self.config.research_window_seconds}s window."
        )


def build_gate(
    repo_path: Path | str,
    config: HandoffConfig | None = None,
    workers: Mapping[WorkerKind, SupportsRun] | None = None,
    store: GateStateStore | None = None,
) -> ConfidenceGate:
    """Wire extractor, workers, orchestrator, audit log and telemetry for one repository."""
    repo = Path(repo_path).resolve()
    config = config or load_config(repo)
    telemetry = TelemetrySink(enabled=config.telemetry.enabled, path=config.telemetry_path(repo))
    extractor = GitFactExtractor(repo, config.git.snapshot_options(), telemetry=telemetry)
    if workers is None:
        workers = build_workers(config.delegation.enabled_workers, config.worker_client)
    orchestrator = Orchestrator(extractor, workers, config, telemetry=telemetry)
    audit = AuditLog(config.audit_path(repo), fsync=config.audit.fsync)
    if store is None:
        store = InMemoryStateStore(resolved_ttl_s=config.gate.resolved_ttl_seconds)
    return ConfidenceGate(orchestrator, audit, store=store, config=config.gate, telemetry=telemetry)

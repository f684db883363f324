"""Delegation orchestrator.

One delegation cycle:
1. Take a single sanitized git snapshot
2. Build and validate one request per task (nothing is sent if any is invalid)
3. Invoke the workers in parallel and wait for all of them to settle
4. Parse each raw output through the response contract
5. Merge the responses into one conservative result
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Mapping, Sequence
from typing import overload

from .agents.base import SupportsRun
from .config import HandoffConfig
from .contract import (
    MAX_INSTRUCTION_LEN,
    DelegationRequest,
    DelegationResponse,
    build_request,
    parse_worker_output,
    unavailable_response,
    validate_request,
)
from .errors import ValidationError
from .git_facts import GitFactExtractor
from .safety.redaction import redact_text
from .safety.telemetry import TelemetrySink
from .types import ConfidenceLevel, DelegationTask, GitContext, MergedResponse, WorkerKind

logger = logging.getLogger(__name__)

PARTIAL_CONTEXT_FACTOR = "partial_git_context"


def merge_responses(
    task_id: str,
    responses: Sequence[DelegationResponse],
    partial_context: bool = False,
    unavailable_fields: Sequence[str] = (),
) -> MergedResponse:
    """
    Combine worker responses into one result.

    The merged confidence is the minimum across workers. A partial git
    context caps it at medium.
    """
    level = ConfidenceLevel.minimum([r.confidence_level for r in responses])

    rationale_lines = [
        f"[{r.worker_kind.value}] {r.confidence_rationale or '(no rationale)'}" for r in responses
    ]

    factors: list[str] = []
    for r in responses:
        for factor in r.uncertainty_factors:
            labeled = f"{r.worker_kind.value}:{factor}"
            if labeled not in factors:
                factors.append(labeled)

    if partial_context:
        if level == ConfidenceLevel.HIGH:
            level = ConfidenceLevel.MEDIUM
        factors.append(PARTIAL_CONTEXT_FACTOR)
        missing = ", ".join(unavailable_fields) or "unknown"
        rationale_lines.append(
            f"Git context was partial (unavailable: {missing}); confidence capped at medium."
        )

    return MergedResponse(
        task_id=task_id,
        confidence_level=level,
        rationale="\n".join(rationale_lines),
        uncertainty_factors=factors,
        responses=list(responses),
        partial_context=partial_context,
    )


def research_instruction(instruction: str, prior_factors: Sequence[str]) -> str:
    """Append the research directive, trimming the original to stay within limits."""
    lines = [
        "",
        "# Research Directive",
        "A previous answer to this task had low confidence. Gather more evidence from the",
        "repository facts before answering, and address each prior uncertainty factor.",
    ]
    if prior_factors:
        lines.append("Prior uncertainty factors:")
        lines.extend(f"  - {f}" for f in list(prior_factors)[:20])
    directive = "\n".join(lines)
    budget = MAX_INSTRUCTION_LEN - len(directive) - 1
    return instruction[:budget].rstrip() + "\n" + directive


class Orchestrator:
    """Fans delegation tasks out to workers and merges what comes back."""

    def __init__(
        self,
        extractor: GitFactExtractor,
        workers: Mapping[WorkerKind, SupportsRun],
        config: HandoffConfig | None = None,
        telemetry: TelemetrySink | None = None,
    ):
        self.extractor = extractor
        self.workers = dict(workers)
        self.config = config or HandoffConfig()
        self.telemetry = telemetry or TelemetrySink.disabled()

    @property
    def worker_timeout_s(self) -> float:
        return self.config.delegation.worker_timeout_ms / 1000.0

    @overload
    async def delegate(self, tasks: DelegationTask) -> DelegationResponse: ...

    @overload
    async def delegate(self, tasks: Sequence[DelegationTask]) -> list[DelegationResponse]: ...

    async def delegate(self, tasks):
        """
        Delegate one task or a batch of tasks.

        Returns a single response for a single task, otherwise one response
        per task in input order.

        Raises:
            ValidationError: Unknown worker kind or an invalid request
            NotARepositoryError: The snapshot could not find a repository
        """
        single = isinstance(tasks, DelegationTask)
        batch = [tasks] if single else list(tasks)
        _, responses = await self._run_cycle(batch, uuid.uuid4().hex[:8])
        return responses[0] if single else responses

    async def delegate_merged(
        self,
        tasks: Sequence[DelegationTask],
        *,
        research: bool = False,
        prior_factors: Sequence[str] = (),
        task_id: str | None = None,
    ) -> MergedResponse:
        """Delegate a batch and merge the responses for the confidence gate."""
        batch = list(tasks)
        if research:
            batch = [
                DelegationTask(
                    task_id=t.task_id,
                    instruction=research_instruction(t.instruction, prior_factors),
                    worker_kind=t.worker_kind,
                    focus_areas=t.focus_areas,
                    context_fields=t.context_fields,
                )
                for t in batch
            ]

        run_id = uuid.uuid4().hex[:8]
        context, responses = await self._run_cycle(batch, run_id, research=research)
        merged = merge_responses(
            task_id or batch[0].task_id,
            responses,
            partial_context=context.is_partial,
            unavailable_fields=[u.field for u in context.unavailable],
        )
        self.telemetry.log(
            run_id,
            "delegation_merged",
            {
                "task_id": merged.task_id,
                "confidence_level": merged.confidence_level.value,
                "partial_context": merged.partial_context,
            },
        )
        return merged

    def _resolve_kind(self, task: DelegationTask) -> WorkerKind:
        try:
            kind = WorkerKind(task.worker_kind)
        except ValueError:
            raise ValidationError(f"Unknown worker kind: {str(task.worker_kind)[:64]!r}") from None
        if kind not in self.workers:
            raise ValidationError(f"No worker registered for kind: {kind.value}")
        return kind

    def _build_requests(
        self, tasks: list[DelegationTask], context: GitContext
    ) -> list[DelegationRequest]:
        requests = []
        for task in tasks:
            request = build_request(
                task_id=task.task_id,
                instruction=task.instruction,
                worker_kind=self._resolve_kind(task),
                context=context,
                focus_areas=task.focus_areas,
                context_fields=task.context_fields,
            )
            # Unsanitized contexts are only accepted when sanitization was switched off.
            requests.append(
                validate_request(request, require_sanitized=self.config.git.sanitize_for_ai)
            )
        return requests

    async def _run_cycle(
        self, tasks: list[DelegationTask], run_id: str, research: bool = False
    ) -> tuple[GitContext, list[DelegationResponse]]:
        if not tasks:
            raise ValidationError("At least one delegation task is required")
        for task in tasks:
            self._resolve_kind(task)

        self.telemetry.log(
            run_id,
            "delegation_started",
            {
                "task_ids": sorted({t.task_id for t in tasks}),
                "workers": [WorkerKind(t.worker_kind).value for t in tasks],
                "research": research,
            },
        )

        context = await self.extractor.snapshot()
        requests = self._build_requests(tasks, context)

        timeout_s = self.worker_timeout_s
        results = await asyncio.gather(
            *[
                asyncio.wait_for(self.workers[r.worker_kind].run(r), timeout=timeout_s)
                for r in requests
            ],
            return_exceptions=True,
        )

        responses: list[DelegationResponse] = []
        for request, result in zip(requests, results):
            kind = request.worker_kind
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.TimeoutError):
                    reason = f"timed out after {self.config.delegation.worker_timeout_ms}ms"
                else:
                    reason = f"{type(result).__name__}: {redact_text(str(result), max_len=200)}"
                logger.warning("%s worker unavailable: %s", kind.value, reason)
                self.telemetry.log(
                    run_id,
                    "worker_unavailable",
                    {"task_id": request.task_id, "worker": kind.value, "reason": reason},
                )
                responses.append(unavailable_response(kind, reason))
                continue

            response = parse_worker_output(result, kind)
            if response.was_coerced:
                self.telemetry.log(
                    run_id,
                    "response_coerced",
                    {
                        "task_id": request.task_id,
                        "worker": kind.value,
                        "factors": response.uncertainty_factors,
                        "raw_excerpt": redact_text(result if isinstance(result, str) else ""),
                    },
                )
            self.telemetry.log(
                run_id,
                "worker_completed",
                {
                    "task_id": request.task_id,
                    "worker": kind.value,
                    "confidence_level": response.confidence_level.value,
                },
            )
            responses.append(response)

        self.telemetry.log(
            run_id,
            "delegation_completed",
            {
                "responses": len(responses),
                "unavailable_fields": [u.field for u in context.unavailable],
                "confidence_levels": [r.confidence_level.value for r in responses],
            },
        )
        return context, responses

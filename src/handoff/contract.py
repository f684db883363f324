"""Request and response contracts between the orchestrator and its workers.

Outbound requests are validated strictly; inbound worker output is never
trusted and is coerced into a conservative DelegationResponse instead.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import MalformedResponseError, ValidationError
from .types import CONTEXT_FIELDS, ConfidenceLevel, GitContext, WorkerKind

logger = logging.getLogger(__name__)

TASK_ID_PATTERN = r"^[A-Za-z0-9._:-]{1,128}$"
MAX_INSTRUCTION_LEN = 8000
MAX_FOCUS_AREAS = 16
MAX_FOCUS_AREA_LEN = 200
MAX_RATIONALE_LEN = 1000

MALFORMED_RESPONSE = "malformed_response"
WORKER_UNAVAILABLE = "worker_unavailable"
CONFIDENCE_COERCED = "confidence_coerced"


class DelegationRequest(BaseModel):
    """Outbound request to a single worker."""

    model_config = ConfigDict(frozen=True, revalidate_instances="always")

    task_id: str = Field(pattern=TASK_ID_PATTERN)
    instruction: str = Field(min_length=1, max_length=MAX_INSTRUCTION_LEN)
    focus_areas: tuple[str, ...] = Field(default=(), max_length=MAX_FOCUS_AREAS)
    context: Any  # GitContext; checked by instance rather than by schema
    context_fields: tuple[str, ...] | None = None
    worker_kind: WorkerKind

    @field_validator("context")
    @classmethod
    def validate_context(cls, v: Any) -> GitContext:
        if not isinstance(v, GitContext):
            raise ValueError("context must be a GitContext snapshot")
        return v

    @field_validator("instruction")
    @classmethod
    def validate_instruction(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("instruction must not be blank")
        return v

    @field_validator("focus_areas")
    @classmethod
    def validate_focus_areas(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for area in v:
            if not area.strip():
                raise ValueError("focus areas must not be blank")
            if len(area) > MAX_FOCUS_AREA_LEN:
                raise ValueError(f"focus area longer than {MAX_FOCUS_AREA_LEN} characters")
        return v

    @field_validator("context_fields")
    @classmethod
    def validate_context_fields(cls, v: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if v is None:
            return v
        unknown = [f for f in v if f not in CONTEXT_FIELDS]
        if unknown:
            raise ValueError(f"unknown context field(s): {', '.join(sorted(set(unknown)))}")
        return v

    def context_payload(self) -> dict[str, Any]:
        return self.context.to_payload(self.context_fields)


class DelegationResponse(BaseModel):
    """Validated worker response envelope."""

    worker_kind: WorkerKind
    findings: Any = Field(default_factory=list)
    confidence_level: ConfidenceLevel
    confidence_rationale: str = ""
    uncertainty_factors: list[str] = Field(default_factory=list)
    research_performed: bool = False

    @field_validator("confidence_rationale")
    @classmethod
    def cap_rationale(cls, v: str) -> str:
        return v[:MAX_RATIONALE_LEN]

    @property
    def was_coerced(self) -> bool:
        return any(
            f == MALFORMED_RESPONSE or f.startswith(CONFIDENCE_COERCED)
            for f in self.uncertainty_factors
        )


def _summarize(err: pydantic.ValidationError) -> str:
    # Location and message only; never echo the offending input.
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ()))
        parts.append(f"{loc}: {e.get('msg', 'invalid')}" if loc else e.get("msg", "invalid"))
    return "; ".join(parts)


def build_request(
    *,
    task_id: str,
    instruction: str,
    worker_kind: WorkerKind | str,
    context: GitContext,
    focus_areas: tuple[str, ...] | list[str] = (),
    context_fields: tuple[str, ...] | list[str] | None = None,
) -> DelegationRequest:
    """Construct a request, translating schema failures into ValidationError."""
    try:
        return DelegationRequest(
            task_id=task_id,
            instruction=instruction,
            worker_kind=worker_kind,
            context=context,
            focus_areas=tuple(focus_areas),
            context_fields=tuple(context_fields) if context_fields is not None else None,
        )
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid delegation request: {_summarize(e)}") from None


def validate_request(
    request: DelegationRequest | Mapping[str, Any], require_sanitized: bool = True
) -> DelegationRequest:
    """Validate an outbound request. Raises ValidationError.

    Contexts that were not sanitized are rejected unless the caller passes
    ``require_sanitized=False`` for a trusted context.
    """
    try:
        validated = DelegationRequest.model_validate(request)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid delegation request: {_summarize(e)}") from None

    if require_sanitized and not validated.context.sanitized:
        raise ValidationError(
            f"Invalid delegation request: context for task {validated.task_id} is not sanitized"
        )
    return validated


def extract_json(raw: str) -> Any:
    """Pull a JSON value out of raw worker text. Raises MalformedResponseError."""
    if not raw or not raw.strip():
        raise MalformedResponseError("empty worker output")

    content = raw
    fence = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", raw, re.DOTALL)
    if fence:
        content = fence.group(1)

    try:
        return json.loads(content)
    except json.JSONDecodeError:
        obj = re.search(r"\{.*\}", raw, re.DOTALL)
        if obj:
            try:
                return json.loads(obj.group(0))
            except json.JSONDecodeError:
                pass
    raise MalformedResponseError("worker output is not valid JSON")


def _malformed(kind: WorkerKind, reason: str) -> DelegationResponse:
    logger.warning("Malformed %s worker output: %s", kind.value, reason)
    return DelegationResponse(
        worker_kind=kind,
        findings=[],
        confidence_level=ConfidenceLevel.LOW,
        confidence_rationale=f"Worker output could not be parsed: {reason}",
        uncertainty_factors=[MALFORMED_RESPONSE],
    )


def parse_worker_output(raw: str, expected_kind: WorkerKind) -> DelegationResponse:
    """Parse raw worker text into a response. Never raises.

    Unknown or missing confidence is coerced to medium, never upgraded.
    """
    if not isinstance(raw, str):
        return _malformed(expected_kind, "worker output is not text")
    try:
        data = extract_json(raw)
    except MalformedResponseError as e:
        return _malformed(expected_kind, str(e))
    if not isinstance(data, dict):
        return _malformed(expected_kind, "worker output is not a JSON object")

    factors: list[str] = []

    raw_factors = data.get("uncertainty_factors", [])
    if isinstance(raw_factors, list) and all(isinstance(f, str) for f in raw_factors):
        factors.extend(raw_factors)
    else:
        factors.append("invalid_uncertainty_factors")

    raw_level = data.get("confidence_level", data.get("confidence"))
    if raw_level is None:
        level = ConfidenceLevel.MEDIUM
        factors.append(f"{CONFIDENCE_COERCED}:missing")
        logger.warning("%s worker omitted confidence; coerced to medium", expected_kind.value)
    else:
        try:
            level = ConfidenceLevel(str(raw_level).strip().lower())
        except ValueError:
            level = ConfidenceLevel.MEDIUM
            factors.append(f"{CONFIDENCE_COERCED}:invalid")
            logger.warning(
                "%s worker returned unknown confidence; coerced to medium", expected_kind.value
            )

    raw_kind = data.get("worker_kind")
    if raw_kind is not None and raw_kind != expected_kind.value:
        factors.append("worker_kind_mismatch")

    rationale = data.get("confidence_rationale", data.get("rationale", ""))
    if not isinstance(rationale, str):
        rationale = ""
        factors.append("invalid_confidence_rationale")

    research_performed = data.get("research_performed", False)
    if not isinstance(research_performed, bool):
        research_performed = False
        factors.append("invalid_research_performed")

    return DelegationResponse(
        worker_kind=expected_kind,
        findings=data.get("findings", []),
        confidence_level=level,
        confidence_rationale=rationale,
        uncertainty_factors=factors,
        research_performed=research_performed,
    )


def unavailable_response(kind: WorkerKind, reason: str) -> DelegationResponse:
    """Synthetic low-confidence response for a worker that failed or timed out."""
    return DelegationResponse(
        worker_kind=kind,
        findings=[],
        confidence_level=ConfidenceLevel.LOW,
        confidence_rationale=f"Worker unavailable: {reason}",
        uncertainty_factors=[WORKER_UNAVAILABLE],
    )

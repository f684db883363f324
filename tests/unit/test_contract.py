"""Unit tests for contract.py - request validation and response coercion."""

from __future__ import annotations

import json

import pytest

from handoff.contract import (
    CONFIDENCE_COERCED,
    MALFORMED_RESPONSE,
    WORKER_UNAVAILABLE,
    DelegationResponse,
    build_request,
    extract_json,
    parse_worker_output,
    unavailable_response,
    validate_request,
)
from handoff.errors import MalformedResponseError, ValidationError
from handoff.types import ConfidenceLevel, WorkerKind


@pytest.fixture
def request_kwargs(context_factory):
    return {
        "task_id": "task-1",
        "instruction": "Summarize the recent changes",
        "worker_kind": WorkerKind.RESEARCH,
        "context": context_factory(),
    }


class TestBuildRequest:
    """Outbound request validation."""

    def test_valid_request(self, request_kwargs):
        request = build_request(**request_kwargs, focus_areas=["src/app.py"])
        assert request.task_id == "task-1"
        assert request.focus_areas == ("src/app.py",)
        assert request.worker_kind == WorkerKind.RESEARCH

    def test_worker_kind_from_string(self, request_kwargs):
        request_kwargs["worker_kind"] = "security_scan"
        assert build_request(**request_kwargs).worker_kind == WorkerKind.SECURITY_SCAN

    @pytest.mark.parametrize("task_id", ["", "has space", "a/b", "x" * 129, "semi;colon"])
    def test_invalid_task_id(self, request_kwargs, task_id):
        request_kwargs["task_id"] = task_id
        with pytest.raises(ValidationError, match="task_id"):
            build_request(**request_kwargs)

    def test_blank_and_oversized_instruction(self, request_kwargs):
        request_kwargs["instruction"] = "   "
        with pytest.raises(ValidationError, match="instruction"):
            build_request(**request_kwargs)
        request_kwargs["instruction"] = "x" * 8001
        with pytest.raises(ValidationError, match="instruction"):
            build_request(**request_kwargs)

    def test_unknown_worker_kind(self, request_kwargs):
        request_kwargs["worker_kind"] = "deploy"
        with pytest.raises(ValidationError, match="worker_kind"):
            build_request(**request_kwargs)

    def test_too_many_focus_areas(self, request_kwargs):
        with pytest.raises(ValidationError, match="focus_areas"):
            build_request(**request_kwargs, focus_areas=[f"a{i}" for i in range(17)])

    def test_unknown_context_field(self, request_kwargs):
        with pytest.raises(ValidationError, match="unknown context field"):
            build_request(**request_kwargs, context_fields=["secrets"])

    def test_context_must_be_snapshot(self, request_kwargs):
        request_kwargs["context"] = {"repository": "fake"}
        with pytest.raises(ValidationError, match="context"):
            build_request(**request_kwargs)

    def test_error_message_does_not_echo_input(self, request_kwargs):
        request_kwargs["task_id"] = "evil;rm -rf /"
        with pytest.raises(ValidationError) as exc_info:
            build_request(**request_kwargs)
        assert "rm -rf" not in str(exc_info.value)

    def test_context_payload_respects_fields(self, request_kwargs):
        request = build_request(**request_kwargs, context_fields=["branch"])
        payload = request.context_payload()
        assert "branch" in payload
        assert "commits" not in payload


class TestValidateRequest:
    def test_unsanitized_context_rejected(self, request_kwargs, context_factory):
        request_kwargs["context"] = context_factory(sanitized=False)
        request = build_request(**request_kwargs)

        with pytest.raises(ValidationError, match="not sanitized"):
            validate_request(request)
        assert validate_request(request, require_sanitized=False) == request

    def test_accepts_mapping(self, request_kwargs):
        request = validate_request(dict(request_kwargs))
        assert request.instruction == "Summarize the recent changes"


class TestExtractJson:
    def test_plain_json(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        raw = 'Here you go:\n```json\n{"a": 1}\n```\nThanks'
        assert extract_json(raw) == {"a": 1}

    def test_embedded_object(self):
        assert extract_json('prefix {"a": {"b": 2}} suffix') == {"a": {"b": 2}}

    @pytest.mark.parametrize("raw", ["", "   ", "no json here", "{broken"])
    def test_malformed(self, raw):
        with pytest.raises(MalformedResponseError):
            extract_json(raw)


def _raw(**fields) -> str:
    data = {
        "worker_kind": "research",
        "findings": [{"claim": "x"}],
        "confidence_level": "high",
        "confidence_rationale": "Verified against the diff.",
        "uncertainty_factors": [],
        "research_performed": False,
    }
    data.update(fields)
    return json.dumps({k: v for k, v in data.items() if v is not _DROP})


_DROP = object()


class TestParseWorkerOutput:
    """Inbound coercion never raises and never upgrades confidence."""

    def test_valid_response(self):
        response = parse_worker_output(_raw(), WorkerKind.RESEARCH)
        assert response.confidence_level == ConfidenceLevel.HIGH
        assert response.findings == [{"claim": "x"}]
        assert response.confidence_rationale == "Verified against the diff."
        assert not response.was_coerced

    def test_missing_confidence_becomes_medium(self):
        response = parse_worker_output(_raw(confidence_level=_DROP), WorkerKind.RESEARCH)
        assert response.confidence_level == ConfidenceLevel.MEDIUM
        assert f"{CONFIDENCE_COERCED}:missing" in response.uncertainty_factors
        assert response.was_coerced

    @pytest.mark.parametrize("value", ["very high", "certain", 5, ""])
    def test_invalid_confidence_becomes_medium(self, value):
        response = parse_worker_output(_raw(confidence_level=value), WorkerKind.RESEARCH)
        assert response.confidence_level == ConfidenceLevel.MEDIUM
        assert f"{CONFIDENCE_COERCED}:invalid" in response.uncertainty_factors

    def test_confidence_alias_and_case(self):
        raw = _raw(confidence_level=_DROP, confidence="LOW")
        assert parse_worker_output(raw, WorkerKind.RESEARCH).confidence_level == ConfidenceLevel.LOW

    @pytest.mark.parametrize("raw", ["", "I think it is fine", "[1, 2, 3]", None])
    def test_malformed_becomes_low(self, raw):
        response = parse_worker_output(raw, WorkerKind.DOCUMENTATION)
        assert response.confidence_level == ConfidenceLevel.LOW
        assert response.uncertainty_factors == [MALFORMED_RESPONSE]
        assert response.worker_kind == WorkerKind.DOCUMENTATION

    def test_kind_mismatch_flagged(self):
        response = parse_worker_output(_raw(worker_kind="security_scan"), WorkerKind.RESEARCH)
        assert response.worker_kind == WorkerKind.RESEARCH
        assert "worker_kind_mismatch" in response.uncertainty_factors

    def test_invalid_field_types_flagged(self):
        raw = _raw(
            uncertainty_factors="not a list",
            confidence_rationale=42,
            research_performed="yes",
        )
        response = parse_worker_output(raw, WorkerKind.RESEARCH)
        assert "invalid_uncertainty_factors" in response.uncertainty_factors
        assert "invalid_confidence_rationale" in response.uncertainty_factors
        assert "invalid_research_performed" in response.uncertainty_factors
        assert response.confidence_rationale == ""
        assert response.research_performed is False

    def test_rationale_capped(self):
        response = parse_worker_output(_raw(confidence_rationale="r" * 5000), WorkerKind.RESEARCH)
        assert len(response.confidence_rationale) == 1000


def test_unavailable_response():
    response = unavailable_response(WorkerKind.SECURITY_SCAN, "timed out after 100ms")
    assert isinstance(response, DelegationResponse)
    assert response.confidence_level == ConfidenceLevel.LOW
    assert response.uncertainty_factors == [WORKER_UNAVAILABLE]
    assert "timed out after 100ms" in response.confidence_rationale

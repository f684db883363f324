"""CLI tests using click's CliRunner."""

from __future__ import annotations

import json

from click.testing import CliRunner

import handoff.cli as cli_mod
from handoff.approval import ScriptedHumanChannel
from handoff.audit import AuditLog
from handoff.cli import cli
from handoff.types import ConfidenceLevel, GateAction, GateDecision


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_context_prints_sanitized_facts(git_repo):
    result = CliRunner().invoke(cli, ["context", str(git_repo)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["sanitized"] is True
    assert payload["commits"][0]["subject"] == "Initial commit"
    assert payload["repository"]["is_clean"] is True
    assert payload["unavailable"] == []


def test_context_field_selection(git_repo):
    result = CliRunner().invoke(
        cli, ["context", str(git_repo), "--field", "branch", "--max-commits", "1"]
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert "branch" in payload
    assert "commits" not in payload
    assert "changed_files" not in payload


def test_context_rejects_out_of_range_commits(git_repo):
    result = CliRunner().invoke(cli, ["context", str(git_repo), "--max-commits", "11"])
    assert result.exit_code != 0


def test_context_outside_repository(tmp_path, monkeypatch):
    plain = tmp_path / "plain"
    plain.mkdir()
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))

    result = CliRunner().invoke(cli, ["context", str(plain)])

    assert result.exit_code == 2
    assert "NotARepositoryError:" in result.output


def test_status_without_decisions(git_repo):
    result = CliRunner().invoke(cli, ["status", str(git_repo)])

    assert result.exit_code == 0, result.output
    st = json.loads(result.output)
    assert st["auto_proceed_rate"] is None
    assert st["decisions_by_action"]["auto_proceed"] == 0


def test_audit_missing_log(git_repo):
    result = CliRunner().invoke(cli, ["audit", str(git_repo)])

    assert result.exit_code != 0
    assert "Audit log not found" in result.output


def test_audit_prints_tail(git_repo):
    log = AuditLog(git_repo / ".handoff" / "audit.jsonl")
    for i, action in enumerate([GateAction.RESEARCH_TRIGGERED, GateAction.AUTO_PROCEED]):
        log.append(
            GateDecision(
                task_id="t1",
                confidence_level=ConfidenceLevel.HIGH,
                action=action,
                rationale="r",
                actor="gate",
                timestamp=1_700_000_000.0 + i,
            )
        )

    result = CliRunner().invoke(cli, ["audit", str(git_repo), "-n", "1"])

    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["action"] == "auto_proceed"


def test_run_routes_unavailable_workers_to_a_human(git_repo, monkeypatch):
    # Network is disabled for tests, so the real worker is unavailable and confidence is low.
    channel = ScriptedHumanChannel(["cancel"])
    monkeypatch.setattr(cli_mod, "channel_from_config", lambda config: channel)

    result = CliRunner().invoke(
        cli,
        [
            "run",
            str(git_repo),
            "--task-id",
            "cli-1",
            "--worker",
            "security_scan",
            "--instruction",
            "Review the latest commit",
        ],
    )

    assert result.exit_code == 0, result.output
    out = json.loads(result.output)
    assert out["action"] == "cancelled"
    assert out["choice"] == "cancel"
    assert out["confidence_level"] == "low"
    assert out["research_count"] == 1
    assert len(channel.prompts) == 1
    assert "research" not in [c.value for c in channel.prompts[0].choices]

    actions = [r.action for r in AuditLog(git_repo / ".handoff" / "audit.jsonl").records()]
    assert actions == [GateAction.RESEARCH_TRIGGERED, GateAction.CANCELLED]


def test_run_rejects_invalid_task_id(git_repo):
    result = CliRunner().invoke(
        cli,
        ["run", str(git_repo), "--task-id", "bad id!", "--worker", "research", "--instruction", "x"],
    )

    assert result.exit_code == 2
    assert "ValidationError:" in result.output

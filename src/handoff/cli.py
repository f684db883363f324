"""Command-line interface for handoff.

Commands:
- handoff context <repo_path>: Print the git facts workers would receive
- handoff run <repo_path>: Delegate a task and decide through the confidence gate
- handoff status <repo_path>: Summarize recent gate decisions
- handoff audit <repo_path>: Print the most recent audit records
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections import deque
from pathlib import Path

import click

from .approval import channel_from_config
from .audit import AuditLog
from .config import HandoffConfig, load_config
from .errors import HandoffError
from .gate import build_gate
from .git_facts import GitFactExtractor
from .safety.telemetry import TelemetrySink
from .status import StatusWindow, compute_status
from .types import CONTEXT_FIELDS, DelegationTask, WorkerKind


def configure_logging(level: str) -> None:
    """Install one stream handler on the package logger."""
    logger = logging.getLogger("handoff")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False


def _load(repo_path: Path, config: str | None) -> HandoffConfig:
    if config:
        handoff_config = HandoffConfig.load_from_file(config)
        handoff_config.apply_env_overrides()
        return handoff_config
    return load_config(repo_path)


def _fail(e: HandoffError) -> None:
    click.echo(f"{e.kind}: {e}", err=True)
    sys.exit(2)


@click.group()
@click.version_option(version="0.1.0", prog_name="handoff")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level for diagnostics on stderr.",
)
def cli(log_level: str) -> None:
    """handoff - Git-grounded delegation with a confidence gate."""
    configure_logging(log_level)


@cli.command()
@click.argument("repo_path", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option("--max-commits", type=click.IntRange(1, 10), help="Number of recent commits.")
@click.option("--diff-context", type=click.IntRange(0, 100), help="Diff context lines.")
@click.option("--no-untracked", is_flag=True, help="Leave untracked files out.")
@click.option("--no-sanitize", is_flag=True, help="Skip sanitization (local inspection only).")
@click.option(
    "--field",
    "fields",
    multiple=True,
    type=click.Choice(list(CONTEXT_FIELDS)),
    help="Only include these context fields (repeatable).",
)
def context(
    repo_path: str,
    config: str | None,
    max_commits: int | None,
    diff_context: int | None,
    no_untracked: bool,
    no_sanitize: bool,
    fields: tuple[str, ...],
) -> None:
    """Show the git context that workers see.

    Example:
        handoff context /path/to/repo
        handoff context /path/to/repo --field branch --field commits
    """
    repo_path_obj = Path(repo_path).resolve()
    handoff_config = _load(repo_path_obj, config)

    git = handoff_config.git
    if max_commits is not None:
        git.max_commits = max_commits
    if diff_context is not None:
        git.diff_context_lines = diff_context
    if no_untracked:
        git.include_untracked = False
    if no_sanitize:
        git.sanitize_for_ai = False

    extractor = GitFactExtractor(
        repo_path_obj, git.snapshot_options(), telemetry=TelemetrySink.disabled()
    )
    try:
        ctx = asyncio.run(extractor.snapshot())
    except HandoffError as e:
        _fail(e)
        return

    payload = ctx.to_payload(list(fields) if fields else None)
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@cli.command()
@click.argument("repo_path", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option("--task-id", required=True, help="Caller-chosen task identifier.")
@click.option(
    "--worker",
    "workers",
    multiple=True,
    required=True,
    type=click.Choice([k.value for k in WorkerKind]),
    help="Worker kind to delegate to (repeatable).",
)
@click.option("--instruction", required=True, help="What the workers should do.")
@click.option("--focus", "focus_areas", multiple=True, help="Path or topic to focus on.")
def run(
    repo_path: str,
    config: str | None,
    task_id: str,
    workers: tuple[str, ...],
    instruction: str,
    focus_areas: tuple[str, ...],
) -> None:
    """Delegate a task and route the result through the confidence gate.

    Example:
        handoff run . --task-id fix-42 --worker security_scan --instruction "Review the diff"
    """
    repo_path_obj = Path(repo_path).resolve()
    handoff_config = _load(repo_path_obj, config)

    tasks = [
        DelegationTask(
            task_id=task_id,
            instruction=instruction,
            worker_kind=WorkerKind(kind),
            focus_areas=focus_areas,
        )
        for kind in workers
    ]
    try:
        gate = build_gate(repo_path_obj, config=handoff_config)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    channel = channel_from_config(handoff_config.approval)
    try:
        result = asyncio.run(gate.run(task_id, tasks, channel))
    except HandoffError as e:
        _fail(e)
        return

    if result.audit_error is not None:
        click.echo(f"warning: {result.audit_error}", err=True)
    click.echo(
        json.dumps(
            {
                "task_id": result.task_id,
                "action": result.action.value if result.action else None,
                "choice": result.choice.value if result.choice else None,
                "confidence_level": result.confidence_level.value,
                "research_count": result.research_count,
                "rationale": result.rationale,
            },
            indent=2,
            ensure_ascii=False,
        )
    )


@cli.command()
@click.argument("repo_path", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option(
    "--window-seconds",
    type=click.IntRange(min=1),
    default=3600,
    show_default=True,
    help="Look-back window for decision counts.",
)
def status(repo_path: str, config: str | None, window_seconds: int) -> None:
    """Show gate decision metrics from the audit log."""
    repo_path_obj = Path(repo_path).resolve()
    handoff_config = _load(repo_path_obj, config)

    try:
        audit_path = handoff_config.audit_path(repo_path_obj)
        telemetry_path = handoff_config.telemetry_path(repo_path_obj)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    st = compute_status(
        audit_path,
        window=StatusWindow(seconds=float(window_seconds)),
        telemetry_path=telemetry_path if handoff_config.telemetry.enabled else None,
    )
    click.echo(json.dumps(st, indent=2))


@cli.command()
@click.argument("repo_path", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option(
    "--limit",
    "-n",
    type=click.IntRange(min=0),
    default=20,
    show_default=True,
    help="Number of decisions to show.",
)
def audit(repo_path: str, config: str | None, limit: int) -> None:
    """Print the last N gate decisions as JSON lines."""
    repo_path_obj = Path(repo_path).resolve()
    handoff_config = _load(repo_path_obj, config)

    try:
        audit_path = handoff_config.audit_path(repo_path_obj)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    if not audit_path.exists():
        raise click.ClickException(f"Audit log not found: {audit_path}")

    tail = deque(AuditLog(audit_path).records(), maxlen=limit)
    for decision in tail:
        click.echo(json.dumps(decision.to_record(), ensure_ascii=False))


def main() -> None:
    """Entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()

"""Global pytest configuration for hermetic test runs."""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from handoff.contract import DelegationRequest
from handoff.types import (
    BranchFact,
    ChangeSet,
    DiffFact,
    GitContext,
    RepositoryFact,
    Unavailable,
    WorkerKind,
)


def pytest_sessionstart(session):  # noqa: ARG001
    # Prevent accidental outbound network during tests (integration/unit).
    os.environ.setdefault("HANDOFF_DISABLE_NETWORK", "1")


def _git(repo: Path, *args: str) -> str:
    p = subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)
    return p.stdout


@pytest.fixture
def git():
    """Run a git command in a repository and return stdout."""
    return _git


@pytest.fixture
def git_repo(tmp_path):
    """Create a temporary git repository with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    repo_path = tmp_path / "test_repo"
    repo_path.mkdir()

    _git(repo_path, "init")
    _git(repo_path, "config", "user.email", "test@example.com")
    _git(repo_path, "config", "user.name", "Test User")
    _git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / "main.py").write_text("def hello():\n    print('Hello')\n")
    (repo_path / "README.md").write_text("# Test repo\n")

    _git(repo_path, "add", ".")
    _git(repo_path, "commit", "-m", "Initial commit")

    return repo_path


class FakeClock:
    """Manually advanced clock for stores, gates and quotas."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_context(
    *,
    sanitized: bool = True,
    unavailable: tuple[str, ...] = (),
) -> GitContext:
    """Small, already-sanitized context; fields named in ``unavailable`` are degraded."""
    values = {
        "repository": RepositoryFact(
            root_path="~/work/repo", remote_url="https://github.com/acme/repo.git", is_clean=False
        ),
        "branch": BranchFact(current_name="main", upstream_name=None, is_tracking=False),
        "changes": ChangeSet(modified=("src/app.py",)),
        "commits": (),
        "diff": DiffFact(),
    }
    for name in unavailable:
        values[name] = Unavailable(field=name, reason="timed out after 5.0s")
    return GitContext(**values, sanitized=sanitized, captured_at=1.0)


class FakeExtractor:
    """Stands in for GitFactExtractor; counts snapshots."""

    def __init__(self, context: GitContext | None = None, error: Exception | None = None):
        self.context = context or make_context()
        self.error = error
        self.calls = 0

    async def snapshot(self, options=None) -> GitContext:  # noqa: ARG002
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.context


def envelope(
    kind: WorkerKind | str,
    level: str | None = "high",
    rationale: str = "Facts support the findings.",
    factors: list[str] | None = None,
) -> str:
    """Raw worker output in the JSON response envelope."""
    data: dict = {
        "worker_kind": kind.value if isinstance(kind, WorkerKind) else kind,
        "findings": [{"claim": "ok"}],
        "confidence_rationale": rationale,
        "uncertainty_factors": factors or [],
        "research_performed": False,
    }
    if level is not None:
        data["confidence_level"] = level
    return json.dumps(data)


class FakeWorker:
    """
    Scripted worker.

    ``outputs`` are returned in order (the last one repeats); a callable
    output receives the request. ``delay`` makes the worker slow.
    """

    def __init__(
        self,
        kind: WorkerKind,
        outputs: list[str | Callable[[DelegationRequest], str]] | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ):
        self.kind = kind
        self.outputs = list(outputs or [envelope(kind, "high")])
        self.delay = delay
        self.error = error
        self.requests: list[DelegationRequest] = []

    async def run(self, request: DelegationRequest) -> str:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        out = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        return out(request) if callable(out) else out


def research_aware(
    kind: WorkerKind, first: str, after_research: str
) -> Callable[[DelegationRequest], str]:
    """Answer ``first`` normally and ``after_research`` once the research directive is present."""

    def answer(request: DelegationRequest) -> str:
        level = after_research if "# Research Directive" in request.instruction else first
        return envelope(kind, level)

    return answer


@pytest.fixture
def context_factory():
    return make_context


@pytest.fixture
def envelope_factory():
    return envelope


@pytest.fixture
def fakes():
    """Namespace of fake collaborators for constructor injection."""

    class Fakes:
        Extractor = FakeExtractor
        Worker = FakeWorker
        research_aware = staticmethod(research_aware)

    return Fakes

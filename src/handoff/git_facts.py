"""Repository fact extraction.

Facts are gathered with read-only git commands through SafeExec, in parallel,
and degrade individually to ``Unavailable`` when a sub-fetch fails or times out.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
import time
import uuid
import warnings
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, Field

from .errors import ExecutionError, NotARepositoryError, PartialContextWarning, ValidationError
from .safety.redaction import mask_url_credentials, redact_error, sanitize_for_prompt, sanitize_path
from .safety.safe_exec import SafeExec
from .safety.safe_paths import is_safe_relative_path
from .safety.telemetry import TelemetrySink
from .types import (
    BranchFact,
    ChangeKind,
    ChangeSet,
    CommitFact,
    DiffFact,
    DiffFile,
    DiffHunk,
    DiffTotals,
    GitContext,
    RepositoryFact,
    Unavailable,
)

logger = logging.getLogger(__name__)

# Records are NUL-terminated (``log -z``). Git-generated fields come first and
# the free-form body last, so separator bytes inside a message stay in the body.
_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x00"
_LOG_FIELDS = ("%H", "%h", "%aI", "%an", "%ae", "%s", "%b")
_LOG_FORMAT = "--format=" + "%x1f".join(_LOG_FIELDS)
_COMMIT_HASH = re.compile(r"[0-9a-f]{40}(?:[0-9a-f]{24})?")
_SHORT_HASH = re.compile(r"[0-9a-f]{4,64}")

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_DIFF_HEADER = re.compile(r'^diff --git "?a/(.+?)"? "?b/(.+?)"?$')
_EMPTY_REPO_MARKERS = ("does not have any commits", "bad default revision")


class SnapshotOptions(BaseModel):
    """Per-snapshot knobs; ranges are enforced at construction."""

    max_commits: int = Field(default=10, ge=1, le=10)
    diff_context_lines: int = Field(default=3, ge=0, le=100)
    include_untracked: bool = True
    sanitize_for_ai: bool = True
    fetch_timeout_s: float = Field(default=5.0, gt=0)


# ---------------------------------------------------------------------------
# Output parsers (pure functions)
# ---------------------------------------------------------------------------


def parse_status_z(output: str) -> ChangeSet:
    """Parse ``git status --porcelain=v1 -z`` output.

    Entries are ``XY path\\0``; renames and copies carry the original path as
    an extra NUL-terminated entry. Names are verbatim under ``-z`` (no quoting).
    """
    staged: list[str] = []
    modified: list[str] = []
    untracked: list[str] = []
    deleted: list[str] = []
    rejected = 0

    entries = output.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue
        code, path = entry[:2], entry[3:]
        if code[0] in "RC":
            i += 1  # skip the source path
        if not is_safe_relative_path(path):
            rejected += 1
            continue

        index_status, worktree_status = code[0], code[1]
        if code == "??":
            untracked.append(path)
            continue
        if index_status not in " ?":
            staged.append(path)
        if worktree_status not in " ?":
            if worktree_status == "D":
                if path not in deleted:
                    deleted.append(path)
            else:
                modified.append(path)

    if rejected:
        logger.warning("Dropped %d unsafe path(s) from git status output", rejected)
    return ChangeSet(
        staged=tuple(staged),
        modified=tuple(modified),
        untracked=tuple(untracked),
        deleted=tuple(deleted),
        rejected_paths=rejected,
    )


def parse_log(output: str) -> tuple[CommitFact, ...]:
    commits: list[CommitFact] = []
    for record in output.split(_RECORD_SEP):
        record = record.lstrip("\n")
        if not record.strip():
            continue
        parts = record.split(_FIELD_SEP, len(_LOG_FIELDS) - 1)
        if len(parts) != len(_LOG_FIELDS):
            logger.debug("Skipping malformed log record")
            continue
        full_hash, short_hash, date, name, email, subject, body = parts
        full_hash, short_hash = full_hash.strip(), short_hash.strip()
        if not _COMMIT_HASH.fullmatch(full_hash) or not _SHORT_HASH.fullmatch(short_hash):
            logger.warning("Skipping log record with an invalid commit hash")
            continue
        try:
            committed_at = datetime.fromisoformat(date.strip())
        except ValueError:
            logger.warning("Skipping commit %s with an unparseable date", short_hash)
            continue
        commits.append(
            CommitFact(
                full_hash=full_hash,
                short_hash=short_hash,
                author_name=name,
                author_email=email,
                committed_at=committed_at,
                subject=subject,
                body=body.strip(),
            )
        )
    return tuple(commits)


def _unquote(path: str) -> str:
    if "\\" not in path:
        return path
    try:
        raw = path.encode("latin-1", errors="backslashreplace").decode("unicode_escape")
        return raw.encode("latin-1").decode("utf-8")
    except (UnicodeDecodeError, UnicodeEncodeError):
        return path


def parse_diff(output: str) -> DiffFact:
    """Parse unified diff output into files, hunks and totals."""
    files: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    hunk: dict[str, Any] | None = None

    def close_hunk() -> None:
        nonlocal hunk
        if current is not None and hunk is not None:
            current["hunks"].append(DiffHunk(lines=tuple(hunk.pop("lines")), **hunk))
        hunk = None

    for line in output.split("\n"):
        if line.startswith("diff --git "):
            close_hunk()
            m = _DIFF_HEADER.match(line)
            if not m:
                current = None
                continue
            old_path, new_path = _unquote(m.group(1)), _unquote(m.group(2))
            current = {
                "path": new_path,
                "old_path": old_path if old_path != new_path else None,
                "change_kind": ChangeKind.MODIFIED,
                "additions": 0,
                "deletions": 0,
                "hunks": [],
                "binary": False,
            }
            files.append(current)
            continue
        if current is None:
            continue
        if hunk is None:
            if line.startswith("new file mode"):
                current["change_kind"] = ChangeKind.ADDED
                current["old_path"] = None
            elif line.startswith("deleted file mode"):
                current["change_kind"] = ChangeKind.DELETED
            elif line.startswith("rename from"):
                current["change_kind"] = ChangeKind.RENAMED
            elif line.startswith("Binary files"):
                current["binary"] = True
        if line.startswith("@@"):
            close_hunk()
            hm = _HUNK_HEADER.match(line)
            if hm:
                hunk = {
                    "old_start": int(hm.group(1)),
                    "old_lines": int(hm.group(2) or 1),
                    "new_start": int(hm.group(3)),
                    "new_lines": int(hm.group(4) or 1),
                    "lines": [],
                }
            continue
        if hunk is not None and line[:1] in ("+", "-", " "):
            hunk["lines"].append(line)
            if line[0] == "+":
                current["additions"] += 1
            elif line[0] == "-":
                current["deletions"] += 1
    close_hunk()

    parsed: list[DiffFile] = []
    for f in files:
        if not is_safe_relative_path(f["path"]) or (
            f["old_path"] is not None and not is_safe_relative_path(f["old_path"])
        ):
            logger.warning("Dropped unsafe path from git diff output")
            continue
        if f["binary"]:
            f["hunks"] = []
        f["hunks"] = tuple(f["hunks"])
        parsed.append(DiffFile(**f))

    totals = DiffTotals(
        files_changed=len(parsed),
        additions=sum(f.additions for f in parsed),
        deletions=sum(f.deletions for f in parsed),
    )
    return DiffFact(files=tuple(parsed), totals=totals)


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------


def sanitize_context(context: GitContext) -> GitContext:
    """Return a copy with human-authored text neutralized for a language model.

    Running this on an already sanitized context yields an equal context.
    """
    repository = context.repository
    if isinstance(repository, RepositoryFact):
        repository = dataclasses.replace(
            repository,
            root_path=sanitize_path(repository.root_path),
            remote_url=mask_url_credentials(repository.remote_url),
        )

    branch = context.branch
    if isinstance(branch, BranchFact):
        branch = dataclasses.replace(
            branch,
            current_name=sanitize_for_prompt(branch.current_name),
            upstream_name=(
                sanitize_for_prompt(branch.upstream_name) if branch.upstream_name else None
            ),
        )

    changes = context.changes
    if isinstance(changes, ChangeSet):

        def paths(values: tuple[str, ...]) -> tuple[str, ...]:
            return tuple(sanitize_path(p) for p in values)

        changes = dataclasses.replace(
            changes,
            staged=paths(changes.staged),
            modified=paths(changes.modified),
            untracked=paths(changes.untracked),
            deleted=paths(changes.deleted),
        )

    commits = context.commits
    if not isinstance(commits, Unavailable):
        commits = tuple(
            dataclasses.replace(
                c,
                author_name=sanitize_for_prompt(c.author_name),
                author_email=sanitize_for_prompt(c.author_email),
                subject=sanitize_for_prompt(c.subject),
                body=sanitize_for_prompt(c.body),
            )
            for c in commits
        )

    diff = context.diff
    if isinstance(diff, DiffFact):
        diff = dataclasses.replace(
            diff,
            files=tuple(
                dataclasses.replace(
                    f,
                    path=sanitize_path(f.path),
                    old_path=sanitize_path(f.old_path) if f.old_path else None,
                )
                for f in diff.files
            ),
        )

    return dataclasses.replace(
        context,
        repository=repository,
        branch=branch,
        changes=changes,
        commits=commits,
        diff=diff,
        sanitized=True,
    )


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class GitFactExtractor:
    """Builds a GitContext snapshot for one repository."""

    def __init__(
        self,
        repo_path: Path,
        options: SnapshotOptions | None = None,
        executor: SafeExec | None = None,
        telemetry: TelemetrySink | None = None,
    ):
        self.repo_path = Path(repo_path)
        self.options = options or SnapshotOptions()
        self.executor = executor or SafeExec(self.repo_path, timeout_s=self.options.fetch_timeout_s)
        self.telemetry = telemetry or TelemetrySink.disabled()

    def _git(self, command: str, args: list[str]) -> str:
        return self.executor.run(command, args).stdout

    # Sub-fetches run in worker threads; each returns a single fact.

    def _fetch_repository(self, root: str) -> RepositoryFact:
        try:
            remote = self._git("remote", ["get-url", "origin"]).strip() or None
        except ExecutionError:
            remote = None
        is_clean = not self._git("status", ["--porcelain"]).strip()
        return RepositoryFact(root_path=root, remote_url=remote, is_clean=is_clean)

    def _fetch_branch(self) -> BranchFact:
        name = self._git("branch", ["--show-current"]).strip() or "HEAD"
        try:
            upstream = self._git("rev-parse", ["--abbrev-ref", "@{u}"]).strip() or None
        except ExecutionError:
            upstream = None
        if upstream is None:
            return BranchFact(current_name=name, upstream_name=None, is_tracking=False)

        ahead = behind = 0
        counts = self._git("rev-list", ["--left-right", "--count", "@{u}...HEAD"]).split()
        if len(counts) == 2:
            behind, ahead = int(counts[0]), int(counts[1])
        return BranchFact(
            current_name=name,
            upstream_name=upstream,
            is_tracking=True,
            commits_ahead=ahead,
            commits_behind=behind,
        )

    def _fetch_changes(self, options: SnapshotOptions) -> ChangeSet:
        untracked = "all" if options.include_untracked else "no"
        out = self._git("status", ["--porcelain=v1", "-z", f"--untracked-files={untracked}"])
        return parse_status_z(out)

    def _fetch_commits(self, options: SnapshotOptions) -> tuple[CommitFact, ...]:
        try:
            out = self._git("log", ["-z", f"--max-count={options.max_commits}", _LOG_FORMAT])
        except ExecutionError as e:
            if any(marker in str(e) for marker in _EMPTY_REPO_MARKERS):
                return ()
            raise
        return parse_log(out)

    def _fetch_diff(self, options: SnapshotOptions) -> DiffFact:
        out = self._git(
            "diff",
            [
                "--no-color",
                "--no-ext-diff",
                f"--unified={options.diff_context_lines}",
                "--find-renames",
            ],
        )
        return parse_diff(out)

    async def _guarded(self, field: str, fn: Callable[[], Any], timeout_s: float) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, fn), timeout=timeout_s)
        except asyncio.TimeoutError:
            reason = f"timed out after {timeout_s}s"
        except ExecutionError as e:
            reason = redact_error(str(e))
        except ValidationError:
            raise
        except Exception as e:
            # A parser failure on hostile output loses this field only.
            reason = redact_error(f"{type(e).__name__}: {e}")
        msg = f"git fact '{field}' unavailable: {reason}"
        logger.warning(msg)
        warnings.warn(msg, PartialContextWarning, stacklevel=2)
        return Unavailable(field=field, reason=reason)

    async def snapshot(self, options: SnapshotOptions | None = None) -> GitContext:
        """Capture a read-only context snapshot.

        Raises NotARepositoryError when no repository root is found and
        ValidationError when a command argument is rejected.
        """
        opts = options or self.options
        run_id = uuid.uuid4().hex[:8]
        t0 = time.time()
        loop = asyncio.get_running_loop()

        try:
            root = (
                await loop.run_in_executor(None, self._git, "rev-parse", ["--show-toplevel"])
            ).strip()
        except ExecutionError as e:
            raise NotARepositoryError(
                f"Not a git repository: {sanitize_path(str(self.repo_path))}"
            ) from e

        repository, branch, changes, commits, diff = await asyncio.gather(
            self._guarded("repository", lambda: self._fetch_repository(root), opts.fetch_timeout_s),
            self._guarded("branch", self._fetch_branch, opts.fetch_timeout_s),
            self._guarded("changes", lambda: self._fetch_changes(opts), opts.fetch_timeout_s),
            self._guarded("commits", lambda: self._fetch_commits(opts), opts.fetch_timeout_s),
            self._guarded("diff", lambda: self._fetch_diff(opts), opts.fetch_timeout_s),
        )

        context = GitContext(
            repository=repository,
            branch=branch,
            changes=changes,
            commits=commits,
            diff=diff,
            sanitized=False,
            captured_at=time.time(),
        )
        if opts.sanitize_for_ai:
            context = sanitize_context(context)

        elapsed_ms = round((time.time() - t0) * 1000, 1)
        self.telemetry.log(
            run_id,
            "snapshot_completed",
            {
                "elapsed_ms": elapsed_ms,
                "unavailable": [u.field for u in context.unavailable],
                "sanitized": context.sanitized,
            },
        )
        logger.debug("Snapshot captured in %.1f ms", elapsed_ms)
        return context

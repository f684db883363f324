import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable

from ..errors import ExecutionError, ValidationError
from .redaction import redact_error

MAX_ARG_LEN = 1000
MAX_OUTPUT_BYTES = 10 * 1024 * 1024
MAX_STDERR_BYTES = 64 * 1024
_CHUNK_BYTES = 64 * 1024
_READER_GRACE_S = 1.0

# Read-only subcommands the fact layer is allowed to run.
ALLOWED_SUBCOMMANDS = frozenset(
    {"rev-parse", "remote", "status", "branch", "log", "diff", "show", "grep", "rev-list"}
)

# Subcommands where a crafted positional could otherwise be read as a flag.
SEPARATOR_SUBCOMMANDS = frozenset({"log", "diff", "show", "grep"})

# Flags accepted verbatim.
RECOGNIZED_FLAGS = frozenset(
    {
        "--show-toplevel",
        "--abbrev-ref",
        "--verify",
        "--quiet",
        "--porcelain",
        "--show-current",
        "--left-right",
        "--count",
        "--no-color",
        "--no-ext-diff",
        "--no-textconv",
        "--patch",
        "--cached",
        "--stat",
        "--numstat",
        "--name-only",
        "--find-renames",
        "-z",
        "-M",
    }
)

# Flags accepted with a value after "=".
RECOGNIZED_VALUE_FLAGS = frozenset(
    {
        "--porcelain",
        "--untracked-files",
        "--pretty",
        "--format",
        "--max-count",
        "--unified",
        "--since",
        "--until",
        "--abbrev",
    }
)

_SHELL_META = re.compile(r"[;&|`$()<>\n\r\x00]")


@dataclass(frozen=True)
class ExecResult:
    argv: list[str]
    stdout: str
    exit_code: int
    duration_s: float


def _is_recognized_flag(arg: str) -> bool:
    if arg in RECOGNIZED_FLAGS:
        return True
    name, sep, _value = arg.partition("=")
    return bool(sep) and name in RECOGNIZED_VALUE_FLAGS


def validate_args(command: str, args: list[str]) -> list[str]:
    """Validate a subcommand and its arguments. Raises ValidationError."""
    if command not in ALLOWED_SUBCOMMANDS:
        raise ValidationError(f"Subcommand not allowed: {command!r}")

    validated: list[str] = []
    for arg in args:
        if not isinstance(arg, str) or arg == "":
            raise ValidationError("Empty argument not allowed")
        if len(arg) > MAX_ARG_LEN:
            raise ValidationError(f"Argument longer than {MAX_ARG_LEN} characters")
        if _SHELL_META.search(arg):
            raise ValidationError("Shell metacharacter detected in argument")
        if ".." in re.split(r"[/\\]", arg):
            raise ValidationError("Path traversal segment detected in argument")
        if arg.startswith("-") and not _is_recognized_flag(arg):
            raise ValidationError(f"Unrecognized flag: {arg.split('=', 1)[0]!r}")
        validated.append(arg)
    return validated


def build_argv(binary: str, command: str, args: list[str]) -> list[str]:
    """Assemble the final argv, inserting ``--`` before the first positional."""
    validated = validate_args(command, args)
    if command in SEPARATOR_SUBCOMMANDS:
        for i, arg in enumerate(validated):
            if not arg.startswith("-"):
                validated = validated[:i] + ["--"] + validated[i:]
                break
    return [binary, command, *validated]


class _PipeReader(threading.Thread):
    """Drains one pipe in the background, keeping at most ``limit`` bytes."""

    def __init__(
        self,
        stream: IO[bytes],
        limit: int,
        on_overflow: Callable[[], None] | None = None,
    ):
        super().__init__(daemon=True)
        self.stream = stream
        self.limit = limit
        self.on_overflow = on_overflow
        self.overflowed = False
        self._chunks: list[bytes] = []
        self._size = 0
        self.start()

    def run(self) -> None:
        while True:
            chunk = self.stream.read1(_CHUNK_BYTES)
            if not chunk:
                return
            room = self.limit - self._size
            if len(chunk) > room:
                self._chunks.append(chunk[:room])
                self._size = self.limit
                self.overflowed = True
                if self.on_overflow is not None:
                    self.on_overflow()
                    return
                # Keep draining so the child never blocks on a full pipe.
                continue
            self._chunks.append(chunk)
            self._size += len(chunk)

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


class SafeExec:
    """
    Read-only version-control command runner.

    Key security properties:
    - Executes an argv list (no shell, never a concatenated string).
    - Every argument is validated before any process is spawned.
    - Error text is redacted before it is raised or logged.
    """

    def __init__(
        self,
        cwd: Path,
        binary: str = "git",
        timeout_s: float = 10.0,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
    ):
        self.cwd = Path(cwd)
        self.binary = binary
        self.timeout_s = timeout_s
        self.max_output_bytes = max_output_bytes

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(
            {
                "GIT_TERMINAL_PROMPT": "0",
                "GIT_PAGER": "cat",
                "GIT_OPTIONAL_LOCKS": "0",
                "LC_ALL": "C",
                "LANG": "C",
            }
        )
        return env

    def run(self, command: str, args: list[str] | None = None) -> ExecResult:
        argv = build_argv(self.binary, command, list(args or []))
        t0 = time.time()

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(self.cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                shell=False,
                env=self._env(),
            )
        except FileNotFoundError as e:
            raise ExecutionError(redact_error(f"{self.binary} not found: {e}")) from None

        with proc:
            # Output is read as it arrives; the process is killed once stdout
            # passes the cap instead of buffering all of it.
            stdout = _PipeReader(proc.stdout, self.max_output_bytes, on_overflow=proc.kill)
            stderr = _PipeReader(proc.stderr, MAX_STDERR_BYTES)
            try:
                returncode = proc.wait(timeout=self.timeout_s)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
                raise ExecutionError(
                    f"{self.binary} {command} timed out after {self.timeout_s}s"
                ) from None
            finally:
                stdout.join(_READER_GRACE_S)
                stderr.join(_READER_GRACE_S)

        if stdout.overflowed:
            raise ExecutionError(
                f"{self.binary} {command} output exceeded {self.max_output_bytes} bytes"
            )

        if returncode != 0:
            stderr_text = redact_error(stderr.text()).strip()
            raise ExecutionError(
                f"{self.binary} {command} failed with exit code {returncode}: "
                f"{stderr_text or 'No error message'}",
                exit_code=returncode,
            )

        return ExecResult(
            argv=argv,
            stdout=stdout.text(),
            exit_code=returncode,
            duration_s=round(time.time() - t0, 3),
        )

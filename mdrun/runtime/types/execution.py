"""Execution types: options, results and the capture strategy enum."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ._ids import BlockId
from ._time import _datetime_to_iso

# Exit code reported when the interpreter could not be spawned or the
# command was killed by the timeout.
SENTINEL_EXIT_CODE = -1


class CaptureStrategy(str, Enum):
    """How environment changes made by a block are learned.

    PARSE: only the line scanner in session.apply_statements.
    SHELL: only the state-file hand-off written by the wrapped command.
    HYBRID: both; the scanner runs before spawn, the state file corrects after.
    """

    PARSE = "parse"
    SHELL = "shell"
    HYBRID = "hybrid"


@dataclass
class ExecutionOptions:
    """Per-call execution settings. None means "use the configured default"."""

    shell_path: Optional[str] = None
    timeout_ms: Optional[int] = None
    working_directory: Optional[str] = None
    environment_overrides: Dict[str, str] = field(default_factory=dict)
    capture_strategy: Optional[CaptureStrategy] = None
    identity: Optional[BlockId] = None


@dataclass
class ExecutionResult:
    """Outcome of one command execution.

    stdout/stderr hold the raw bytes the child wrote; use ``stdout_text`` and
    ``stderr_text`` for decoded views.

    Attributes:
        identity: Block identity the run belongs to (None for raw commands).
        command: The command text as given by the caller (unwrapped).
        ok: True iff exit_code == 0 and the run neither timed out nor was cancelled.
        exit_code: Child exit status, 128+signal when killed, or SENTINEL_EXIT_CODE.
        signal: Terminating signal number, 0 if none.
        timed_out: The timeout fired before natural exit.
        cancelled: The caller cancelled the handle before natural exit.
        duration_ms: Wall-clock duration in milliseconds.
        cwd: Working directory the child was spawned in.
        shell: Interpreter used.
        started_at: UTC start time.
        reconciled_cwd: Working directory reported through the state file.
        reconciled_env: Environment reported through the state file.
        env_delta: Changes against the spawn env (None values mean "unset").
        error: Spawn failure message, if any.
    """

    identity: Optional[BlockId]
    command: str
    ok: bool
    exit_code: int
    signal: int
    timed_out: bool
    duration_ms: int
    cwd: str
    shell: str
    started_at: datetime
    stdout: bytes = b""
    stderr: bytes = b""
    cancelled: bool = False
    reconciled_cwd: Optional[str] = None
    reconciled_env: Optional[Dict[str, str]] = None
    env_delta: Dict[str, Optional[str]] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


def execution_result_to_dict(result: ExecutionResult) -> Dict[str, Any]:
    """Convert ExecutionResult to a JSON-friendly dictionary (streams decoded)."""
    return {
        "identity": result.identity,
        "command": result.command,
        "ok": result.ok,
        "exit_code": result.exit_code,
        "signal": result.signal,
        "timed_out": result.timed_out,
        "cancelled": result.cancelled,
        "duration_ms": result.duration_ms,
        "cwd": result.cwd,
        "shell": result.shell,
        "started_at": _datetime_to_iso(result.started_at),
        "stdout": result.stdout_text,
        "stderr": result.stderr_text,
        "reconciled_cwd": result.reconciled_cwd,
        "env_delta": dict(result.env_delta),
        "error": result.error,
    }

"""
execution.py - Asynchronous shell execution with environment hand-off.

Runs one block's text as ``<shell> -c <text>`` on the running asyncio loop
and reports an ExecutionResult through an ExecutionHandle. The caller never
blocks: ``execute`` returns immediately and the result arrives through
``await handle.wait()`` or a done callback.

A child process cannot change its parent's environment, so with the
``shell`` and ``hybrid`` capture strategies the text is wrapped: it runs in
a subshell, and afterwards (whatever its exit status) the wrapper writes
``$PWD`` and a NUL-separated environment dump to a temporary state file,
then exits with the original status. The state file is read back once the
child is gone and always removed.

Timeouts and cancellation send SIGTERM to the child's process group, then
SIGKILL after a fixed grace window. The exit path and the timer path race;
a once-only guard makes sure exactly one of them finalizes the result.

Usage:
    from mdrun.runtime.execution import Executor

    executor = Executor(config.execution)
    handle = executor.execute(block.content, session, ExecutionOptions(identity=block.block_id))
    handle.add_done_callback(on_complete)
    result = await handle.wait()
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import tempfile
import time
from typing import Callable, Dict, List, Optional, Tuple

from mdrun.config.runtime_config import ExecutionConfig

from .types import (
    SENTINEL_EXIT_CODE,
    CaptureStrategy,
    ExecutionOptions,
    ExecutionResult,
    Session,
    utc_now,
)

logger = logging.getLogger(__name__)

PWD_MARKER = "__MDRUN_PWD__="
STATUS_VAR = "__mdrun_status"

# Variables the shell maintains itself; never part of an env delta.
IGNORED_ENV_NAMES = frozenset({"_", "SHLVL", "PWD", "OLDPWD", STATUS_VAR})

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_READ_CHUNK = 65536


# =============================================================================
# State-file protocol
# =============================================================================


def _sh_quote(value: str) -> str:
    return "'" + value.replace("'", "'\\''") + "'"


def wrap_command(command_text: str, state_file: str) -> str:
    """Wrap command text so it reports its final cwd and environment.

    ``set -a`` exports every later assignment, so bare ``NAME=VALUE``
    statements show up in the dump too.
    """
    body = command_text if command_text.strip() else ":"
    if not body.endswith("\n"):
        body += "\n"
    target = _sh_quote(state_file)
    trailer = (
        f"{STATUS_VAR}=$?; printf '{PWD_MARKER}%s\\n' \"$PWD\" > {target}; "
        f"/usr/bin/env -0 >> {target}; exit ${STATUS_VAR} )"
    )
    return "set -a; (\n{\n" + body + "}\n" + trailer


def read_state_file(path: str) -> Optional[Tuple[Optional[str], Dict[str, str]]]:
    """Parse a state file into (cwd, environment).

    Returns None when the file is missing, empty or unreadable; callers then
    keep the pre-execution session state.
    """
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        logger.debug("State file %s unreadable: %s", path, e)
        return None
    if not data:
        return None

    text = data.decode("utf-8", errors="replace")
    cwd: Optional[str] = None
    dump = ""
    marker_at = text.find(PWD_MARKER)
    if marker_at >= 0:
        line_end = text.find("\n", marker_at)
        if line_end < 0:
            line_end = len(text)
        cwd = text[marker_at + len(PWD_MARKER):line_end] or None
        dump = text[line_end + 1:]

    env: Dict[str, str] = {}
    for item in dump.split("\0"):
        if "=" not in item:
            continue
        name, value = item.split("=", 1)
        if name:
            env[name] = value
    return cwd, env


def compute_env_delta(
    before: Dict[str, str], after: Dict[str, str]
) -> Dict[str, Optional[str]]:
    """Variables added or changed (new value) and removed (None) by the child."""
    delta: Dict[str, Optional[str]] = {}
    for name, value in after.items():
        if name in IGNORED_ENV_NAMES or not _ENV_NAME.match(name):
            continue
        if before.get(name) != value:
            delta[name] = value
    for name in before:
        if name in IGNORED_ENV_NAMES or not _ENV_NAME.match(name):
            continue
        if name not in after:
            delta[name] = None
    return delta


def _new_state_file() -> Optional[str]:
    try:
        fd, path = tempfile.mkstemp(prefix="mdrun-state-", suffix=".env")
    except OSError as e:
        logger.warning("Could not create state file, reconciliation skipped: %s", e)
        return None
    os.close(fd)
    return path


def _remove_quietly(path: Optional[str]) -> None:
    if not path:
        return
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug("Could not remove %s: %s", path, e)


def _split_returncode(returncode: int) -> Tuple[int, int]:
    """asyncio reports signal deaths as negative codes; map to (128+sig, sig)."""
    if returncode < 0:
        return 128 - returncode, -returncode
    return returncode, 0


# =============================================================================
# Handle
# =============================================================================


class ExecutionHandle:
    """Cancellable handle for one in-flight execution.

    Created by Executor.execute; the result is delivered exactly once.
    """

    def __init__(
        self,
        command: str,
        identity: Optional[str],
        shell: str,
        cwd: str,
        env: Dict[str, str],
        timeout_ms: int,
        kill_grace_ms: int,
        strategy: CaptureStrategy,
        loop: asyncio.AbstractEventLoop,
    ):
        self.command = command
        self.identity = identity
        self.shell = shell
        self.cwd = cwd
        self.env = env
        self.timeout_ms = timeout_ms
        self.kill_grace_ms = kill_grace_ms
        self.strategy = strategy

        self._loop = loop
        self._future: asyncio.Future = loop.create_future()
        self._process: Optional[asyncio.subprocess.Process] = None
        self._task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._kill_timer: Optional[asyncio.TimerHandle] = None
        self._state_file: Optional[str] = None
        self._stdout: List[bytes] = []
        self._stderr: List[bytes] = []
        self._finished = False
        self._timed_out = False
        self._cancel_requested = False
        self._last_signal = 0
        self._started_monotonic = time.monotonic()
        self._started_at = utc_now()

    # -- public surface -----------------------------------------------------

    def done(self) -> bool:
        return self._future.done()

    def result(self) -> ExecutionResult:
        """The final result; raises asyncio.InvalidStateError while running."""
        return self._future.result()

    async def wait(self) -> ExecutionResult:
        return await asyncio.shield(self._future)

    def add_done_callback(self, fn: Callable[[ExecutionResult], None]) -> None:
        """Call fn(result) on the loop once the execution is finalized."""
        self._future.add_done_callback(lambda fut: fn(fut.result()))

    def cancel(self) -> bool:
        """Terminate the child (SIGTERM, then SIGKILL). False if already finished."""
        if self._finished:
            return False
        self._cancel_requested = True
        if self._process is not None:
            self._terminate()
        return True

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    # -- lifecycle ------------------------------------------------------------

    def _start(self) -> None:
        self._task = self._loop.create_task(self._run())

    async def _run(self) -> None:
        command_to_run = self.command
        if self.strategy != CaptureStrategy.PARSE:
            self._state_file = _new_state_file()
            if self._state_file:
                command_to_run = wrap_command(self.command, self._state_file)

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.shell,
                "-c",
                command_to_run,
                cwd=self.cwd,
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.warning("Failed to spawn %s in %s: %s", self.shell, self.cwd, e)
            self._cleanup_state_file()
            self._finalize(SENTINEL_EXIT_CODE, 0, error=str(e))
            return

        logger.debug("Spawned pid %d for %s", self._process.pid, self._label())
        self._timer = self._loop.call_later(self.timeout_ms / 1000.0, self._on_timeout)
        if self._cancel_requested:
            self._terminate()

        try:
            _, _, returncode = await asyncio.gather(
                self._pump(self._process.stdout, self._stdout),
                self._pump(self._process.stderr, self._stderr),
                self._process.wait(),
            )
        except asyncio.CancelledError:
            self._signal_group(signal.SIGKILL)
            self._cancel_requested = True
            self._cleanup_state_file()
            self._finalize(SENTINEL_EXIT_CODE, signal.SIGKILL)
            raise

        exit_code, sig = _split_returncode(returncode)
        reconciled: Optional[Tuple[Optional[str], Dict[str, str]]] = None
        if self._state_file and not self._finished:
            reconciled = read_state_file(self._state_file)
            if reconciled is None:
                logger.debug("No state reported by %s; reconciliation skipped", self._label())
        self._cleanup_state_file()
        self._finalize(exit_code, sig, reconciled=reconciled)

    @staticmethod
    async def _pump(stream: Optional[asyncio.StreamReader], sink: List[bytes]) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            sink.append(chunk)

    def _on_timeout(self) -> None:
        if self._finished:
            return
        logger.debug("Timeout after %dms for %s", self.timeout_ms, self._label())
        self._timed_out = True
        self._terminate()

    def _terminate(self) -> None:
        """Graceful signal now, forceful one after the grace window."""
        if self._kill_timer is not None:
            return
        self._signal_group(signal.SIGTERM)
        self._kill_timer = self._loop.call_later(
            self.kill_grace_ms / 1000.0, self._on_kill_deadline
        )

    def _on_kill_deadline(self) -> None:
        if self._finished:
            return
        self._signal_group(signal.SIGKILL)
        self._cleanup_state_file()
        self._finalize(SENTINEL_EXIT_CODE, signal.SIGKILL)

    def _signal_group(self, sig: int) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._last_signal = int(sig)
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # The group leader is gone and the pid was reused; signal the child only.
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass

    def _cleanup_state_file(self) -> None:
        path, self._state_file = self._state_file, None
        _remove_quietly(path)

    def _finalize(
        self,
        exit_code: int,
        sig: int,
        error: Optional[str] = None,
        reconciled: Optional[Tuple[Optional[str], Dict[str, str]]] = None,
    ) -> None:
        """Deliver the result. Only the first call has any effect."""
        if self._finished:
            return
        self._finished = True
        for timer in (self._timer, self._kill_timer):
            if timer is not None:
                timer.cancel()

        interrupted = self._timed_out or self._cancel_requested
        if interrupted:
            exit_code = SENTINEL_EXIT_CODE
            sig = sig or self._last_signal

        reconciled_cwd: Optional[str] = None
        reconciled_env: Optional[Dict[str, str]] = None
        env_delta: Dict[str, Optional[str]] = {}
        if reconciled is not None and not interrupted:
            reconciled_cwd, reconciled_env = reconciled
            env_delta = compute_env_delta(self.env, reconciled_env)

        result = ExecutionResult(
            identity=self.identity,
            command=self.command,
            ok=exit_code == 0 and not interrupted and error is None,
            exit_code=exit_code,
            signal=int(sig),
            timed_out=self._timed_out,
            cancelled=self._cancel_requested and not self._timed_out,
            duration_ms=int((time.monotonic() - self._started_monotonic) * 1000),
            cwd=self.cwd,
            shell=self.shell,
            started_at=self._started_at,
            stdout=b"".join(self._stdout),
            stderr=b"".join(self._stderr),
            reconciled_cwd=reconciled_cwd,
            reconciled_env=reconciled_env,
            env_delta=env_delta,
            error=error,
        )

        if result.timed_out:
            logger.warning("Timed out after %dms running %s", result.duration_ms, self._label())
        elif result.ok:
            logger.info("Completed %s in %dms", self._label(), result.duration_ms)
        else:
            logger.info(
                "Failed (%d) %s in %dms", result.exit_code, self._label(), result.duration_ms
            )

        if not self._future.done():
            self._future.set_result(result)

    def _label(self) -> str:
        if self.identity:
            return f"block {self.identity[:12]}"
        return "command"


# =============================================================================
# Executor
# =============================================================================


class Executor:
    """Spawns shell executions on the running event loop.

    The executor never mutates a Session; callers merge reconciled state
    back themselves (see session.reconcile).
    """

    def __init__(self, config: Optional[ExecutionConfig] = None):
        self.config = config or ExecutionConfig()

    def resolve_env(self, session: Session, options: ExecutionOptions) -> Dict[str, str]:
        env = dict(session.environment)
        env.update(options.environment_overrides)
        return env

    def execute(
        self,
        command_text: str,
        session: Session,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionHandle:
        """Start executing command_text; returns immediately.

        Must be called from a coroutine or callback on a running loop.
        """
        options = options or ExecutionOptions()
        loop = asyncio.get_running_loop()
        handle = ExecutionHandle(
            command=command_text,
            identity=options.identity,
            shell=options.shell_path or self.config.shell,
            cwd=options.working_directory or session.cwd,
            env=self.resolve_env(session, options),
            timeout_ms=options.timeout_ms or self.config.timeout_ms,
            kill_grace_ms=self.config.kill_grace_ms,
            strategy=options.capture_strategy or self.config.capture_strategy,
            loop=loop,
        )
        logger.debug(
            "Starting %s in %s (strategy=%s)", handle._label(), handle.cwd, handle.strategy.value
        )
        handle._start()
        return handle

    async def run(
        self,
        command_text: str,
        session: Session,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionResult:
        """Execute and wait for the result."""
        return await self.execute(command_text, session, options).wait()

"""Tests for mdrun.runtime.execution (async shell executor).

These tests spawn real /bin/sh processes and drive the coroutine API with
asyncio.run from synchronous tests.
"""

import asyncio
import glob
import os
import tempfile
from pathlib import Path

import pytest

from mdrun.config.runtime_config import ExecutionConfig
from mdrun.runtime.execution import (
    PWD_MARKER,
    Executor,
    compute_env_delta,
    read_state_file,
    wrap_command,
)
from mdrun.runtime.types import SENTINEL_EXIT_CODE, CaptureStrategy, ExecutionOptions, Session

pytestmark = pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="requires /bin/sh")


@pytest.fixture
def executor(execution_config: ExecutionConfig) -> Executor:
    return Executor(execution_config)


@pytest.fixture
def session(tmp_path: Path, base_env) -> Session:
    return Session(key=str(tmp_path / "doc.md"), cwd=str(tmp_path), environment=dict(base_env))


def _state_files():
    return set(glob.glob(os.path.join(tempfile.gettempdir(), "mdrun-state-*")))


# ============================================================================
# State-file protocol
# ============================================================================


class TestWrapCommand:
    def test_wrapper_shape(self):
        wrapped = wrap_command("echo hi", "/tmp/state")
        assert wrapped.startswith("set -a; (\n{\necho hi\n}\n")
        assert "'/tmp/state'" in wrapped
        assert wrapped.rstrip().endswith(")")

    def test_empty_command_becomes_noop(self):
        assert "{\n:\n}" in wrap_command("   ", "/tmp/state")

    def test_state_path_is_quoted(self):
        wrapped = wrap_command("true", "/tmp/it's here")
        assert "'/tmp/it'\\''s here'" in wrapped


class TestReadStateFile:
    def test_parses_cwd_and_env(self, tmp_path: Path):
        path = tmp_path / "state"
        path.write_bytes(f"{PWD_MARKER}/work\n".encode() + b"A=1\0B=x=y\0")
        cwd, env = read_state_file(str(path))
        assert cwd == "/work"
        assert env == {"A": "1", "B": "x=y"}

    def test_missing_or_empty(self, tmp_path: Path):
        assert read_state_file(str(tmp_path / "nope")) is None
        empty = tmp_path / "empty"
        empty.write_bytes(b"")
        assert read_state_file(str(empty)) is None


class TestComputeEnvDelta:
    def test_added_changed_removed(self):
        before = {"KEEP": "1", "CHANGE": "a", "GONE": "x"}
        after = {"KEEP": "1", "CHANGE": "b", "NEW": "n"}
        assert compute_env_delta(before, after) == {"CHANGE": "b", "NEW": "n", "GONE": None}

    def test_ignores_shell_variables(self):
        delta = compute_env_delta({}, {"PWD": "/", "SHLVL": "2", "_": "/usr/bin/env", "OK": "1"})
        assert delta == {"OK": "1"}


# ============================================================================
# Execution
# ============================================================================


class TestExecute:
    """Tests for Executor.execute and ExecutionHandle."""

    def test_echo_hello(self, executor: Executor, session: Session):
        result = asyncio.run(executor.run("echo hello", session))
        assert result.ok is True
        assert result.exit_code == 0
        assert "hello" in result.stdout_text
        assert result.timed_out is False
        assert result.cwd == str(session.cwd)

    def test_nonzero_exit_and_stderr(self, executor: Executor, session: Session):
        result = asyncio.run(executor.run("echo oops >&2; exit 3", session))
        assert result.ok is False
        assert result.exit_code == 3
        assert result.stderr_text.strip() == "oops"

    def test_timeout_kills_process(self, executor: Executor, session: Session):
        async def scenario():
            handle = executor.execute("sleep 5", session, ExecutionOptions(timeout_ms=200))
            result = await handle.wait()
            return handle, result

        handle, result = asyncio.run(scenario())
        assert result.timed_out is True
        assert result.ok is False
        assert result.exit_code == SENTINEL_EXIT_CODE
        assert result.duration_ms < 4000
        with pytest.raises(ProcessLookupError):
            os.kill(handle.pid, 0)

    def test_timeout_escalates_when_term_is_ignored(self, executor: Executor, session: Session):
        command = "trap '' TERM; sleep 5"
        result = asyncio.run(executor.run(command, session, ExecutionOptions(timeout_ms=200)))
        assert result.timed_out is True
        assert result.duration_ms < 4000

    def test_cancel(self, executor: Executor, session: Session):
        async def scenario():
            handle = executor.execute("sleep 5", session)
            await asyncio.sleep(0.2)
            assert handle.cancel() is True
            return await handle.wait()

        result = asyncio.run(scenario())
        assert result.cancelled is True
        assert result.timed_out is False
        assert result.ok is False

    def test_done_callback_fires_once(self, executor: Executor, session: Session):
        seen = []

        async def scenario():
            handle = executor.execute("echo cb", session)
            handle.add_done_callback(seen.append)
            await handle.wait()
            await asyncio.sleep(0)
            assert handle.done()
            assert handle.cancel() is False
            return handle.result()

        result = asyncio.run(scenario())
        assert seen == [result]

    def test_execute_returns_before_completion(self, executor: Executor, session: Session):
        async def scenario():
            handle = executor.execute("sleep 0.3", session)
            started_done = handle.done()
            await handle.wait()
            return started_done

        assert asyncio.run(scenario()) is False

    def test_spawn_failure(self, executor: Executor, session: Session):
        options = ExecutionOptions(shell_path="/nonexistent/shell")
        result = asyncio.run(executor.run("echo hi", session, options))
        assert result.ok is False
        assert result.exit_code == SENTINEL_EXIT_CODE
        assert result.error

    def test_missing_working_directory_is_spawn_failure(self, executor: Executor, session: Session):
        session.cwd = "/definitely/not/here"
        result = asyncio.run(executor.run("echo hi", session))
        assert result.ok is False
        assert result.error

    def test_hybrid_reports_cwd_and_env(self, executor: Executor, session: Session, tmp_path: Path):
        (tmp_path / "sub").mkdir()
        result = asyncio.run(executor.run("cd sub\nexport FOO=bar\nBAZ=1\nunset LANG", session))
        assert result.ok
        assert result.reconciled_cwd == str(tmp_path / "sub")
        assert result.env_delta["FOO"] == "bar"
        assert result.env_delta["BAZ"] == "1"
        assert result.env_delta["LANG"] is None
        assert "PWD" not in result.env_delta

    def test_state_reported_even_on_failure(self, executor: Executor, session: Session):
        result = asyncio.run(executor.run("export X=1; false", session))
        assert result.exit_code == 1
        assert result.env_delta.get("X") == "1"

    def test_parse_strategy_skips_reconciliation(self, executor: Executor, session: Session):
        options = ExecutionOptions(capture_strategy=CaptureStrategy.PARSE)
        result = asyncio.run(executor.run("cd /; export FOO=bar", session, options))
        assert result.ok
        assert result.reconciled_cwd is None
        assert result.env_delta == {}

    def test_state_file_removed(self, executor: Executor, session: Session):
        before = _state_files()
        asyncio.run(executor.run("echo hi", session))
        assert _state_files() - before == set()

    def test_executor_does_not_mutate_session(self, executor: Executor, session: Session):
        cwd = session.cwd
        env = dict(session.environment)
        asyncio.run(executor.run("cd /; export FOO=bar", session))
        assert session.cwd == cwd
        assert session.environment == env

    def test_overrides(self, executor: Executor, session: Session, tmp_path: Path):
        options = ExecutionOptions(
            working_directory="/",
            environment_overrides={"GREETING": "hey"},
        )
        result = asyncio.run(executor.run('echo "$GREETING"; pwd', session, options))
        assert result.stdout_text.split() == ["hey", "/"]
        assert "GREETING" not in session.environment

    def test_stdin_is_closed(self, executor: Executor, session: Session):
        result = asyncio.run(executor.run("cat", session, ExecutionOptions(timeout_ms=2000)))
        assert result.ok
        assert result.stdout == b""

    def test_binary_output_is_kept_as_bytes(self, executor: Executor, session: Session):
        result = asyncio.run(executor.run("printf 'a\\000b'", session))
        assert result.stdout == b"a\x00b"

    def test_execute_requires_running_loop(self, executor: Executor, session: Session):
        with pytest.raises(RuntimeError):
            executor.execute("echo hi", session)

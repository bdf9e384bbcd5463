"""Tests for mdrun.runtime.service.RunService.

These spawn /bin/sh, so they are skipped where it is unavailable.
"""

import asyncio
import os
from pathlib import Path

import pytest

from mdrun.config.runtime_config import ExecutionConfig, MdrunConfig, ResultsConfig
from mdrun.runtime.errors import BlockNotFoundError
from mdrun.runtime.execution import Executor
from mdrun.runtime.results import ResultsStore
from mdrun.runtime.service import (
    RunService,
    describe_problem,
    latest_output_to_dict,
    problem_entry_to_dict,
    run_all_summary_to_dict,
)
from mdrun.runtime.types import CaptureStrategy, ExecutionOptions

pytestmark = pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="requires /bin/sh")


def fence(body: str, lang: str = "sh") -> str:
    return f"```{lang}\n{body}\n```\n"


class TestRunAt:
    def test_runs_block_and_persists(self, service: RunService, doc_path: Path):
        text = doc_path.read_text()
        result = asyncio.run(service.run_at(str(doc_path), text, line=5))

        assert result.ok
        assert result.stdout == b"hello\n"
        block = service.blocks(text)[0]
        assert result.identity == block.block_id
        entry = service.results.read_latest(str(doc_path), block.block_id)
        assert entry is not None
        assert entry.exit_code == 0
        assert entry.start_line == block.start_line

    def test_line_outside_block_raises(self, service: RunService, doc_path: Path):
        text = doc_path.read_text()
        with pytest.raises(BlockNotFoundError) as excinfo:
            asyncio.run(service.run_at(str(doc_path), text, line=0))
        assert excinfo.value.line == 0

    def test_non_runnable_block_raises(self, service: RunService, doc_path: Path):
        with pytest.raises(BlockNotFoundError):
            asyncio.run(service.run_at(str(doc_path), doc_path.read_text(), line=11))

    def test_unsaved_document_is_not_persisted(self, service: RunService, tmp_path: Path):
        text = fence("echo unsaved")
        result = asyncio.run(service.run_at(None, text, line=1))
        assert result.ok
        assert list(tmp_path.glob("*.result.json")) == []

    def test_options_are_forwarded(self, service: RunService, write_doc):
        path = write_doc(fence('echo "$EXTRA"'))
        options = ExecutionOptions(environment_overrides={"EXTRA": "forwarded"})
        result = asyncio.run(service.run_at(str(path), path.read_text(), 1, options))
        assert result.stdout == b"forwarded\n"


class TestSessionContinuity:
    def test_cd_and_export_carry_to_next_block(self, service: RunService, write_doc, tmp_path):
        sub = tmp_path / "sub"
        sub.mkdir()
        first = fence(f"cd {sub}\nexport GREETING=hi")
        path = write_doc(first + "\n" + fence('pwd\necho "$GREETING"'))
        summary = asyncio.run(service.run_all(str(path), path.read_text()))

        assert summary.ok == 2
        assert summary.results[1].stdout.decode() == f"{tmp_path / 'sub'}\nhi\n"
        session = service.sessions.get(str(path))
        assert session.cwd == str(tmp_path / "sub")
        assert session.environment["GREETING"] == "hi"

    def test_compound_cd_reconciled_from_state_file(self, service, write_doc, tmp_path):
        (tmp_path / "deep").mkdir()
        path = write_doc(fence("true && cd deep"))
        asyncio.run(service.run_at(str(path), path.read_text(), 1))
        assert service.sessions.get(str(path)).cwd == str(tmp_path / "deep")

    def test_scanned_cd_moves_spawn_directory(self, service: RunService, write_doc, tmp_path):
        path = write_doc(fence("cd ..\npwd"))
        result = asyncio.run(service.run_at(str(path), path.read_text(), 1))
        assert result.cwd == str(tmp_path.parent)

    def test_reset_session_keeps_results(self, service: RunService, write_doc, tmp_path):
        path = write_doc(fence("export A=1"))
        asyncio.run(service.run_at(str(path), path.read_text(), 1))
        session = service.reset_session(str(path))

        assert "A" not in session.environment
        assert session.cwd == str(tmp_path)
        assert len(service.results.read_all_latest(str(path))) == 1

    def test_session_summary(self, service: RunService, doc_path: Path, tmp_path: Path):
        assert service.session_summary(str(doc_path)) == f"CWD: {tmp_path} | 3 env vars"


class TestRunAll:
    def test_stops_on_first_failure(self, service: RunService, write_doc):
        path = write_doc(fence("false") + fence("echo after"))
        summary = asyncio.run(service.run_all(str(path), path.read_text()))

        assert (summary.ok, summary.failed) == (0, 1)
        assert summary.stopped_early is True
        assert len(summary.results) == 1

    def test_keep_going(self, service: RunService, write_doc):
        path = write_doc(fence("false") + fence("echo after"))
        summary = asyncio.run(service.run_all(str(path), path.read_text(), stop_on_error=False))

        assert (summary.ok, summary.failed) == (1, 1)
        assert summary.stopped_early is False

    def test_failure_on_last_block_is_not_early_stop(self, service, write_doc):
        path = write_doc(fence("true") + fence("false"))
        summary = asyncio.run(service.run_all(str(path), path.read_text()))
        assert summary.failed == 1
        assert summary.stopped_early is False

    def test_empty_document(self, service: RunService, write_doc):
        path = write_doc("# nothing here\n")
        summary = asyncio.run(service.run_all(str(path), path.read_text()))
        assert summary.results == []

    def test_summary_dict(self, service: RunService, doc_path: Path):
        summary = asyncio.run(service.run_all(str(doc_path), doc_path.read_text()))
        data = run_all_summary_to_dict(summary)
        assert data["ok"] == 2
        assert [r["stdout"] for r in data["results"]] == ["hello\n", "second\n"]


class TestRunNext:
    def test_skips_blocks_with_results(self, service: RunService, doc_path: Path):
        text = doc_path.read_text()
        first = asyncio.run(service.run_next(str(doc_path), text, line=-1))
        second = asyncio.run(service.run_next(str(doc_path), text, line=-1))
        third = asyncio.run(service.run_next(str(doc_path), text, line=-1))

        assert first.stdout == b"hello\n"
        assert second.stdout == b"second\n"
        assert third is None

    def test_starts_after_line(self, service: RunService, doc_path: Path):
        result = asyncio.run(service.run_next(str(doc_path), doc_path.read_text(), line=5))
        assert result.stdout == b"second\n"

    def test_force_reruns(self, service: RunService, doc_path: Path):
        text = doc_path.read_text()
        asyncio.run(service.run_all(str(doc_path), text))
        result = asyncio.run(service.run_next(str(doc_path), text, line=-1, force=True))
        assert result.stdout == b"hello\n"


class TestInterruption:
    def test_timeout_records_problem(self, service: RunService, write_doc):
        path = write_doc(fence("sleep 5"))
        options = ExecutionOptions(timeout_ms=200)
        result = asyncio.run(service.run_at(str(path), path.read_text(), 1, options))

        assert result.timed_out
        problems = service.problems(str(path))
        assert len(problems) == 1
        assert problems[0].text == "[timeout] sleep 5 "

    def test_wait_ceiling_cancels(self, sessions, store, results_config, write_doc):
        execution = ExecutionConfig(
            shell="/bin/sh",
            timeout_ms=10000,
            kill_grace_ms=200,
            capture_strategy=CaptureStrategy.HYBRID,
            wait_ceiling_ms=300,
        )
        service = RunService(
            sessions=sessions,
            results=store,
            executor=Executor(execution),
            config=MdrunConfig(execution=execution, results=results_config),
        )
        path = write_doc(fence("sleep 5"))
        result = asyncio.run(service.run_at(str(path), path.read_text(), 1))

        assert result.cancelled
        assert not result.ok
        assert service.problems()[0].text.startswith("[cancelled]")

    def test_held_sidecar_lock_does_not_stall_other_runs(
        self, sessions, execution_config, write_doc
    ):
        results_config = ResultsConfig(lock_timeout_ms=1500)
        service = RunService(
            sessions=sessions,
            results=ResultsStore(results_config),
            executor=Executor(execution_config),
            config=MdrunConfig(execution=execution_config, results=results_config),
        )
        locked = write_doc(fence("true"), name="locked.md")
        slow = write_doc(fence("sleep 5"), name="slow.md")
        # Another process is holding the sidecar lock of the first document.
        service.results.paths(str(locked)).lock_path.write_text("999999\n")

        async def run_both():
            return await asyncio.gather(
                service.run_at(str(locked), locked.read_text(), 1),
                service.run_at(str(slow), slow.read_text(), 1, ExecutionOptions(timeout_ms=300)),
            )

        quick, timed = asyncio.run(run_both())

        assert quick.ok
        assert service.results.read_document(str(locked)).executions == {}
        assert timed.timed_out
        assert timed.duration_ms < 1200


class TestProblems:
    def test_failure_records_one_based_range(self, service: RunService, write_doc):
        path = write_doc("intro\n\n" + fence("echo oops >&2\nexit 3"))
        asyncio.run(service.run_at(str(path), path.read_text(), 3))

        [problem] = service.problems(str(path))
        assert (problem.start_line, problem.end_line) == (4, 5)
        assert problem.text.startswith("[exit 3] echo oops >&2 exit 3")
        assert problem.text.endswith("| oops")
        assert problem_entry_to_dict(problem)["doc_path"] == str(path)

    def test_success_records_nothing(self, service: RunService, doc_path: Path):
        asyncio.run(service.run_all(str(doc_path), doc_path.read_text()))
        assert service.problems() == []

    def test_filter_and_clear(self, service: RunService, write_doc):
        a = write_doc(fence("false"), name="a.md")
        b = write_doc(fence("exit 2"), name="b.md")
        asyncio.run(service.run_all(str(a), a.read_text()))
        asyncio.run(service.run_all(str(b), b.read_text()))

        assert len(service.problems()) == 2
        assert len(service.problems(str(a))) == 1
        assert service.clear_problems(str(a)) == 1
        assert [p.doc_path for p in service.problems()] == [str(b)]
        assert service.clear_problems() == 1
        assert service.problems() == []

    def test_describe_problem_prefers_error_when_stderr_empty(self, make_result):
        result = make_result(command="nosuch", stdout=b"", exit_code=-1)
        result.error = "spawn failed"
        assert describe_problem(result) == "[exit -1] nosuch | spawn failed"


class TestResults:
    def test_latest_output(self, service: RunService, doc_path: Path):
        text = doc_path.read_text()
        asyncio.run(service.run_at(str(doc_path), text, 5))
        block = service.blocks(text)[0]

        output = service.latest_output(str(doc_path), block.block_id)
        assert output.stdout == "hello"
        assert output.stderr == ""
        data = latest_output_to_dict(output)
        assert data["stdout_text"] == "hello"
        assert data["block_id"] == block.block_id

    def test_latest_output_missing(self, service: RunService, doc_path: Path):
        assert service.latest_output(str(doc_path), "0" * 64) is None

    def test_resync_drops_removed_blocks(self, service: RunService, doc_path: Path):
        asyncio.run(service.run_all(str(doc_path), doc_path.read_text()))
        edited = fence("echo hello")
        assert service.resync(str(doc_path), edited) == 1
        assert len(service.results.read_all_latest(str(doc_path))) == 1

    def test_resync_without_blocks_keeps_everything(self, service: RunService, doc_path):
        asyncio.run(service.run_all(str(doc_path), doc_path.read_text()))
        assert service.resync(str(doc_path), "no blocks anymore\n") == 0
        assert len(service.results.read_all_latest(str(doc_path))) == 2


def test_from_config_builds_independent_services():
    first = RunService.from_config()
    second = RunService.from_config()
    assert first.sessions is not second.sessions
    assert first.config.execution.shell == "/bin/sh"


def test_read_source_missing(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        RunService.read_source(str(tmp_path / "missing.md"))

"""
service.py - RunService orchestrator

This module provides the RunService that coordinates the block parser, the
session store, the executor and the results store. All consumers (CLI,
API) should use RunService rather than wiring those pieces themselves.

Collaborators are passed in, never looked up globally, so tests and the
API server can each own an independent service.

Usage:
    from mdrun.runtime.service import RunService

    service = RunService.from_config()
    result = await service.run_at(doc_path, text, line=12)
    summary = await service.run_all(doc_path, text)
    removed = service.resync(doc_path, text)
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from mdrun.config.runtime_config import MdrunConfig, load_mdrun_config

from .async_utils import wait_for_condition
from .blocks import block_at, discover_blocks, identities
from .errors import BlockNotFoundError
from .execution import ExecutionHandle, Executor
from .results import ResultsStore
from .session import SessionStore, apply_statements, reconcile
from .types import (
    Block,
    ExecutionEntry,
    ExecutionOptions,
    ExecutionResult,
    Session,
    execution_entry_to_dict,
    execution_result_to_dict,
)

# Module logger
logger = logging.getLogger(__name__)

# Extra time allowed for the completion callback once a kill was requested.
_SETTLE_MARGIN_S = 1.0


# =============================================================================
# Result shapes
# =============================================================================


@dataclass
class ProblemEntry:
    """One failed or timed-out block, addressed by 1-based line range."""

    doc_path: str
    start_line: int
    end_line: int
    identity: str
    text: str


def problem_entry_to_dict(problem: ProblemEntry) -> Dict[str, Any]:
    return {
        "doc_path": problem.doc_path,
        "start_line": problem.start_line,
        "end_line": problem.end_line,
        "identity": problem.identity,
        "text": problem.text,
    }


@dataclass
class RunAllSummary:
    """Outcome of a sequential run over every block of a document."""

    ok: int = 0
    failed: int = 0
    stopped_early: bool = False
    results: List[ExecutionResult] = field(default_factory=list)


def run_all_summary_to_dict(summary: RunAllSummary) -> Dict[str, Any]:
    return {
        "ok": summary.ok,
        "failed": summary.failed,
        "stopped_early": summary.stopped_early,
        "results": [execution_result_to_dict(r) for r in summary.results],
    }


@dataclass
class LatestOutput:
    """A stored entry with both streams resolved to text."""

    entry: ExecutionEntry
    stdout: str
    stderr: str


def latest_output_to_dict(output: LatestOutput) -> Dict[str, Any]:
    data = execution_entry_to_dict(output.entry)
    data["stdout_text"] = output.stdout
    data["stderr_text"] = output.stderr
    return data


def describe_problem(result: ExecutionResult) -> str:
    """Problem-list text: ``[timeout] cmd`` or ``[exit N] cmd | first stderr line``."""
    command = result.command.replace("\n", " ")
    if result.timed_out:
        return f"[timeout] {command[:120]}"
    if result.cancelled:
        return f"[cancelled] {command[:120]}"
    first_err = result.stderr_text.replace("\r", "").split("\n", 1)[0]
    if not first_err and result.error:
        first_err = result.error
    return f"[exit {result.exit_code}] {command[:80]} | {first_err}"


# =============================================================================
# Service
# =============================================================================


class RunService:
    """Runs blocks of a document against its session and records outcomes.

    Args:
        sessions: Session store shared by every document this service handles.
        results: Sidecar results store.
        executor: Shell executor.
        config: Resolved configuration (for the run-all wait ceiling).
    """

    def __init__(
        self,
        sessions: Optional[SessionStore] = None,
        results: Optional[ResultsStore] = None,
        executor: Optional[Executor] = None,
        config: Optional[MdrunConfig] = None,
    ):
        self.config = config or MdrunConfig()
        self.sessions = sessions or SessionStore()
        self.results = results or ResultsStore(self.config.results)
        self.executor = executor or Executor(self.config.execution)
        self._problems: List[ProblemEntry] = []

    @classmethod
    def from_config(cls, config: Optional[MdrunConfig] = None) -> "RunService":
        """Build a service with fresh collaborators from resolved configuration."""
        config = config or load_mdrun_config()
        return cls(
            sessions=SessionStore(),
            results=ResultsStore(config.results),
            executor=Executor(config.execution),
            config=config,
        )

    # =========================================================================
    # Documents and blocks
    # =========================================================================

    @staticmethod
    def read_source(doc_path: str) -> str:
        """Read a document's text from disk (raises FileNotFoundError)."""
        return Path(doc_path).read_text(encoding="utf-8")

    def blocks(self, text: str) -> List[Block]:
        return discover_blocks(text)

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_block(
        self,
        doc_path: Optional[str],
        block: Block,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionResult:
        """Execute one block and wait until its result is fully processed.

        The session is updated by the statement scanner before spawn and by
        state-file reconciliation after exit; the result is persisted and,
        on failure, recorded in the problem list before this returns.
        """
        session = self.sessions.get_or_create(doc_path)
        apply_statements(block.content, session)

        opts = replace(options or ExecutionOptions(), identity=block.block_id)

        settled: Dict[str, ExecutionResult] = {}

        def on_complete(result: ExecutionResult) -> None:
            task = asyncio.ensure_future(self._complete(doc_path, block, result))

            def on_settled(done: "asyncio.Future[None]") -> None:
                if not done.cancelled() and done.exception() is not None:
                    logger.error(
                        "Completion step for block %s failed: %s",
                        block.block_id[:10],
                        done.exception(),
                    )
                settled["result"] = result

            task.add_done_callback(on_settled)

        handle = self.executor.execute(block.content, session, opts)
        handle.add_done_callback(on_complete)
        await self._wait_settled(handle, settled)
        return settled["result"]

    async def _wait_settled(
        self, handle: ExecutionHandle, settled: Dict[str, ExecutionResult]
    ) -> None:
        ceiling_s = self.config.execution.wait_ceiling_ms / 1000.0
        if await wait_for_condition(lambda: "result" in settled, ceiling_s):
            return
        logger.warning("Wait ceiling of %.1fs reached, cancelling %s", ceiling_s, handle._label())
        handle.cancel()
        await handle.wait()
        grace_s = (
            self.config.execution.kill_grace_ms / 1000.0
            + self.results.config.lock_timeout_ms / 1000.0
            + _SETTLE_MARGIN_S
        )
        await wait_for_condition(lambda: "result" in settled, grace_s)

    async def _complete(
        self, doc_path: Optional[str], block: Block, result: ExecutionResult
    ) -> None:
        """Completion step: reconcile session, persist, record problem.

        Persisting may wait on the sidecar lock, so it runs in the default
        thread pool and other executions keep making progress meanwhile.
        """
        session = self.sessions.get_or_create(doc_path)
        if reconcile(session, result):
            logger.debug("Session %s updated from state file", session.key)

        if doc_path:
            loop = asyncio.get_event_loop()
            persisted = await loop.run_in_executor(
                None,  # Use default executor
                functools.partial(
                    self.results.append, doc_path, block.block_id, result, block=block
                ),
            )
            if not persisted:
                logger.warning("Result for block %s was not persisted", block.block_id[:10])

        if not result.ok:
            self._problems.append(
                ProblemEntry(
                    doc_path=self.sessions.key_for(doc_path),
                    start_line=block.start_line + 1,
                    end_line=block.end_line + 1,
                    identity=block.block_id,
                    text=describe_problem(result),
                )
            )

    async def run_at(
        self,
        doc_path: Optional[str],
        text: str,
        line: int,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionResult:
        """Run the block containing 0-based line.

        Raises:
            BlockNotFoundError: line is not inside a runnable block.
        """
        block = block_at(text, line)
        if block is None:
            raise BlockNotFoundError(line)
        return await self.run_block(doc_path, block, options)

    async def run_next(
        self,
        doc_path: Optional[str],
        text: str,
        line: int,
        force: bool = False,
    ) -> Optional[ExecutionResult]:
        """Run the first block after line that has no stored result.

        With force, the first block after line runs regardless. Returns None
        when no block qualifies.
        """
        latest = self.results.read_all_latest(doc_path) if doc_path else {}
        for block in discover_blocks(text):
            if block.start_line <= line:
                continue
            if force or block.block_id not in latest:
                return await self.run_block(doc_path, block)
        logger.info("No next block to execute after line %d", line)
        return None

    async def run_all(
        self,
        doc_path: Optional[str],
        text: str,
        stop_on_error: bool = True,
    ) -> RunAllSummary:
        """Run every block in document order, one at a time.

        Each block starts only after the previous one's completion step
        (including session reconciliation) has run.
        """
        summary = RunAllSummary()
        blocks = discover_blocks(text)
        for index, block in enumerate(blocks):
            result = await self.run_block(doc_path, block)
            summary.results.append(result)
            if result.ok:
                summary.ok += 1
                continue
            summary.failed += 1
            if stop_on_error:
                summary.stopped_early = index < len(blocks) - 1
                break
        logger.info("Run all complete: %d ok, %d failed", summary.ok, summary.failed)
        return summary

    # =========================================================================
    # Results
    # =========================================================================

    def resync(self, doc_path: str, text: str) -> int:
        """Drop stored results of blocks no longer present in text.

        A document without blocks is left untouched.
        """
        blocks = discover_blocks(text)
        if not blocks:
            logger.info("No shell blocks found to resync in %s", doc_path)
            return 0
        removed = self.results.prune(doc_path, identities(blocks))
        logger.info("Resynced results for %s: removed %d stale entries", doc_path, removed)
        return removed

    def latest_output(self, doc_path: str, identity: str) -> Optional[LatestOutput]:
        """Latest stored entry for identity with its streams read back as text."""
        entry = self.results.read_latest(doc_path, identity)
        if entry is None:
            return None
        return LatestOutput(
            entry=entry,
            stdout=self.results.resolve_stream(entry.stdout),
            stderr=self.results.resolve_stream(entry.stderr),
        )

    # =========================================================================
    # Problems and sessions
    # =========================================================================

    def problems(self, doc_path: Optional[str] = None) -> List[ProblemEntry]:
        """Recorded problems, optionally only those of one document."""
        if doc_path is None:
            return list(self._problems)
        key = self.sessions.key_for(doc_path)
        return [p for p in self._problems if p.doc_path == key]

    def clear_problems(self, doc_path: Optional[str] = None) -> int:
        """Forget recorded problems. Returns how many were removed."""
        before = len(self._problems)
        if doc_path is None:
            self._problems = []
        else:
            key = self.sessions.key_for(doc_path)
            self._problems = [p for p in self._problems if p.doc_path != key]
        return before - len(self._problems)

    def session_summary(self, doc_path: Optional[str]) -> str:
        return self.sessions.summary(doc_path)

    def reset_session(self, doc_path: Optional[str]) -> Session:
        """Replace the document's session; stored results are not touched."""
        return self.sessions.reset(doc_path)

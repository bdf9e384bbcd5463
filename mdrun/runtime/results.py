"""
results.py - Durable "latest outcome per block" store.

Each source document gets one sidecar JSON document mapping block identity
to its most recent ExecutionEntry. A new run of the same identity
overwrites the previous entry; there is no history.

Every read-modify-write happens under a cross-process lock file and ends
with an atomic rename, so two editor processes appending to the same
sidecar never lose each other's entries and a reader never sees a partial
document. Failures on this path are logged as warnings and reported as a
False/0 return value; they never affect the execution result itself.

Large or binary streams go to artifact files next to the sidecar; the
document then stores only the file reference.

Usage:
    from mdrun.runtime.results import ResultsStore

    store = ResultsStore(config.results)
    store.append(doc_path, block.block_id, result, block=block)
    entry = store.read_latest(doc_path, block.block_id)
    removed = store.prune(doc_path, {b.block_id for b in blocks})
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from mdrun.config.runtime_config import ResultsConfig

from . import storage
from .errors import ArtifactReadError, LockContentionError, MdrunError, ResultsWriteError
from .path_helpers import SidecarPaths, artifact_path, ensure_artifacts_dir, sidecar_paths
from .types import (
    ArtifactRefs,
    Block,
    ExecutionEntry,
    ExecutionResult,
    FileStream,
    InlineStream,
    ResultsDocument,
    StreamRecord,
    _datetime_to_iso,
    generate_entry_id,
    results_document_from_dict,
    results_document_to_dict,
    utc_now,
)

# Module logger
logger = logging.getLogger(__name__)


def split_stream_lines(text: str) -> List[str]:
    """Split stream text into lines; one trailing newline does not add a line."""
    if not text:
        return []
    if text.endswith("\n"):
        text = text[:-1]
    return text.split("\n")


def is_binary(data: bytes) -> bool:
    """A stream is binary when it contains a NUL byte."""
    return b"\0" in data


def command_identity(command: str) -> str:
    """Key used for executions that do not belong to a block."""
    return hashlib.sha256(command.encode("utf-8")).hexdigest()


class ResultsStore:
    """Sidecar-backed store of the latest execution per block identity.

    Args:
        config: Persistence settings (inline ceiling, base dir, retention, lock).
        clock: Returns the current aware UTC datetime (injectable for tests).
    """

    def __init__(
        self,
        config: Optional[ResultsConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or ResultsConfig()
        self._clock = clock or utc_now

    # =========================================================================
    # Paths
    # =========================================================================

    def paths(self, doc_path: str) -> SidecarPaths:
        return sidecar_paths(doc_path, self.config.base_dir)

    # =========================================================================
    # Reading
    # =========================================================================

    def read_document(self, doc_path: str) -> ResultsDocument:
        """Read the sidecar; a missing or corrupt file yields an empty document."""
        paths = self.paths(doc_path)
        data = storage._load_json_safe(paths.results_path, file_type="results")
        return results_document_from_dict(data, source_path=str(Path(doc_path).resolve()))

    def read_latest(self, doc_path: str, identity: str) -> Optional[ExecutionEntry]:
        """Latest stored entry for one identity, or None."""
        return self.read_document(doc_path).executions.get(identity)

    def read_all_latest(self, doc_path: str) -> Dict[str, ExecutionEntry]:
        """Latest stored entry for every identity."""
        return dict(self.read_document(doc_path).executions)

    def read_artifact(self, path: str) -> bytes:
        """Read an artifact file's full content.

        Raises:
            ArtifactReadError: The file is missing or unreadable.
        """
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise ArtifactReadError(path, "file not found") from None
        except OSError as e:
            raise ArtifactReadError(path, str(e)) from e

    def resolve_stream(self, stream: StreamRecord) -> str:
        """Text of a stored stream: inline lines joined, or the artifact read back."""
        if isinstance(stream, InlineStream):
            return "\n".join(stream.lines)
        try:
            return self.read_artifact(stream.path).decode("utf-8", errors="replace")
        except ArtifactReadError as e:
            logger.warning("%s", e)
            return ""

    # =========================================================================
    # Writing
    # =========================================================================

    def append(
        self,
        doc_path: str,
        identity: Optional[str],
        result: ExecutionResult,
        block: Optional[Block] = None,
    ) -> bool:
        """Store result as the latest entry for identity.

        Args:
            doc_path: Source document path.
            identity: Block identity; None keys the entry by the command hash.
            result: The execution outcome.
            block: Optional block, to record its position and language.

        Returns:
            True when the sidecar was written; False (with a warning) otherwise.
        """
        if not doc_path:
            logger.warning("append called without a document path")
            return False

        paths = self.paths(doc_path)
        key = identity or command_identity(result.command)
        timestamp = _datetime_to_iso(result.started_at) or _datetime_to_iso(self._clock())

        try:
            entry = self._build_entry(paths, key, timestamp, result, block)
        except (ResultsWriteError, OSError) as e:
            logger.warning("Failed to write artifacts for %s: %s", doc_path, e)
            return False

        try:
            with storage.file_lock(
                paths.lock_path,
                timeout_ms=self.config.lock_timeout_ms,
                stale_seconds=self.config.stale_lock_seconds,
            ):
                doc = self.read_document(doc_path)
                replaced = doc.executions.get(key)
                doc.executions[key] = entry
                if replaced is not None:
                    self._delete_artifacts(replaced, keep=entry.artifact_paths())
                for dropped in self._apply_retention(doc):
                    self._delete_artifacts(dropped)
                self._write(paths, doc)
        except LockContentionError as e:
            logger.warning("Could not acquire results lock, result not persisted: %s", e)
            self._delete_artifacts(entry)
            return False
        except (MdrunError, OSError, ValueError) as e:
            logger.warning("Failed to persist results for %s: %s", doc_path, e)
            self._delete_artifacts(entry)
            return False

        logger.debug("Persisted result for %s in %s", key[:12], paths.results_path)
        return True

    def prune(self, doc_path: str, keep_identities: Iterable[str]) -> int:
        """Remove every stored entry whose identity is not in keep_identities.

        Artifacts of removed entries are deleted.

        Returns:
            Number of removed entries (0 on failure, with a warning).
        """
        keep = set(keep_identities)
        paths = self.paths(doc_path)
        if not paths.results_path.exists():
            return 0

        removed = 0
        try:
            with storage.file_lock(
                paths.lock_path,
                timeout_ms=self.config.lock_timeout_ms,
                stale_seconds=self.config.stale_lock_seconds,
            ):
                doc = self.read_document(doc_path)
                for key in [k for k in doc.executions if k not in keep]:
                    self._delete_artifacts(doc.executions.pop(key))
                    removed += 1
                if removed:
                    self._write(paths, doc)
        except LockContentionError as e:
            logger.warning("Could not acquire results lock for prune: %s", e)
            return 0
        except (MdrunError, OSError, ValueError) as e:
            logger.warning("Failed to prune results for %s: %s", doc_path, e)
            return 0

        if removed:
            logger.info("Pruned %d stale result(s) from %s", removed, paths.results_path)
        return removed

    # =========================================================================
    # Internals
    # =========================================================================

    def _build_entry(
        self,
        paths: SidecarPaths,
        key: str,
        timestamp: str,
        result: ExecutionResult,
        block: Optional[Block],
    ) -> ExecutionEntry:
        artifacts = ArtifactRefs()
        stdout = self._stream_record(paths, timestamp, key, "stdout", result.stdout, artifacts)
        stderr = self._stream_record(paths, timestamp, key, "stderr", result.stderr, artifacts)
        return ExecutionEntry(
            id=generate_entry_id(timestamp),
            timestamp=timestamp,
            block_id=key,
            start_line=block.start_line if block else None,
            end_line=block.end_line if block else None,
            lang=block.lang if block else None,
            content_hash=block.content_hash if block else None,
            command=result.command,
            exit_code=result.exit_code,
            signal=result.signal,
            timed_out=result.timed_out,
            cancelled=result.cancelled,
            duration_ms=result.duration_ms,
            cwd=result.cwd,
            reconciled_cwd=result.reconciled_cwd,
            env_delta=dict(result.env_delta),
            shell=result.shell,
            stdout=stdout,
            stderr=stderr,
            artifacts=artifacts,
        )

    def _stream_record(
        self,
        paths: SidecarPaths,
        timestamp: str,
        key: str,
        kind: str,
        data: bytes,
        artifacts: ArtifactRefs,
    ) -> StreamRecord:
        """Inline the stream, or write it to an artifact file and reference it."""
        binary = is_binary(data)
        if not binary:
            lines = split_stream_lines(data.decode("utf-8", errors="replace"))
            if len(lines) <= self.config.inline_limit_lines:
                return InlineStream(lines=lines)

        ensure_artifacts_dir(paths.artifacts_dir)
        target = artifact_path(paths.artifacts_dir, timestamp, key, "binary" if binary else kind)
        try:
            storage._atomic_write_bytes(target, data)
        except OSError as e:
            raise ResultsWriteError(f"Failed to write artifact {target}: {e}") from e
        path = str(target)
        if kind == "stdout":
            artifacts.stdout_file = path
        else:
            artifacts.stderr_file = path
        if binary:
            artifacts.binary_files.append(path)
        return FileStream(path=path)

    def _apply_retention(self, doc: ResultsDocument) -> List[ExecutionEntry]:
        """Drop entries beyond the age and count limits. Returns dropped entries."""
        retention = self.config.retention
        dropped: List[ExecutionEntry] = []

        if retention.max_days:
            cutoff = self._clock() - timedelta(days=retention.max_days)
            for key in list(doc.executions):
                started = doc.executions[key].started_at
                if started is not None and started < cutoff:
                    dropped.append(doc.executions.pop(key))

        if retention.max_entries and len(doc.executions) > retention.max_entries:
            ordered: List[Tuple[str, str]] = sorted(
                ((entry.timestamp, key) for key, entry in doc.executions.items())
            )
            excess = len(ordered) - retention.max_entries
            for _, key in ordered[:excess]:
                dropped.append(doc.executions.pop(key))

        if dropped:
            logger.debug("Retention dropped %d entr(ies)", len(dropped))
        return dropped

    def _delete_artifacts(self, entry: ExecutionEntry, keep: Iterable[str] = ()) -> None:
        protected = set(keep)
        for path in entry.artifact_paths():
            if path not in protected:
                storage.remove_file(path)

    def _write(self, paths: SidecarPaths, doc: ResultsDocument) -> None:
        """Replace the sidecar atomically.

        Raises:
            ResultsWriteError: The document could not be written.
        """
        try:
            storage._atomic_write_json(
                paths.results_path, results_document_to_dict(doc), pretty=self.config.pretty
            )
        except OSError as e:
            raise ResultsWriteError(f"Failed to write {paths.results_path}: {e}") from e

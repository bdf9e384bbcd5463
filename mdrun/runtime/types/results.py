"""Results document types for the sidecar JSON file.

The sidecar layout is:

    {
      "version": 1,
      "file": "/abs/path/doc.md",
      "executions": {
        "<block_id>": { ...ExecutionEntry... }
      }
    }

Each stream of an entry is a tagged record:

    {"type": "inline", "value": ["line 1", "line 2"]}
    {"type": "file", "path": "/abs/path/doc.md.results/20261018093000250_ab12cd34.out"}

Legacy documents store ``executions`` as a list of entries. They are read
by keying each entry on its block_id; the next write stores the mapping shape.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ._ids import BlockId
from ._time import _iso_to_datetime

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

STREAM_INLINE = "inline"
STREAM_FILE = "file"


@dataclass(frozen=True)
class InlineStream:
    """Stream stored directly in the document as a list of lines."""

    lines: List[str]
    type: str = STREAM_INLINE


@dataclass(frozen=True)
class FileStream:
    """Stream offloaded to an artifact file; the document holds only the path."""

    path: str
    type: str = STREAM_FILE


StreamRecord = Union[InlineStream, FileStream]


def stream_to_dict(stream: StreamRecord) -> Dict[str, Any]:
    if isinstance(stream, FileStream):
        return {"type": STREAM_FILE, "path": stream.path}
    return {"type": STREAM_INLINE, "value": list(stream.lines)}


def stream_from_dict(data: Any) -> StreamRecord:
    """Parse a stream record; anything unrecognized becomes an empty inline stream."""
    if isinstance(data, dict):
        if data.get("type") == STREAM_FILE and data.get("path"):
            return FileStream(path=str(data["path"]))
        value = data.get("value")
        if isinstance(value, list):
            return InlineStream(lines=[str(v) for v in value])
    if isinstance(data, str):
        return InlineStream(lines=data.split("\n"))
    return InlineStream(lines=[])


@dataclass
class ArtifactRefs:
    """Artifact files referenced by an entry."""

    stdout_file: Optional[str] = None
    stderr_file: Optional[str] = None
    binary_files: List[str] = field(default_factory=list)

    def paths(self) -> List[str]:
        """All distinct artifact paths, in a stable order."""
        seen: List[str] = []
        for p in [self.stdout_file, self.stderr_file, *self.binary_files]:
            if p and p not in seen:
                seen.append(p)
        return seen


@dataclass
class ExecutionEntry:
    """Stored form of the latest execution for one block identity."""

    id: str
    timestamp: str
    block_id: Optional[BlockId]
    command: str
    exit_code: int
    stdout: StreamRecord
    stderr: StreamRecord
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    lang: Optional[str] = None
    content_hash: Optional[str] = None
    signal: int = 0
    timed_out: bool = False
    cancelled: bool = False
    duration_ms: Optional[int] = None
    cwd: Optional[str] = None
    reconciled_cwd: Optional[str] = None
    env_delta: Dict[str, Optional[str]] = field(default_factory=dict)
    shell: Optional[str] = None
    artifacts: ArtifactRefs = field(default_factory=ArtifactRefs)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    @property
    def started_at(self) -> Optional[datetime]:
        return _iso_to_datetime(self.timestamp)

    def artifact_paths(self) -> List[str]:
        """Every artifact file this entry references, including stream files."""
        paths = self.artifacts.paths()
        for stream in (self.stdout, self.stderr):
            if isinstance(stream, FileStream) and stream.path not in paths:
                paths.append(stream.path)
        return paths


def execution_entry_to_dict(entry: ExecutionEntry) -> Dict[str, Any]:
    """Convert ExecutionEntry to a dictionary for serialization."""
    return {
        "id": entry.id,
        "timestamp": entry.timestamp,
        "block_id": entry.block_id,
        "start_line": entry.start_line,
        "end_line": entry.end_line,
        "lang": entry.lang,
        "content_hash": entry.content_hash,
        "command": entry.command,
        "exit_code": entry.exit_code,
        "signal": entry.signal,
        "timed_out": entry.timed_out,
        "cancelled": entry.cancelled,
        "duration_ms": entry.duration_ms,
        "cwd": entry.cwd,
        "reconciled_cwd": entry.reconciled_cwd,
        "env_delta": dict(entry.env_delta),
        "shell": entry.shell,
        "stdout": stream_to_dict(entry.stdout),
        "stderr": stream_to_dict(entry.stderr),
        "artifacts": {
            "stdout_file": entry.artifacts.stdout_file,
            "stderr_file": entry.artifacts.stderr_file,
            "binary_files": list(entry.artifacts.binary_files),
        },
    }


def execution_entry_from_dict(data: Dict[str, Any]) -> ExecutionEntry:
    """Parse ExecutionEntry from a dictionary.

    Missing fields take neutral defaults so older documents stay readable.
    """
    artifacts_data = data.get("artifacts") or {}
    binary_files = artifacts_data.get("binary_files") or []
    exit_code = data.get("exit_code")
    return ExecutionEntry(
        id=str(data.get("id", "")),
        timestamp=str(data.get("timestamp", "")),
        block_id=data.get("block_id"),
        start_line=data.get("start_line"),
        end_line=data.get("end_line"),
        lang=data.get("lang"),
        content_hash=data.get("content_hash"),
        command=str(data.get("command") or ""),
        exit_code=int(exit_code) if isinstance(exit_code, (int, float)) else -1,
        signal=int(data.get("signal") or 0),
        timed_out=bool(data.get("timed_out", False)),
        cancelled=bool(data.get("cancelled", False)),
        duration_ms=data.get("duration_ms"),
        cwd=data.get("cwd"),
        reconciled_cwd=data.get("reconciled_cwd"),
        env_delta=dict(data.get("env_delta") or {}),
        shell=data.get("shell"),
        stdout=stream_from_dict(data.get("stdout")),
        stderr=stream_from_dict(data.get("stderr")),
        artifacts=ArtifactRefs(
            stdout_file=artifacts_data.get("stdout_file"),
            stderr_file=artifacts_data.get("stderr_file"),
            binary_files=[str(p) for p in binary_files if p],
        ),
    )


@dataclass
class ResultsDocument:
    """Per-document sidecar content: latest entry per block identity."""

    source_path: str
    executions: Dict[BlockId, ExecutionEntry] = field(default_factory=dict)
    schema_version: int = SCHEMA_VERSION


def entry_key(entry_data: Dict[str, Any]) -> str:
    """Key for a legacy list entry: its block_id, else the hash of its command."""
    block_id = entry_data.get("block_id")
    if block_id:
        return str(block_id)
    command = str(entry_data.get("command") or "")
    return hashlib.sha256(command.encode("utf-8")).hexdigest()


def results_document_to_dict(doc: ResultsDocument) -> Dict[str, Any]:
    """Convert ResultsDocument to a dictionary for serialization."""
    return {
        "version": doc.schema_version,
        "file": doc.source_path,
        "executions": {
            key: execution_entry_to_dict(entry) for key, entry in doc.executions.items()
        },
    }


def results_document_from_dict(data: Any, source_path: str) -> ResultsDocument:
    """Parse ResultsDocument, accepting both the mapping and the legacy list shape.

    Args:
        data: Decoded JSON root.
        source_path: Source document path used when the root lacks ``file``.

    Returns:
        Parsed ResultsDocument (empty when data is not an object).
    """
    if not isinstance(data, dict):
        return ResultsDocument(source_path=source_path)

    raw_executions = data.get("executions") or {}
    executions: Dict[BlockId, ExecutionEntry] = {}

    if isinstance(raw_executions, list):
        # Legacy array-of-executions shape; later entries win.
        for item in raw_executions:
            if isinstance(item, dict):
                executions[entry_key(item)] = execution_entry_from_dict(item)
    elif isinstance(raw_executions, dict):
        for key, item in raw_executions.items():
            if isinstance(item, dict):
                executions[str(key)] = execution_entry_from_dict(item)
    else:
        logger.warning("Ignoring malformed executions field in results for %s", source_path)

    version = data.get("version")
    return ResultsDocument(
        source_path=str(data.get("file") or source_path),
        executions=executions,
        schema_version=int(version) if isinstance(version, int) else SCHEMA_VERSION,
    )

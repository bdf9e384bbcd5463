"""Path helpers for sidecar, lock and artifact file naming.

Standard conventions, for a source document ``notes.md``:
- Results:   <dir>/notes.md.result.json
- Lock:      <dir>/notes.md.result.json.lock
- Artifacts: <dir>/notes.md.results/<sanitized-timestamp>_<short-identity>.<out|err|bin>

where <dir> is the document's directory, or the configured base directory
(sidecars are then mirrored flat by basename).

Usage:
    from mdrun.runtime.path_helpers import sidecar_paths, artifact_path

    paths = sidecar_paths("/notes/notes.md")
    out = artifact_path(paths.artifacts_dir, "2026-10-18T09:30:00.250Z", block_id, "stdout")
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .types import sanitize_timestamp, short_identity

# File suffixes
RESULTS_SUFFIX = ".result.json"
LOCK_SUFFIX = ".lock"
ARTIFACTS_SUFFIX = ".results"

# Stream kind -> artifact extension
ARTIFACT_EXTENSIONS = {
    "stdout": "out",
    "stderr": "err",
    "binary": "bin",
}


@dataclass(frozen=True)
class SidecarPaths:
    """The three on-disk locations belonging to one source document."""

    results_path: Path
    lock_path: Path
    artifacts_dir: Path


def sidecar_paths(doc_path: str, base_dir: Optional[str] = None) -> SidecarPaths:
    """Compute sidecar locations for a source document.

    Args:
        doc_path: Source document path (made absolute).
        base_dir: Optional directory to mirror sidecars into by basename.

    Example:
        >>> sidecar_paths("/notes/a.md").results_path
        PosixPath('/notes/a.md.result.json')
    """
    source = Path(os.path.abspath(os.path.expanduser(doc_path)))
    base = source
    if base_dir:
        base = Path(os.path.expanduser(base_dir)) / source.name
    results_path = base.with_name(base.name + RESULTS_SUFFIX)
    return SidecarPaths(
        results_path=results_path,
        lock_path=results_path.with_name(results_path.name + LOCK_SUFFIX),
        artifacts_dir=base.with_name(base.name + ARTIFACTS_SUFFIX),
    )


def artifact_filename(timestamp: str, identity: Optional[str], kind: str) -> str:
    """Build ``<sanitized-timestamp>_<short-identity>.<ext>``.

    Args:
        timestamp: ISO timestamp of the execution.
        identity: Block identity (random hex is used when absent).
        kind: "stdout", "stderr" or "binary".
    """
    ext = ARTIFACT_EXTENSIONS.get(kind, "bin")
    return f"{sanitize_timestamp(timestamp)}_{short_identity(identity)}.{ext}"


def artifact_path(artifacts_dir: Path, timestamp: str, identity: Optional[str], kind: str) -> Path:
    """Return a not-yet-existing artifact path, adding ``-n`` on a name clash."""
    candidate = artifacts_dir / artifact_filename(timestamp, identity, kind)
    n = 1
    while candidate.exists():
        candidate = artifacts_dir / f"{artifact_filename(timestamp, identity, kind)}-{n}"
        n += 1
    return candidate


def ensure_artifacts_dir(artifacts_dir: Path) -> Path:
    """Ensure the artifacts directory exists and return its path."""
    artifacts_dir.mkdir(parents=True, exist_ok=True)
    return artifacts_dir

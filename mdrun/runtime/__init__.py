# mdrun/runtime package
# Runs shell blocks embedded in Markdown documents and records their outcomes.
#
# Core components:
#   - types: Core dataclasses (Block, Session, ExecutionResult, ExecutionEntry)
#   - blocks: Fenced block discovery
#   - session: Per-document cwd/environment store
#   - execution: Async shell executor with state-file reconciliation
#   - results: Sidecar results store (locking, atomic writes, artifacts)
#   - service: RunService wiring the pieces together
#
# Usage:
#     from mdrun.runtime.service import RunService
#     service = RunService.from_config()
#     result = await service.run_at(doc_path, text, line)

from typing import TYPE_CHECKING

from .errors import (
    ArtifactReadError,
    BlockNotFoundError,
    LockContentionError,
    MdrunError,
    ResultsWriteError,
)
from .types import (
    Block,
    CaptureStrategy,
    ExecutionEntry,
    ExecutionOptions,
    ExecutionResult,
    ResultsDocument,
    Session,
)

# The service pulls in configuration, which itself imports .types; keep it
# out of the eager imports to avoid a cycle.
if TYPE_CHECKING:
    from .service import RunService as RunService

__all__ = [
    # Types
    "Block",
    "Session",
    "CaptureStrategy",
    "ExecutionOptions",
    "ExecutionResult",
    "ExecutionEntry",
    "ResultsDocument",
    # Errors
    "MdrunError",
    "LockContentionError",
    "ResultsWriteError",
    "ArtifactReadError",
    "BlockNotFoundError",
    # Service (import from mdrun.runtime.service)
    "RunService",
]


def __getattr__(name: str):
    if name == "RunService":
        from .service import RunService

        return RunService
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

"""Exception taxonomy for mdrun.

Execution-path failures (spawn failure, timeout, cancellation) are never
raised; they are fields on ExecutionResult. The exceptions below cover the
durability path, which ResultsStore recovers from locally, and caller errors.
"""

from __future__ import annotations


class MdrunError(Exception):
    """Base class for mdrun errors."""


class LockContentionError(MdrunError):
    """The sidecar lock could not be acquired within the configured timeout."""

    def __init__(self, lock_path: str, timeout_ms: int):
        self.lock_path = lock_path
        self.timeout_ms = timeout_ms
        super().__init__(f"Could not acquire lock {lock_path} within {timeout_ms}ms")


class ResultsWriteError(MdrunError):
    """Writing the sidecar document or an artifact failed."""


class ArtifactReadError(MdrunError):
    """An artifact file is missing or unreadable."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot read artifact {path}: {reason}")


class BlockNotFoundError(MdrunError):
    """No runnable shell block exists at the requested position."""

    def __init__(self, line: int):
        self.line = line
        super().__init__(f"Line {line} is not within a runnable shell code block")

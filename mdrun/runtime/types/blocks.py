"""Block and session types.

A Block is a runnable shell region discovered in a Markdown document. Blocks
are recomputed on every parse and never persisted on their own; their
identity is content-addressed (the sha256 of the normalized content).

A Session is the in-memory shell state (working directory and environment)
tracked per document.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ._ids import BlockId


@dataclass(frozen=True)
class Block:
    """A runnable fenced code block.

    Attributes:
        start_line: 0-based line of the first content line.
        end_line: 0-based line of the last content line (start_line - 1 when empty).
        fence_start_line: 0-based line of the opening fence.
        fence_end_line: 0-based line of the closing fence.
        lang: Language tag, or None for an untagged fence.
        content: Normalized content (prefix-stripped, right-trimmed, trailing newline).
        content_hash: sha256 hex digest of content.
        block_id: Identity of the block (currently equal to content_hash).
    """

    start_line: int
    end_line: int
    fence_start_line: int
    fence_end_line: int
    lang: Optional[str]
    content: str
    content_hash: str
    block_id: BlockId

    def contains(self, line: int) -> bool:
        """True when ``line`` falls inside the inclusive content range."""
        return self.start_line <= line <= self.end_line


def block_to_dict(block: Block) -> Dict[str, Any]:
    """Convert Block to a dictionary for serialization."""
    return {
        "block_id": block.block_id,
        "start_line": block.start_line,
        "end_line": block.end_line,
        "fence_start_line": block.fence_start_line,
        "fence_end_line": block.fence_end_line,
        "lang": block.lang,
        "content": block.content,
        "content_hash": block.content_hash,
    }


@dataclass
class Session:
    """Mutable shell state for one document.

    Attributes:
        key: Absolute document path, or a synthetic ``<cwd>::nofile`` key.
        cwd: Current working directory used for the next spawn.
        environment: Environment mapping used for the next spawn.
    """

    key: str
    cwd: str
    environment: Dict[str, str] = field(default_factory=dict)


def session_to_dict(session: Session, include_env: bool = True) -> Dict[str, Any]:
    """Convert Session to a dictionary for serialization."""
    data: Dict[str, Any] = {
        "key": session.key,
        "cwd": session.cwd,
        "env_count": len(session.environment),
    }
    if include_env:
        data["environment"] = dict(session.environment)
    return data

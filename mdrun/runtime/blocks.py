"""
blocks.py - Fenced shell block discovery in Markdown text.

Scans a document top to bottom with a single open/closed fence state
machine. Structural prefixes (indentation, block quotes, list markers) are
stripped from every line before it is tested against the fence grammar, so
blocks nested in quotes or lists are found like top-level ones.

Only untagged, ``sh`` and ``bash`` fences are runnable. Fences with any other
tag are still tracked so their content never opens or closes a block.

Usage:
    from mdrun.runtime.blocks import discover_blocks, block_at

    blocks = discover_blocks(text)
    block = block_at(text, line=12)   # 0-based line, or None
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Set, Tuple

from .types import Block, content_hash

RUNNABLE_LANGUAGES = frozenset({"sh", "bash"})

# Structural prefixes, each removed repeatedly until none applies.
_LEADING_WHITESPACE = re.compile(r"^\s+")
_QUOTE_MARKER = re.compile(r"^>+\s*")
_UNORDERED_MARKER = re.compile(r"^[-*+]\s+")
_ORDERED_MARKER = re.compile(r"^\d+[.)]\s+")
_PREFIX_PATTERNS = (_LEADING_WHITESPACE, _QUOTE_MARKER, _UNORDERED_MARKER, _ORDERED_MARKER)

# ``` or ```lang, optionally followed by an info string
_FENCE_OPEN = re.compile(r"^(`{3,})\s*([\w-]*)")
# A run of backticks alone on its line
_FENCE_CLOSE = re.compile(r"^(`{3,})\s*$")


def strip_structural_prefixes(line: str) -> str:
    """Remove indentation, quote markers and list markers from the start of a line.

    Example:
        >>> strip_structural_prefixes("> - 1. ```sh")
        '```sh'
    """
    text = line
    changed = True
    while changed:
        changed = False
        for pattern in _PREFIX_PATTERNS:
            match = pattern.match(text)
            if match and match.end() > 0:
                text = text[match.end():]
                changed = True
    return text


def parse_fence_open(text: str) -> Optional[Tuple[str, str]]:
    """Return (fence, lang) when a prefix-stripped line opens a fence."""
    match = _FENCE_OPEN.match(text)
    if not match:
        return None
    return match.group(1), match.group(2) or ""


def is_fence_close(text: str, open_fence: str) -> bool:
    """True when text is a backtick run at least as long as the opening one."""
    match = _FENCE_CLOSE.match(text)
    return bool(match) and len(match.group(1)) >= len(open_fence)


def is_runnable_language(lang: Optional[str]) -> bool:
    """Untagged, sh and bash fences are runnable (case-insensitive)."""
    if not lang:
        return True
    return lang.lower() in RUNNABLE_LANGUAGES


def normalize_content(lines: Iterable[str]) -> str:
    """Right-trim each line, join with newlines and add one trailing newline."""
    return "\n".join(line.rstrip() for line in lines) + "\n"


def discover_blocks(text: str) -> List[Block]:
    """Return every runnable block in document order.

    Unterminated fences yield nothing; their content is never surfaced.

    Args:
        text: Full document text.

    Returns:
        Blocks ordered by position, never overlapping.
    """
    # Only \n ends a line, as in an editor; \r of a CRLF pair is dropped.
    lines = [line[:-1] if line.endswith("\r") else line for line in text.split("\n")]
    blocks: List[Block] = []

    open_fence: Optional[str] = None
    open_lang = ""
    fence_start = -1

    for index, raw in enumerate(lines):
        stripped = strip_structural_prefixes(raw)

        if open_fence is None:
            opened = parse_fence_open(stripped)
            if opened:
                open_fence, open_lang = opened
                fence_start = index
            continue

        if not is_fence_close(stripped, open_fence):
            continue

        if is_runnable_language(open_lang):
            body = [strip_structural_prefixes(line) for line in lines[fence_start + 1:index]]
            content = normalize_content(body)
            digest = content_hash(content)
            blocks.append(
                Block(
                    start_line=fence_start + 1,
                    end_line=index - 1,
                    fence_start_line=fence_start,
                    fence_end_line=index,
                    lang=open_lang or None,
                    content=content,
                    content_hash=digest,
                    block_id=digest,
                )
            )

        open_fence = None
        open_lang = ""
        fence_start = -1

    return blocks


def block_at(text: str, line: int) -> Optional[Block]:
    """Return the block whose inclusive content range contains ``line`` (0-based)."""
    for block in discover_blocks(text):
        if block.contains(line):
            return block
    return None


def block_near(text: str, line: int) -> Optional[Block]:
    """Like block_at, but also accepts a position on either fence line."""
    for block in discover_blocks(text):
        if block.contains(line) or line in (block.fence_start_line, block.fence_end_line):
            return block
    return None


def identities(blocks: Iterable[Block]) -> Set[str]:
    """The live identity set used to prune stored results."""
    return {block.block_id for block in blocks}

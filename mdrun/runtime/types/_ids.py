"""ID helpers for the types package.

Provides block identity hashing, stored-entry IDs and short identity prefixes.
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Optional

from ._time import sanitize_timestamp

# Type aliases
BlockId = str

SHORT_ID_LENGTH = 8


def content_hash(text: str) -> str:
    """Return the sha256 hex digest of normalized block content."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def generate_entry_id(timestamp: str) -> str:
    """Generate a stored-entry ID.

    Creates IDs in the format: <sanitized timestamp>-xxxxxx
    where xxxxxx is a random 6-character hex suffix.

    Example:
        >>> generate_entry_id("2026-10-18T09:30:00.250Z")  # e.g. "20261018093000250-3fa9c1"
    """
    return f"{sanitize_timestamp(timestamp)}-{secrets.token_hex(3)}"


def short_identity(identity: Optional[str]) -> str:
    """Return the identity prefix used in artifact filenames.

    Falls back to random hex when the identity is missing or too short.
    """
    if identity and len(identity) >= SHORT_ID_LENGTH:
        return identity[:SHORT_ID_LENGTH]
    return secrets.token_hex(SHORT_ID_LENGTH // 2)

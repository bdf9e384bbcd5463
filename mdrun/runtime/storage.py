"""
storage.py - Disk I/O helpers for sidecar documents and artifacts.

Provides the primitives the ResultsStore is built on:

    _atomic_write_json / _atomic_write_bytes
        temp file in the target directory + fsync + os.replace, so readers
        never observe a partially written file and a crash leaves the prior
        file intact.
    _load_json_safe
        tolerant JSON read; absent or corrupt files yield None.
    file_lock
        cross-process mutual exclusion by exclusive creation of a lock file,
        retried with capped exponential backoff within an overall timeout.

Usage:
    from mdrun.runtime.storage import file_lock, _atomic_write_json, _load_json_safe

    with file_lock(lock_path, timeout_ms=2000):
        data = _load_json_safe(path) or {}
        data["k"] = "v"
        _atomic_write_json(path, data)
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Tuple, Union

from .errors import LockContentionError

# Module logger
logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Lock backoff: start small, grow by 1.5x, never sleep longer than the cap.
LOCK_BACKOFF_START_S = 0.02
LOCK_BACKOFF_MAX_S = 0.2
LOCK_BACKOFF_FACTOR = 1.5


# -----------------------------------------------------------------------------
# Atomic File I/O Helpers
# -----------------------------------------------------------------------------


def _atomic_write_bytes(path: PathLike, data: bytes) -> None:
    """Write bytes to a file atomically.

    Uses a temporary file + os.replace pattern to ensure atomicity.
    This prevents partial writes if the process is killed mid-write.

    Args:
        path: Destination file path.
        data: Raw content.
    """
    path = Path(path)
    parent = path.parent
    parent.mkdir(parents=True, exist_ok=True)

    # Write to temp file in same directory (ensures same filesystem for rename)
    fd, tmp_path = tempfile.mkstemp(
        suffix=".tmp",
        prefix=path.name + ".",
        dir=parent,
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())  # Ensure data is on disk

        # Atomic rename (POSIX guarantees)
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up temp file on failure
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _atomic_write_json(path: PathLike, data: Any, pretty: bool = True) -> None:
    """Write JSON data to a file atomically.

    Args:
        path: Destination file path.
        data: JSON-serializable data.
        pretty: Indent with two spaces; compact separators otherwise.
    """
    if pretty:
        text = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    else:
        text = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    _atomic_write_bytes(path, text.encode("utf-8"))


def _load_json_safe(path: PathLike, file_type: str = "file") -> Optional[Any]:
    """Load JSON file with graceful error handling.

    Returns None on parse errors instead of raising, to allow callers
    to start over from an empty document.

    Args:
        path: Path to JSON file.
        file_type: Description of file type for logging (e.g., "results").

    Returns:
        Parsed JSON value, or None if file doesn't exist, is empty or is corrupt.
    """
    path = Path(path)
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read %s at %s: %s", file_type, path, e)
        return None

    if not content.strip():
        return None

    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning("Corrupt %s at %s: %s (starting fresh)", file_type, path, e)
        return None


# -----------------------------------------------------------------------------
# Cross-process lock
# -----------------------------------------------------------------------------

# (st_dev, st_ino) of a lock file; a recreated lock has a different identity.
LockIdentity = Tuple[int, int]


def _lock_identity(lock_path: Path) -> LockIdentity:
    stat = lock_path.stat()
    return (stat.st_dev, stat.st_ino)


def _try_create_lock(lock_path: Path) -> Optional[LockIdentity]:
    """Create the lock file exclusively. Returns its identity, or None if held."""
    try:
        fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return None
    try:
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        stat = os.fstat(fd)
    finally:
        os.close(fd)
    return (stat.st_dev, stat.st_ino)


def _break_if_stale(lock_path: Path, stale_seconds: Optional[float]) -> bool:
    """Remove a lock file older than stale_seconds. Returns True if removed.

    The stale file is renamed aside before it is deleted, and only when it is
    still the file that was judged stale. A lock another contender created in
    the meantime is put back untouched.
    """
    if not stale_seconds:
        return False
    try:
        stat = lock_path.stat()
    except FileNotFoundError:
        return False
    age = time.time() - stat.st_mtime
    if age < stale_seconds:
        return False
    expected = (stat.st_dev, stat.st_ino)

    aside = lock_path.with_name(f"{lock_path.name}.stale.{os.getpid()}.{secrets.token_hex(4)}")
    try:
        if _lock_identity(lock_path) != expected:
            return False
        os.rename(str(lock_path), str(aside))
    except FileNotFoundError:
        return False

    try:
        if _lock_identity(aside) != expected:
            # Lost a race: that was a fresh lock. Restore it unless the path is taken again.
            try:
                os.link(str(aside), str(lock_path))
            except FileExistsError:
                logger.warning("Fresh lock %s was displaced by a stale-lock break", lock_path)
            return False
        logger.warning("Breaking stale lock %s (age %.1fs)", lock_path, age)
        return True
    finally:
        remove_file(aside)


def acquire_lock(
    lock_path: PathLike,
    timeout_ms: int = 2000,
    stale_seconds: Optional[float] = None,
) -> LockIdentity:
    """Acquire the lock by exclusive file creation, retrying with backoff.

    Returns:
        Identity of the created lock file; pass it to release_lock.

    Raises:
        LockContentionError: The lock was not obtained within timeout_ms.
    """
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout_ms / 1000.0
    backoff = LOCK_BACKOFF_START_S

    while True:
        identity = _try_create_lock(lock_path)
        if identity is not None:
            logger.debug("Acquired lock %s", lock_path)
            return identity
        if _break_if_stale(lock_path, stale_seconds):
            continue
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise LockContentionError(str(lock_path), timeout_ms)
        time.sleep(min(backoff, remaining))
        backoff = min(LOCK_BACKOFF_MAX_S, backoff * LOCK_BACKOFF_FACTOR)


def release_lock(lock_path: PathLike, identity: Optional[LockIdentity] = None) -> bool:
    """Remove the lock file if it is still the one identified by identity.

    Without an identity the file at lock_path is removed unconditionally.

    Returns:
        True when a lock file was removed.
    """
    lock_path = Path(lock_path)
    try:
        if identity is not None and _lock_identity(lock_path) != identity:
            logger.warning("Lock %s is no longer ours; leaving it in place", lock_path)
            return False
        os.unlink(str(lock_path))
    except FileNotFoundError:
        logger.warning("Lock %s vanished before release", lock_path)
        return False
    except OSError as e:
        logger.warning("Failed to release lock %s: %s", lock_path, e)
        return False
    logger.debug("Released lock %s", lock_path)
    return True


@contextmanager
def file_lock(
    lock_path: PathLike,
    timeout_ms: int = 2000,
    stale_seconds: Optional[float] = None,
) -> Iterator[None]:
    """Hold the lock for the duration of the block; always released on exit."""
    identity = acquire_lock(lock_path, timeout_ms=timeout_ms, stale_seconds=stale_seconds)
    try:
        yield
    finally:
        release_lock(lock_path, identity)


def remove_file(path: PathLike) -> bool:
    """Delete a file, logging (not raising) on failure. True if it was removed."""
    try:
        os.unlink(str(path))
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("Failed to delete %s: %s", path, e)
        return False

"""
types - Core type definitions for the mdrun runtime

This package defines the contracts shared by the block parser, the session
store, the execution orchestrator and the results store.

Usage:
    from mdrun.runtime.types import (
        Block, Session, BlockId,
        CaptureStrategy, ExecutionOptions, ExecutionResult,
        InlineStream, FileStream, StreamRecord, ArtifactRefs,
        ExecutionEntry, ResultsDocument,
        block_to_dict, session_to_dict, execution_result_to_dict,
        execution_entry_to_dict, execution_entry_from_dict,
        results_document_to_dict, results_document_from_dict,
    )
"""

from __future__ import annotations

from ._ids import BlockId, content_hash, generate_entry_id, short_identity
from ._time import _datetime_to_iso, _iso_to_datetime, sanitize_timestamp, utc_now
from .blocks import Block, Session, block_to_dict, session_to_dict
from .execution import (
    SENTINEL_EXIT_CODE,
    CaptureStrategy,
    ExecutionOptions,
    ExecutionResult,
    execution_result_to_dict,
)
from .results import (
    SCHEMA_VERSION,
    STREAM_FILE,
    STREAM_INLINE,
    ArtifactRefs,
    ExecutionEntry,
    FileStream,
    InlineStream,
    ResultsDocument,
    StreamRecord,
    execution_entry_from_dict,
    execution_entry_to_dict,
    results_document_from_dict,
    results_document_to_dict,
    stream_from_dict,
    stream_to_dict,
)

__all__ = [
    # IDs and time
    "BlockId",
    "content_hash",
    "generate_entry_id",
    "short_identity",
    "sanitize_timestamp",
    "utc_now",
    "_datetime_to_iso",
    "_iso_to_datetime",
    # Blocks and sessions
    "Block",
    "Session",
    "block_to_dict",
    "session_to_dict",
    # Execution
    "SENTINEL_EXIT_CODE",
    "CaptureStrategy",
    "ExecutionOptions",
    "ExecutionResult",
    "execution_result_to_dict",
    # Results
    "SCHEMA_VERSION",
    "STREAM_FILE",
    "STREAM_INLINE",
    "ArtifactRefs",
    "ExecutionEntry",
    "FileStream",
    "InlineStream",
    "ResultsDocument",
    "StreamRecord",
    "execution_entry_from_dict",
    "execution_entry_to_dict",
    "results_document_from_dict",
    "results_document_to_dict",
    "stream_from_dict",
    "stream_to_dict",
]

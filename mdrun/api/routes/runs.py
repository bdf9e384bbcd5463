"""
Run endpoints for mdrun API.

Provides REST endpoints for:
- Running the block at a line (POST /api/runs)
- Running the next unexecuted block (POST /api/runs/next)
- Running every block in order (POST /api/runs/all)

All three read the document from disk and wait for the execution to
finish, including persistence of the result, before responding.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from mdrun.runtime.errors import BlockNotFoundError
from mdrun.runtime.service import run_all_summary_to_dict
from mdrun.runtime.types import CaptureStrategy, ExecutionOptions, execution_result_to_dict

from ._common import get_service, load_text, raise_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


# =============================================================================
# Pydantic Models
# =============================================================================


class RunRequest(BaseModel):
    """Run the block containing line."""

    doc_path: str
    line: int = Field(..., ge=0, description="0-based line number")
    timeout_ms: Optional[int] = Field(default=None, ge=100)
    capture_strategy: Optional[CaptureStrategy] = None
    shell_path: Optional[str] = None
    environment_overrides: Dict[str, str] = Field(default_factory=dict)


class RunNextRequest(BaseModel):
    doc_path: str
    line: int = Field(default=-1, description="Run the first qualifying block after this line")
    force: bool = False


class RunAllRequest(BaseModel):
    doc_path: str
    stop_on_error: bool = True


class RunResponse(BaseModel):
    """One execution outcome (streams decoded to text)."""

    identity: Optional[str] = None
    command: str
    ok: bool
    exit_code: int
    signal: int
    timed_out: bool
    cancelled: bool
    duration_ms: int
    cwd: str
    shell: str
    started_at: Optional[str] = None
    stdout: str
    stderr: str
    reconciled_cwd: Optional[str] = None
    env_delta: Dict[str, Optional[str]] = Field(default_factory=dict)
    error: Optional[str] = None


class RunNextResponse(BaseModel):
    ran: bool
    result: Optional[RunResponse] = None


class RunAllResponse(BaseModel):
    ok: int
    failed: int
    stopped_early: bool
    results: List[RunResponse]


def _options(body: RunRequest) -> ExecutionOptions:
    return ExecutionOptions(
        shell_path=body.shell_path,
        timeout_ms=body.timeout_ms,
        environment_overrides=dict(body.environment_overrides),
        capture_strategy=body.capture_strategy,
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", response_model=RunResponse)
async def run_block(body: RunRequest, request: Request):
    """Run the block at a line and return its result.

    Raises:
        404: Document missing, or no runnable block at that line.
    """
    service = get_service(request)
    text = load_text(service, body.doc_path)
    try:
        result = await service.run_at(body.doc_path, text, body.line, _options(body))
    except BlockNotFoundError as e:
        raise_error(404, "block_not_found", str(e), line=body.line)
    return RunResponse(**execution_result_to_dict(result))


@router.post("/next", response_model=RunNextResponse)
async def run_next(body: RunNextRequest, request: Request):
    """Run the first block after line without a stored result."""
    service = get_service(request)
    text = load_text(service, body.doc_path)
    result = await service.run_next(body.doc_path, text, body.line, force=body.force)
    if result is None:
        return RunNextResponse(ran=False)
    return RunNextResponse(ran=True, result=RunResponse(**execution_result_to_dict(result)))


@router.post("/all", response_model=RunAllResponse)
async def run_all(body: RunAllRequest, request: Request):
    """Run every block sequentially, stopping at the first failure by default."""
    service = get_service(request)
    text = load_text(service, body.doc_path)
    summary = await service.run_all(body.doc_path, text, stop_on_error=body.stop_on_error)
    data: Dict[str, Any] = run_all_summary_to_dict(summary)
    return RunAllResponse(
        ok=data["ok"],
        failed=data["failed"],
        stopped_early=data["stopped_early"],
        results=[RunResponse(**r) for r in data["results"]],
    )

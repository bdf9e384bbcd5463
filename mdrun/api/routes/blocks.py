"""
Block discovery endpoints for mdrun API.

Provides REST endpoints for:
- Listing runnable blocks of a document (POST /api/blocks)
- Finding the block at a line (POST /api/blocks/at)
"""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from mdrun.runtime.blocks import block_at
from mdrun.runtime.types import Block

from ._common import get_service, load_text, raise_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/blocks", tags=["blocks"])


# =============================================================================
# Pydantic Models
# =============================================================================


class BlocksRequest(BaseModel):
    """Document to scan; text overrides the on-disk content."""

    doc_path: str
    text: Optional[str] = None


class BlockAtRequest(BlocksRequest):
    line: int = Field(..., ge=0, description="0-based line number")


class BlockModel(BaseModel):
    block_id: str
    content_hash: str
    lang: Optional[str] = None
    start_line: int
    end_line: int
    fence_start_line: int
    fence_end_line: int
    content: str


class BlockListResponse(BaseModel):
    doc_path: str
    blocks: List[BlockModel]


def _block_model(block: Block) -> BlockModel:
    return BlockModel(
        block_id=block.block_id,
        content_hash=block.content_hash,
        lang=block.lang,
        start_line=block.start_line,
        end_line=block.end_line,
        fence_start_line=block.fence_start_line,
        fence_end_line=block.fence_end_line,
        content=block.content,
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", response_model=BlockListResponse)
async def list_blocks(body: BlocksRequest, request: Request):
    """List runnable blocks in document order."""
    service = get_service(request)
    text = load_text(service, body.doc_path, body.text)
    blocks = service.blocks(text)
    return BlockListResponse(doc_path=body.doc_path, blocks=[_block_model(b) for b in blocks])


@router.post("/at", response_model=BlockModel)
async def get_block_at(body: BlockAtRequest, request: Request):
    """Return the block whose content range contains line.

    Raises:
        404: No runnable block at that line.
    """
    service = get_service(request)
    text = load_text(service, body.doc_path, body.text)
    block = block_at(text, body.line)
    if block is None:
        raise_error(
            404,
            "block_not_found",
            f"Line {body.line} is not within a runnable shell code block",
            line=body.line,
        )
    return _block_model(block)

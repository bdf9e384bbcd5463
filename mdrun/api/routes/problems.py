"""
Problem list endpoints for mdrun API.

Provides REST endpoints for:
- Listing failed and timed-out blocks (GET /api/problems)
- Clearing the list (DELETE /api/problems)
"""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ._common import get_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/problems", tags=["problems"])


class ProblemModel(BaseModel):
    doc_path: str
    start_line: int
    end_line: int
    identity: str
    text: str


class ProblemListResponse(BaseModel):
    problems: List[ProblemModel]


class ClearProblemsResponse(BaseModel):
    removed: int


@router.get("", response_model=ProblemListResponse)
async def list_problems(request: Request, doc_path: Optional[str] = None):
    """Problems recorded since the service started (or was last cleared)."""
    service = get_service(request)
    return ProblemListResponse(
        problems=[
            ProblemModel(
                doc_path=p.doc_path,
                start_line=p.start_line,
                end_line=p.end_line,
                identity=p.identity,
                text=p.text,
            )
            for p in service.problems(doc_path)
        ]
    )


@router.delete("", response_model=ClearProblemsResponse)
async def clear_problems(request: Request, doc_path: Optional[str] = None):
    service = get_service(request)
    return ClearProblemsResponse(removed=service.clear_problems(doc_path))

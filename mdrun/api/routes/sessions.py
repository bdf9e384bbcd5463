"""
Session endpoints for mdrun API.

Provides REST endpoints for:
- Session summary and environment (GET /api/sessions)
- Session reset (POST /api/sessions/reset)
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ._common import get_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


class SessionResponse(BaseModel):
    """Current shell state of one document."""

    key: str
    cwd: str
    env_count: int
    summary: str
    environment: Optional[Dict[str, str]] = None


class SessionResetRequest(BaseModel):
    doc_path: Optional[str] = None


@router.get("", response_model=SessionResponse)
async def get_session(request: Request, doc_path: Optional[str] = None, include_env: bool = False):
    """Describe the session of a document (created on first access)."""
    service = get_service(request)
    session = service.sessions.get_or_create(doc_path)
    return SessionResponse(
        key=session.key,
        cwd=session.cwd,
        env_count=len(session.environment),
        summary=service.session_summary(doc_path),
        environment=dict(session.environment) if include_env else None,
    )


@router.post("/reset", response_model=SessionResponse)
async def reset_session(body: SessionResetRequest, request: Request):
    """Replace the document's session with a fresh one."""
    service = get_service(request)
    session = service.reset_session(body.doc_path)
    return SessionResponse(
        key=session.key,
        cwd=session.cwd,
        env_count=len(session.environment),
        summary=service.session_summary(body.doc_path),
    )

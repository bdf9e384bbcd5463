"""Shared helpers for mdrun API routes."""

from __future__ import annotations

from typing import Any, NoReturn, Optional

from fastapi import HTTPException, Request

from mdrun.runtime.service import RunService


def get_service(request: Request) -> RunService:
    """The RunService the application was created with."""
    return request.app.state.service


def raise_error(status_code: int, error: str, message: str, **details: Any) -> NoReturn:
    """Raise an HTTPException with the standard error body."""
    raise HTTPException(
        status_code=status_code,
        detail={
            "error": error,
            "message": message,
            "details": details,
        },
    )


def load_text(service: RunService, doc_path: str, text: Optional[str] = None) -> str:
    """Text supplied by the client, or the document read from disk."""
    if text is not None:
        return text
    try:
        return service.read_source(doc_path)
    except FileNotFoundError:
        raise_error(404, "document_not_found", f"Document '{doc_path}' not found", doc_path=doc_path)
    except (OSError, UnicodeDecodeError) as e:
        raise_error(400, "document_unreadable", str(e), doc_path=doc_path)

"""
Results endpoints for mdrun API.

Provides REST endpoints for:
- Reading a document's sidecar (GET /api/results)
- Reading the latest output of one block (GET /api/results/{identity})
- Pruning stale entries against the live document (POST /api/results/prune)
- Reading an artifact file (GET /api/artifacts)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from mdrun.runtime.errors import ArtifactReadError
from mdrun.runtime.service import latest_output_to_dict
from mdrun.runtime.types import results_document_to_dict

from ._common import get_service, load_text, raise_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/results", tags=["results"])
artifacts_router = APIRouter(prefix="/artifacts", tags=["results"])


class PruneRequest(BaseModel):
    """Prune the sidecar to the blocks currently present in the document."""

    doc_path: str
    text: Optional[str] = None


class PruneResponse(BaseModel):
    doc_path: str
    removed: int


@router.get("")
async def get_results(doc_path: str, request: Request):
    """Return the whole sidecar document (empty when none exists yet)."""
    service = get_service(request)
    doc = service.results.read_document(doc_path)
    data: Dict[str, Any] = results_document_to_dict(doc)
    return JSONResponse(content=data)


@router.get("/{identity}")
async def get_latest_result(identity: str, doc_path: str, request: Request):
    """Return the latest stored entry for a block with its streams as text.

    Raises:
        404: No stored result for that identity.
    """
    service = get_service(request)
    output = service.latest_output(doc_path, identity)
    if output is None:
        raise_error(
            404,
            "result_not_found",
            f"No results found for block '{identity}'",
            identity=identity,
            doc_path=doc_path,
        )
    return JSONResponse(content=latest_output_to_dict(output))


@router.post("/prune", response_model=PruneResponse)
async def prune_results(body: PruneRequest, request: Request):
    """Drop stored entries whose block no longer exists in the document."""
    service = get_service(request)
    text = load_text(service, body.doc_path, body.text)
    removed = service.resync(body.doc_path, text)
    return PruneResponse(doc_path=body.doc_path, removed=removed)


@artifacts_router.get("")
async def get_artifact(path: str, request: Request):
    """Return an artifact file's raw bytes.

    Raises:
        404: Artifact missing or unreadable.
    """
    service = get_service(request)
    try:
        data = service.results.read_artifact(path)
    except ArtifactReadError as e:
        raise_error(404, "artifact_not_found", str(e), path=path)
    return Response(content=data, media_type="application/octet-stream")

"""
Routes package for mdrun API.

This package contains the FastAPI routers for:
- blocks: Block discovery in a document
- sessions: Per-document shell state
- runs: Block execution (single, next, all)
- results: Sidecar results, pruning and artifacts
- problems: Failed and timed-out blocks
"""

from .blocks import router as blocks_router
from .problems import router as problems_router
from .results import artifacts_router
from .results import router as results_router
from .runs import router as runs_router
from .sessions import router as sessions_router

__all__ = [
    "blocks_router",
    "sessions_router",
    "runs_router",
    "results_router",
    "artifacts_router",
    "problems_router",
]

"""
FastAPI REST API server for mdrun.

Exposes block discovery, block execution, session state and the sidecar
results store over HTTP. Documents are addressed by path. Runs always
execute what is on disk; discovery and pruning may be given unsaved text.

Usage:
    # Run standalone
    python -m mdrun.api.server --port 5051

    # Or via factory
    from mdrun.api import create_app
    app = create_app()
    uvicorn.run(app, port=5051)

API Structure:
    /api/blocks      - Block discovery (from routes/blocks.py)
    /api/sessions    - Session summary and reset (from routes/sessions.py)
    /api/runs        - Execution: at line, next, all (from routes/runs.py)
    /api/results     - Sidecar results and pruning (from routes/results.py)
    /api/artifacts   - Artifact bytes (from routes/results.py)
    /api/problems    - Failed/timed-out blocks (from routes/problems.py)
    /api/health      - Health check
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from mdrun import __version__
from mdrun.runtime.service import RunService
from mdrun.runtime.types import _datetime_to_iso, utc_now

from .routes import (
    artifacts_router,
    blocks_router,
    problems_router,
    results_router,
    runs_router,
    sessions_router,
)

logger = logging.getLogger(__name__)

# Browser origins allowed to call the API: pages served from this machine only.
LOCAL_ORIGIN_REGEX = r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$"


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    status: str
    timestamp: str
    version: str
    sessions: int
    shell: str
    capture_strategy: str


def create_app(
    service: Optional[RunService] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: RunService to serve; one is built from configuration if omitted.
        enable_cors: Whether to enable CORS middleware for loopback origins.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="mdrun API",
        description="Run shell blocks embedded in Markdown documents and inspect their stored results.",
        version=__version__,
    )
    app.state.service = service or RunService.from_config()

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origin_regex=LOCAL_ORIGIN_REGEX,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(blocks_router, prefix="/api")
    app.include_router(sessions_router, prefix="/api")
    app.include_router(runs_router, prefix="/api")
    app.include_router(results_router, prefix="/api")
    app.include_router(artifacts_router, prefix="/api")
    app.include_router(problems_router, prefix="/api")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time
        logger.info(
            "%s %s %s %.3fs",
            request.method,
            request.url.path,
            response.status_code,
            duration,
        )
        return response

    @app.get("/api/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        svc: RunService = app.state.service
        return HealthResponse(
            status="ok",
            timestamp=_datetime_to_iso(utc_now()),
            version=__version__,
            sessions=len(svc.sessions),
            shell=svc.executor.config.shell,
            capture_strategy=svc.executor.config.capture_strategy.value,
        )

    return app


def main(argv: Optional[list] = None) -> int:
    """Run the API server."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="mdrun API server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5051, help="Port to bind to")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-cors", action="store_true", help="Disable CORS")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)
    app = create_app(enable_cors=not args.no_cors)

    print(f"Starting mdrun API server at http://{args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if args.debug else "info")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""
mdrun API - FastAPI REST surface over RunService.

Endpoints:
    GET    /api/health                - Health check
    POST   /api/blocks                - List runnable blocks
    POST   /api/blocks/at             - Block containing a line
    GET    /api/sessions              - Session summary
    POST   /api/sessions/reset        - Reset a session
    POST   /api/runs                  - Run the block at a line
    POST   /api/runs/next             - Run the next unexecuted block
    POST   /api/runs/all              - Run every block in order
    GET    /api/results               - Sidecar document
    GET    /api/results/{identity}    - Latest output of one block
    POST   /api/results/prune         - Drop results of vanished blocks
    GET    /api/artifacts             - Artifact bytes
    GET    /api/problems              - Failed/timed-out blocks
    DELETE /api/problems              - Clear the problem list
"""

from .server import create_app

__all__ = ["create_app"]

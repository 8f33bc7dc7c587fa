"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state for concurrent access by the routes and the scheduler.

Usage:
    from mailfacts.web.dependencies import get_pipeline

    @router.post("/extract")
    async def extract(pipeline: Pipeline = Depends(get_pipeline)):
        result = await pipeline.extract_batch()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from mailfacts.db.store import DatabaseStore
    from mailfacts.engine.pipeline import Pipeline


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return request.app.state.store


def get_pipeline(request: Request) -> Pipeline:
    """Get the Pipeline from app state; 503 if it could not be built at startup."""
    pipeline = request.app.state.pipeline
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not available")
    return pipeline

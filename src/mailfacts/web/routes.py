"""JSON API routes over the Pipeline API.

Failures come back as ``{"error": ..., "details": ...}`` with the status
code of the failure class (404 unknown user, 409 sync conflict, 400/422/500
for queries), never as a raw exception.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from mailfacts import __version__
from mailfacts.core.errors import DatabaseError, QueryError, UserNotFoundError
from mailfacts.core.logging import get_logger
from mailfacts.db.store import DatabaseStore
from mailfacts.engine.pipeline import Pipeline
from mailfacts.web.dependencies import get_pipeline, get_store

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


class QueryRequest(BaseModel):
    """Request body for a natural-language question."""

    question: str | None = None


def _error(status_code: int, error: str, details: Any = None) -> JSONResponse:
    content: dict[str, Any] = {"error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


@api_router.post("/users/{user_id}/sync")
async def trigger_sync(user_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    """Sync one user's mailbox now."""
    try:
        result = await pipeline.trigger_sync(user_id)
    except UserNotFoundError:
        return _error(404, "User not found")
    except DatabaseError as e:
        logger.error("sync_endpoint_failed", user_id=user_id, error=str(e))
        return _error(500, "Sync failed", str(e))

    if result.status == "conflict":
        return _error(409, "Sync already in progress")
    if result.status == "error":
        return _error(500, "Sync failed", result.error)

    return {
        "success": True,
        "fetched": result.fetched,
        "stored": result.stored,
        "skipped": result.skipped,
        "failed": result.failed,
        "run_id": result.run_id,
        "duration_ms": result.duration_ms,
    }


@api_router.post("/extract")
async def extract_batch(
    batch_size: int | None = Query(default=None, ge=1, le=100),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Run one fact extraction batch over the oldest unprocessed messages."""
    try:
        result = await pipeline.extract_batch(batch_size)
    except DatabaseError as e:
        logger.error("extract_endpoint_failed", error=str(e))
        return _error(500, "Extraction failed", str(e))

    return {
        "success": True,
        "processed": result.processed,
        "failed": result.failed,
        "total": result.total,
        "facts_created": result.facts_created,
        "run_id": result.run_id,
    }


@api_router.post("/users/{user_id}/query")
async def answer_query(
    user_id: str,
    body: QueryRequest,
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Answer a question from the user's extracted facts."""
    try:
        result = await pipeline.answer_query(user_id, body.question or "")
    except UserNotFoundError:
        return _error(404, "User not found")
    except QueryError as e:
        return _error(e.status_code, str(e), e.details)

    return {
        "answer": result.answer,
        "intent": result.intent.to_dict(),
        "data": result.data,
    }


@api_router.get("/health")
async def health_check(request: Request, store: DatabaseStore | None = Depends(get_store)):
    """Health check with queue counts and the last scheduled runs."""
    pipeline = request.app.state.pipeline

    stats: dict[str, Any] | None = None
    status = "healthy" if pipeline else "degraded"
    if store is not None:
        try:
            stats = await store.get_stats()
        except DatabaseError as e:
            logger.warning("health_stats_failed", error=str(e))
            status = "degraded"
    else:
        status = "degraded"

    return {
        "status": status,
        "stats": stats,
        "last_runs": getattr(request.app.state, "last_runs", {}),
        "version": __version__,
    }

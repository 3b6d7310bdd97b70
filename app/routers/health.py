# app/routers/health.py
"""
System health check endpoint.
Returns status of backend + DB + job orchestrator.
"""

import asyncio
from fastapi import APIRouter, Depends
from sqlalchemy import text
from app.pipeline import Pipeline, get_pipeline
from datetime import datetime

router = APIRouter()


def _ping(pipeline: Pipeline):
    with pipeline.store.session_scope() as db:
        db.execute(text("SELECT 1"))


@router.get("/health", summary="System health check")
async def health_check(pipeline: Pipeline = Depends(get_pipeline)):
    """
    Returns:
    - Backend status
    - Database connectivity
    - Orchestrator state (queue depths, failed jobs)
    """
    result = {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "backend": "ok",
        "database": "unknown",
        "orchestrator": pipeline.orchestrator.stats(),
    }

    # Check database
    try:
        await asyncio.to_thread(_ping, pipeline)
        result["database"] = "ok"
    except Exception as e:
        result["database"] = f"error: {str(e)}"
        result["status"] = "degraded"

    if not result["orchestrator"]["running"]:
        result["status"] = "degraded"
    return result

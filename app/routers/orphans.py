# app/routers/orphans.py
"""
Orphan events: OUTs with no entry yet (ORPHAN_OPEN) and INs that expired
unpaired (ORPHAN_EXPIRED). Open INs still waiting for an exit are not orphans.
GET /orphans         — event list with filters.
GET /orphans/summary — per-zone counts of pairable events.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from app.models.event import ORPHAN_STATUSES
from app.pipeline import Pipeline, get_pipeline
from app.schemas.event import EventOut

router = APIRouter()


@router.get("/orphans", response_model=list[EventOut], summary="List orphan events")
def list_orphans(zone: str = None, status: str = None, direction: str = None,
                 start: datetime = None, end: datetime = None,
                 limit: int = Query(100, ge=1, le=1000), offset: int = Query(0, ge=0),
                 pipeline: Pipeline = Depends(get_pipeline)):
    if status and status not in ORPHAN_STATUSES:
        raise HTTPException(status_code=422, detail=f"status must be one of {ORPHAN_STATUSES}")
    return pipeline.store.query_orphans(zone=zone, status=status,
                                        direction=direction.upper() if direction else None,
                                        start=start, end=end, limit=limit, offset=offset)


@router.get("/orphans/summary", summary="Per-zone unresolved counts")
def orphan_summary(pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.store.zones_with_unresolved()

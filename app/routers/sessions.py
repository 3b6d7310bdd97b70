# app/routers/sessions.py
"""Completed parking sessions, filterable by zone, entry time and match type."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from app.pipeline import Pipeline, get_pipeline
from app.schemas.parking_session import ParkingSessionOut

router = APIRouter()


@router.get("/sessions", response_model=list[ParkingSessionOut], summary="List parking sessions")
def list_sessions(zone: str = None, start: datetime = None, end: datetime = None,
                  match_type: str = None, limit: int = Query(100, ge=1, le=1000),
                  offset: int = Query(0, ge=0), pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.store.query_sessions(zone=zone, start=start, end=end, match_type=match_type,
                                         limit=limit, offset=offset)

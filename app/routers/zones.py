# app/routers/zones.py
"""Zone configuration admin. Zones without a row report the default settings."""

from fastapi import APIRouter, Depends

from app.pipeline import Pipeline, get_pipeline
from app.schemas.zone_config import ZoneConfigUpdate, ZoneSettings

router = APIRouter()


@router.get("/zones", response_model=list[ZoneSettings], summary="List configured zones")
def list_zones(pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.zones.list_zones()


@router.get("/zones/{zone_id}", response_model=ZoneSettings, summary="Effective config for a zone")
def get_zone(zone_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.zones.get(zone_id)


@router.put("/zones/{zone_id}", response_model=ZoneSettings, summary="Create or update a zone's config")
def update_zone(zone_id: str, body: ZoneConfigUpdate, pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.zones.upsert(zone_id, body)

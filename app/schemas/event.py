# app/schemas/event.py
from pydantic import BaseModel, field_validator
from datetime import datetime
from typing import Optional

from app.services.normalizer import normalize_plate, parse_timestamp


class EventIn(BaseModel):
    """One normalised ingest row (post CSV-mapping)."""
    ts: datetime
    zone: str
    direction: str           # IN | OUT (case-insensitive on input)
    plate_raw: str
    state_raw: Optional[str] = None
    camera_id: Optional[str] = None
    quality: Optional[float] = None
    upload_id: Optional[str] = None

    @field_validator("ts", mode="before")
    @classmethod
    def _parse_ts(cls, v):
        parsed = parse_timestamp(v)
        if parsed is None:
            raise ValueError(f"unparseable timestamp {v!r}")
        return parsed

    @field_validator("zone", "camera_id", "plate_raw", "state_raw", mode="before")
    @classmethod
    def _coerce_str(cls, v):
        # zone/camera/plate columns arrive as numbers from some exports
        if isinstance(v, (int, float)):
            return str(v)
        return v.strip() if isinstance(v, str) else v

    @field_validator("zone")
    @classmethod
    def _zone_required(cls, v):
        if not v:
            raise ValueError("zone is required")
        return v

    @field_validator("direction", mode="before")
    @classmethod
    def _direction(cls, v):
        value = str(v or "").strip().upper()
        if value not in ("IN", "OUT"):
            raise ValueError(f"direction must be IN or OUT, got {v!r}")
        return value

    @field_validator("plate_raw")
    @classmethod
    def _plate_has_content(cls, v):
        if not normalize_plate(v):
            raise ValueError("plate is empty after normalisation")
        return v


class EventOut(BaseModel):
    id: int
    ts: datetime
    zone: str
    direction: str
    plate_raw: str
    plate_norm: str
    state_norm: str
    camera_id: Optional[str]
    quality: Optional[float]
    upload_id: Optional[str]
    status: str
    session_id: Optional[int]

    class Config:
        from_attributes = True

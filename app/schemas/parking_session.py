# app/schemas/parking_session.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class ParkingSessionOut(BaseModel):
    id: int
    zone: str
    entry_event_id: int
    exit_event_id: int
    plate_norm: str
    state_entry: Optional[str]
    state_exit: Optional[str]
    entry_ts: datetime
    exit_ts: datetime
    duration_seconds: int
    duration_minutes: int
    match_type: str
    match_method: str
    confidence_score: float
    billing_amount: Optional[float]
    flags: list[str]

    class Config:
        from_attributes = True

# app/schemas/job.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Optional


class JobSubmit(BaseModel):
    kind: str                 # ingest | pair | fuzzy-sweep | expire
    payload: dict[str, Any] = Field(default_factory=dict)
    delay_seconds: float = Field(0.0, ge=0)


class JobOut(BaseModel):
    id: str
    kind: str
    payload: dict[str, Any]
    state: str
    attempts: int
    last_error: Optional[str]
    result: Optional[Any]
    created_at: datetime
    finished_at: Optional[datetime]

    class Config:
        from_attributes = True

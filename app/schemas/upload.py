# app/schemas/upload.py
from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import datetime
from typing import Any, Optional

from app.utils.csv_parser import COLUMN_MAPPINGS


class IngestRequest(BaseModel):
    """Either pre-mapped rows or raw CSV text. mapping names a CSV column mapping; detected from headers when omitted."""
    rows: Optional[list[dict[str, Any]]] = None
    csv_data: Optional[str] = None
    mapping: Optional[str] = None

    @field_validator("mapping")
    @classmethod
    def _known_mapping(cls, v):
        if v is not None and v not in COLUMN_MAPPINGS:
            raise ValueError(f"unknown mapping {v!r}; expected one of {sorted(COLUMN_MAPPINGS)}")
        return v

    @model_validator(mode="after")
    def _has_payload(self):
        if self.rows is None and self.csv_data is None:
            raise ValueError("either rows or csv_data is required")
        return self


class RowError(BaseModel):
    row: int
    reason: str


class IngestResult(BaseModel):
    upload_id: str
    status: str
    inserted: int = 0
    duplicates: int = 0
    errored: int = 0
    errors: list[RowError] = Field(default_factory=list)
    out_event_ids: list[int] = Field(default_factory=list)
    zones: list[str] = Field(default_factory=list)


class UploadOut(BaseModel):
    id: str
    status: str
    rows_claimed: int
    rows_inserted: int
    rows_duplicate: int
    rows_errored: int
    errors: Optional[list[dict]]
    error_message: Optional[str]
    created_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class AbortResult(BaseModel):
    upload_id: str
    status: str
    deleted_events: int
    retained_paired_events: int

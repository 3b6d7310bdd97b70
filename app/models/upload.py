# app/models/upload.py
"""
Upload tracking table — one row per ingested file/batch.
status: PENDING → PROCESSING → COMPLETED | ERROR, or CANCELLED on abort.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from app.database import Base

UPLOAD_PENDING = "PENDING"
UPLOAD_PROCESSING = "PROCESSING"
UPLOAD_COMPLETED = "COMPLETED"
UPLOAD_ERROR = "ERROR"
UPLOAD_CANCELLED = "CANCELLED"


class Upload(Base):
    __tablename__ = "uploads"

    id = Column(String(36), primary_key=True)
    status = Column(String(20), nullable=False, default=UPLOAD_PENDING, index=True)
    rows_claimed = Column(Integer, nullable=False, default=0)
    rows_inserted = Column(Integer, nullable=False, default=0)
    rows_duplicate = Column(Integer, nullable=False, default=0)
    rows_errored = Column(Integer, nullable=False, default=0)
    errors = Column(JSON)          # first N row-level reasons
    error_message = Column(String(500))
    created_at = Column(DateTime)
    completed_at = Column(DateTime)

    def __repr__(self):
        return f"<Upload {self.id} status={self.status} inserted={self.rows_inserted}>"

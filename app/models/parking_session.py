# app/models/parking_session.py
"""
Sessions table — one row per matched entry/exit pair.
Written in the same transaction that marks both events PAIRED; never
updated afterwards except for derived billing fields.
"""

from sqlalchemy import Column, Integer, String, DateTime, Float, JSON, CheckConstraint
from app.database import Base

MATCH_EXACT = "EXACT"
MATCH_STATE_MISMATCH = "STATE_MISMATCH"
MATCH_FUZZY_ACCEPTED = "FUZZY_ACCEPTED"

FLAG_OVERNIGHT = "OVERNIGHT"
FLAG_MULTIDAY = "MULTIDAY"
FLAG_LONG_STAY = "LONG_STAY"
FLAG_REVIEW_REQUIRED = "REVIEW_REQUIRED"


class ParkingSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        CheckConstraint("entry_ts < exit_ts", name="ck_sessions_entry_before_exit"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    zone = Column(String(100), nullable=False, index=True)
    entry_event_id = Column(Integer, unique=True, nullable=False)
    exit_event_id = Column(Integer, unique=True, nullable=False)
    plate_norm = Column(String(50), nullable=False, index=True)
    state_entry = Column(String(50))
    state_exit = Column(String(50))
    entry_ts = Column(DateTime, nullable=False, index=True)
    exit_ts = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    match_type = Column(String(20), nullable=False, index=True)  # EXACT | STATE_MISMATCH | FUZZY_ACCEPTED
    match_method = Column(String(50), nullable=False)
    confidence_score = Column(Float, nullable=False)
    billing_amount = Column(Float)
    flags = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime)

    @property
    def duration_minutes(self) -> int:
        return self.duration_seconds // 60

    def __repr__(self):
        return f"<ParkingSession {self.id} plate={self.plate_norm} type={self.match_type}>"

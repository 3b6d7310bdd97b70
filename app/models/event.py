# app/models/event.py
"""
LPR event log table.
One row per IN/OUT plate read, deduplicated by (zone, dedup_key).
`status` is the source of truth for where the event is in its lifecycle:

  IN:   OPEN ──► PAIRED
            └──► ORPHAN_EXPIRED
  OUT:  ORPHAN_OPEN ──► PAIRED
"""

from sqlalchemy import Column, Integer, String, DateTime, Float, ForeignKey, Index, UniqueConstraint
from app.database import Base

DIRECTION_IN = "IN"
DIRECTION_OUT = "OUT"

STATUS_OPEN = "OPEN"
STATUS_PAIRED = "PAIRED"
STATUS_ORPHAN_OPEN = "ORPHAN_OPEN"
STATUS_ORPHAN_EXPIRED = "ORPHAN_EXPIRED"

PAIRABLE_STATUSES = (STATUS_OPEN, STATUS_ORPHAN_OPEN)
ORPHAN_STATUSES = (STATUS_ORPHAN_OPEN, STATUS_ORPHAN_EXPIRED)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("zone", "dedup_key", name="uq_events_zone_dedup"),
        Index("ix_events_zone_status_ts", "zone", "status", "ts"),
        Index("ix_events_zone_plate", "zone", "plate_norm"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime, nullable=False)                # naive UTC
    zone = Column(String(100), nullable=False)
    direction = Column(String(3), nullable=False)        # IN | OUT
    plate_raw = Column(String(50), nullable=False)
    plate_norm = Column(String(50), nullable=False)
    plate_norm_fuzzy = Column(String(50), nullable=False)
    state_raw = Column(String(50))
    state_norm = Column(String(50), nullable=False, default="")
    camera_id = Column(String(50))
    quality = Column(Float)
    upload_id = Column(String(36), index=True)
    dedup_key = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False)
    session_id = Column(Integer, ForeignKey("sessions.id"))   # set when PAIRED
    created_at = Column(DateTime)

    def __repr__(self):
        return f"<Event {self.id} {self.direction} plate={self.plate_norm} zone={self.zone} status={self.status}>"

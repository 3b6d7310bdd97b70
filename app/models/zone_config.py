# app/models/zone_config.py
"""
Per-zone matching configuration (admin-managed reference data).
Read by the pairing, fuzzy and expiry engines; never written by them.
"""

from sqlalchemy import Column, Integer, String, Float, JSON
from app.database import Base


class ZoneConfig(Base):
    __tablename__ = "zone_config"

    zone_id = Column(String(100), primary_key=True)
    horizon_days = Column(Integer, nullable=False, default=7)          # open IN expiry
    fuzzy_threshold = Column(Float, nullable=False, default=0.95)
    review_required_below_score = Column(Float, nullable=False, default=0.97)
    max_stay_hours = Column(Integer, nullable=False, default=168)      # exact pairing window
    billing_rules = Column(JSON)

    def __repr__(self):
        return f"<ZoneConfig {self.zone_id} horizon={self.horizon_days}d threshold={self.fuzzy_threshold}>"

# app/services/expiry.py
"""
Expiry sweep: open INs older than their zone's horizon become ORPHAN_EXPIRED.

ORPHAN_EXPIRED is terminal — pairing and fuzzy matching never look at it
again. OUT orphans have no horizon and are never expired.
"""

from datetime import datetime, timedelta
from typing import Optional

from app.services.event_store import EventStore
from app.services.zone_config import ZoneConfigProvider
from app.utils.logger import get_logger

logger = get_logger(__name__)


class ExpiryEngine:
    def __init__(self, store: EventStore, zones: ZoneConfigProvider):
        self.store = store
        self.zones = zones

    def expire(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Returns {zone: number of INs expired}. Each zone commits on its own."""
        now = now or datetime.utcnow()
        expired: dict[str, int] = {}
        for zone in self.store.zones_with_open_ins():
            horizon = self.zones.get(zone).horizon_days
            cutoff = now - timedelta(days=horizon)
            with self.store.session_scope() as db:
                count = self.store.expire_open_ins(zone, cutoff, db)
            if count:
                expired[zone] = count
                logger.info(f"[EXPIRE] zone={zone}: {count} open INs older than {horizon}d → ORPHAN_EXPIRED")
        return expired

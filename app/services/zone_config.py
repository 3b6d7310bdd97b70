# app/services/zone_config.py
"""
Read-only zone configuration lookup.
Zones without a zone_config row fall back to the DEFAULT_* settings.
A row that does not validate raises ZoneConfigError, which is fatal for
whichever job asked for it.
"""

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.exceptions import ZoneConfigError
from app.models.zone_config import ZoneConfig
from app.schemas.zone_config import BillingRules, ZoneConfigUpdate, ZoneSettings
from app.utils.logger import get_logger

logger = get_logger(__name__)


class ZoneConfigProvider:
    def __init__(self, session_factory, config: Settings = default_settings):
        self._session_factory = session_factory
        self._config = config

    def defaults(self, zone_id: str) -> ZoneSettings:
        return ZoneSettings(
            zone_id=zone_id,
            horizon_days=self._config.DEFAULT_HORIZON_DAYS,
            fuzzy_threshold=self._config.DEFAULT_FUZZY_THRESHOLD,
            review_required_below_score=self._config.DEFAULT_REVIEW_BELOW_SCORE,
            max_stay_hours=self._config.DEFAULT_MAX_STAY_HOURS,
            billing_rules=BillingRules(hourly_rate=self._config.DEFAULT_HOURLY_RATE),
        )

    def get(self, zone_id: str) -> ZoneSettings:
        db: Session = self._session_factory()
        try:
            row = db.get(ZoneConfig, zone_id)
        finally:
            db.close()

        if row is None:
            return self.defaults(zone_id)
        try:
            return ZoneSettings(
                zone_id=row.zone_id,
                horizon_days=row.horizon_days,
                fuzzy_threshold=row.fuzzy_threshold,
                review_required_below_score=row.review_required_below_score,
                max_stay_hours=row.max_stay_hours,
                billing_rules=row.billing_rules or {},
            )
        except ValidationError as e:
            logger.error(f"[ZONES] Rejecting config for {zone_id}: {e}")
            raise ZoneConfigError(zone_id, str(e)) from e

    def list_zones(self) -> list[ZoneSettings]:
        db: Session = self._session_factory()
        try:
            zone_ids = [z for (z,) in db.query(ZoneConfig.zone_id).order_by(ZoneConfig.zone_id).all()]
        finally:
            db.close()
        return [self.get(z) for z in zone_ids]

    def upsert(self, zone_id: str, update: ZoneConfigUpdate) -> ZoneSettings:
        """Admin write path. The pipeline itself never calls this."""
        db: Session = self._session_factory()
        try:
            row = db.get(ZoneConfig, zone_id)
            if row is None:
                base = self.defaults(zone_id)
                row = ZoneConfig(
                    zone_id=zone_id,
                    horizon_days=base.horizon_days,
                    fuzzy_threshold=base.fuzzy_threshold,
                    review_required_below_score=base.review_required_below_score,
                    max_stay_hours=base.max_stay_hours,
                    billing_rules=base.billing_rules.model_dump(),
                )
                db.add(row)
            for field, value in update.model_dump(exclude_none=True).items():
                setattr(row, field, value)
            db.commit()
        finally:
            db.close()
        logger.info(f"[ZONES] Updated config for {zone_id}")
        return self.get(zone_id)

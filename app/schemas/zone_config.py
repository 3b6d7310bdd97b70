# app/schemas/zone_config.py
from pydantic import BaseModel, Field, model_validator
from typing import Optional


class BillingRules(BaseModel):
    hourly_rate: float = Field(0.0, ge=0)
    grace_minutes: int = Field(0, ge=0)
    daily_max: Optional[float] = Field(None, ge=0)


class ZoneSettings(BaseModel):
    """Validated, read-only view of one zone's matching configuration."""
    zone_id: str
    horizon_days: int = Field(gt=0)
    fuzzy_threshold: float = Field(ge=0, le=1)
    review_required_below_score: float = Field(ge=0, le=1)
    max_stay_hours: int = Field(gt=0)
    billing_rules: BillingRules = Field(default_factory=BillingRules)

    class Config:
        from_attributes = True
        frozen = True


class ZoneConfigUpdate(BaseModel):
    horizon_days: Optional[int] = Field(None, gt=0)
    fuzzy_threshold: Optional[float] = Field(None, ge=0, le=1)
    review_required_below_score: Optional[float] = Field(None, ge=0, le=1)
    max_stay_hours: Optional[int] = Field(None, gt=0)
    billing_rules: Optional[BillingRules] = None

    @model_validator(mode="after")
    def _not_empty(self):
        if not self.model_dump(exclude_none=True):
            raise ValueError("at least one field must be provided")
        return self

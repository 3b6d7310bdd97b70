# app/services/billing.py
"""Session duration, flags and billing amount derived at pairing time."""

import math
from datetime import datetime

from app.models.parking_session import FLAG_LONG_STAY, FLAG_MULTIDAY, FLAG_OVERNIGHT
from app.schemas.zone_config import BillingRules

SECONDS_PER_DAY = 24 * 3600


def derive_flags(entry_ts: datetime, exit_ts: datetime, max_stay_hours: int) -> list[str]:
    flags = []
    duration = (exit_ts - entry_ts).total_seconds()
    if entry_ts.date() != exit_ts.date():
        flags.append(FLAG_OVERNIGHT)
    if duration > SECONDS_PER_DAY:
        flags.append(FLAG_MULTIDAY)
    if duration > max_stay_hours * 3600:
        flags.append(FLAG_LONG_STAY)
    return flags


def compute_billing(duration_seconds: int, rules: BillingRules) -> float:
    """
    Free within the grace period, then every started hour at hourly_rate.
    Each full 24h block and the trailing partial day are capped at daily_max.
    """
    if duration_seconds <= rules.grace_minutes * 60 or rules.hourly_rate == 0:
        return 0.0

    full_days, remainder = divmod(duration_seconds, SECONDS_PER_DAY)
    day_charge = 24 * rules.hourly_rate
    tail_charge = math.ceil(remainder / 3600) * rules.hourly_rate
    if rules.daily_max is not None:
        day_charge = min(day_charge, rules.daily_max)
        tail_charge = min(tail_charge, rules.daily_max)
    return round(full_days * day_charge + tail_charge, 2)

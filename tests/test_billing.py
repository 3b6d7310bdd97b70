# tests/test_billing.py
"""Unit tests for session flags and billing amounts."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from datetime import datetime, timedelta
from app.schemas.zone_config import BillingRules
from app.services.billing import compute_billing, derive_flags


class TestDeriveFlags:
    def test_same_day_short_stay_has_no_flags(self):
        assert derive_flags(datetime(2025, 3, 10, 10), datetime(2025, 3, 10, 11), 168) == []

    def test_overnight(self):
        assert derive_flags(datetime(2025, 3, 10, 23), datetime(2025, 3, 11, 1), 168) == ["OVERNIGHT"]

    def test_multiday_and_long_stay(self):
        entry = datetime(2025, 3, 10, 10)
        flags = derive_flags(entry, entry + timedelta(hours=30), 24)
        assert flags == ["OVERNIGHT", "MULTIDAY", "LONG_STAY"]


class TestComputeBilling:
    def test_free_when_no_rate(self):
        assert compute_billing(7200, BillingRules()) == 0.0

    def test_grace_period(self):
        rules = BillingRules(hourly_rate=2.0, grace_minutes=15)
        assert compute_billing(15 * 60, rules) == 0.0
        assert compute_billing(16 * 60, rules) == 2.0

    def test_started_hours_round_up(self):
        assert compute_billing(61 * 60, BillingRules(hourly_rate=2.5)) == 5.0

    def test_daily_max_caps_each_day(self):
        rules = BillingRules(hourly_rate=3.0, daily_max=20.0)
        # one full day capped at 20 + 2h tail at 6
        assert compute_billing(26 * 3600, rules) == 26.0
        assert compute_billing(10 * 3600, rules) == 20.0

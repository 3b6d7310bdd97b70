# tests/test_expiry.py
"""Expiry sweep: only old OPEN INs move to ORPHAN_EXPIRED."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from datetime import datetime, timedelta
from app.models.event import STATUS_OPEN, STATUS_ORPHAN_EXPIRED, STATUS_ORPHAN_OPEN, STATUS_PAIRED

T0 = datetime(2025, 3, 10, 10, 0)


class TestExpiry:
    def test_scenario_c_in_expires_after_horizon(self, store, expiry, add_event, set_zone, all_sessions):
        set_zone(horizon_days=1)
        in_id = add_event("IN", "ABC123", T0)

        result = expiry.expire(now=T0 + timedelta(days=2))

        assert result == {"Z": 1}
        assert store.get_event(in_id).status == STATUS_ORPHAN_EXPIRED
        assert all_sessions() == []

    def test_young_in_untouched(self, store, expiry, add_event, set_zone):
        set_zone(horizon_days=3)
        in_id = add_event("IN", "ABC123", T0)
        assert expiry.expire(now=T0 + timedelta(days=2)) == {}
        assert store.get_event(in_id).status == STATUS_OPEN

    def test_outs_and_paired_never_touched(self, store, pairing, expiry, add_event, set_zone):
        set_zone(horizon_days=1)
        paired_in = add_event("IN", "ABC123", T0)
        paired_out = add_event("OUT", "ABC123", T0 + timedelta(hours=1))
        orphan_out = add_event("OUT", "XYZ999", T0)
        pairing.pair_out(paired_out)

        expiry.expire(now=T0 + timedelta(days=30))

        assert store.get_event(paired_in).status == STATUS_PAIRED
        assert store.get_event(paired_out).status == STATUS_PAIRED
        assert store.get_event(orphan_out).status == STATUS_ORPHAN_OPEN

    def test_expired_is_terminal(self, store, pairing, expiry, add_event, set_zone):
        set_zone(horizon_days=1)
        in_id = add_event("IN", "ABC123", T0)
        expiry.expire(now=T0 + timedelta(days=2))
        assert expiry.expire(now=T0 + timedelta(days=3)) == {}

        # A late OUT no longer finds the expired IN.
        out_id = add_event("OUT", "ABC123", T0 + timedelta(hours=2))
        assert pairing.pair_out(out_id).outcome == "NO_CANDIDATE"
        assert store.get_event(in_id).status == STATUS_ORPHAN_EXPIRED

    def test_per_zone_horizon(self, store, expiry, add_event, set_zone):
        set_zone("short", horizon_days=1)
        set_zone("long", horizon_days=10)
        short_in = add_event("IN", "ABC123", T0, zone="short")
        long_in = add_event("IN", "ABC123", T0, zone="long")

        assert expiry.expire(now=T0 + timedelta(days=5)) == {"short": 1}
        assert store.get_event(short_in).status == STATUS_ORPHAN_EXPIRED
        assert store.get_event(long_in).status == STATUS_OPEN

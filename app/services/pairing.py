# app/services/pairing.py
"""
Exact pairing: match one newly ingested OUT to an open IN with the same plate.

How it works:
  - Candidates are open INs in the OUT's zone with the same plate_norm,
    strictly earlier than the OUT and no older than the zone's max_stay_hours
  - The nearest prior IN wins (greedy nearest neighbour); a stale entry from
    days ago never beats a closer one
  - Same plate, different state → STATE_MISMATCH instead of EXACT
  - No candidate → the OUT stays ORPHAN_OPEN for the fuzzy sweep

commit_pairing() is shared with the fuzzy engine: the Session insert and
both status transitions happen in one transaction or not at all.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from app.exceptions import AlreadyPaired, InvalidPairing
from app.models.event import DIRECTION_IN, DIRECTION_OUT, STATUS_ORPHAN_OPEN, Event
from app.models.parking_session import (
    FLAG_REVIEW_REQUIRED, MATCH_EXACT, MATCH_STATE_MISMATCH, ParkingSession,
)
from app.schemas.zone_config import ZoneSettings
from app.services.billing import compute_billing, derive_flags
from app.services.event_store import EventStore
from app.services.zone_config import ZoneConfigProvider
from app.utils.logger import get_logger

logger = get_logger(__name__)

METHOD_NEAREST_PRIOR = "nearest_prior_in"

OUTCOME_PAIRED = "PAIRED"
OUTCOME_NO_CANDIDATE = "NO_CANDIDATE"
OUTCOME_ALREADY_RESOLVED = "ALREADY_RESOLVED"
OUTCOME_NOT_FOUND = "NOT_FOUND"
OUTCOME_NOT_AN_OUT = "NOT_AN_OUT"


@dataclass
class PairingOutcome:
    out_id: int
    outcome: str
    session_id: Optional[int] = None
    entry_event_id: Optional[int] = None
    match_type: Optional[str] = None
    candidates: int = 0


def commit_pairing(store: EventStore, entry: Event, exit_: Event, zone_cfg: ZoneSettings,
                   match_type: str, match_method: str, confidence: float) -> ParkingSession:
    """
    Insert the Session and mark both events PAIRED atomically.
    Raises AlreadyPaired if either event was resolved since it was read;
    nothing is written in that case.
    """
    if entry.direction != DIRECTION_IN or exit_.direction != DIRECTION_OUT:
        raise InvalidPairing(f"expected IN/OUT pair, got {entry.direction}/{exit_.direction}")
    if entry.zone != exit_.zone:
        raise InvalidPairing(f"zone mismatch: {entry.zone} vs {exit_.zone}")
    if not entry.ts < exit_.ts:
        raise InvalidPairing(f"exit {exit_.id} at {exit_.ts} is not after entry {entry.id} at {entry.ts}")

    duration = int((exit_.ts - entry.ts).total_seconds())
    flags = derive_flags(entry.ts, exit_.ts, zone_cfg.max_stay_hours)
    if match_type not in (MATCH_EXACT, MATCH_STATE_MISMATCH) and confidence < zone_cfg.review_required_below_score:
        flags.append(FLAG_REVIEW_REQUIRED)

    try:
        session = _write_session(store, entry, exit_, zone_cfg, match_type, match_method,
                                 confidence, duration, flags)
    except IntegrityError as e:
        # A concurrent pairing inserted a session for one of these events first.
        raise AlreadyPaired(_claimed_event_id(store, entry, exit_)) from e

    logger.info(
        f"[PAIR] {match_type} zone={entry.zone} plate={entry.plate_norm} "
        f"in={entry.id} out={exit_.id} duration={duration // 60}min session={session.id}"
    )
    return session


def _claimed_event_id(store: EventStore, entry: Event, exit_: Event) -> int:
    current = store.get_event(exit_.id)
    if current is None or current.status != STATUS_ORPHAN_OPEN:
        return exit_.id
    return entry.id


def _write_session(store, entry, exit_, zone_cfg, match_type, match_method,
                   confidence, duration, flags) -> ParkingSession:
    with store.session_scope() as db:
        session = ParkingSession(
            zone=entry.zone,
            entry_event_id=entry.id,
            exit_event_id=exit_.id,
            plate_norm=entry.plate_norm,
            state_entry=entry.state_norm,
            state_exit=exit_.state_norm,
            entry_ts=entry.ts,
            exit_ts=exit_.ts,
            duration_seconds=duration,
            match_type=match_type,
            match_method=match_method,
            confidence_score=confidence,
            billing_amount=compute_billing(duration, zone_cfg.billing_rules),
            flags=flags,
            created_at=datetime.utcnow(),
        )
        db.add(session)
        db.flush()
        store.mark_paired(entry.id, session.id, db)
        store.mark_paired(exit_.id, session.id, db)
        db.expunge(session)
    return session


class ExactPairingEngine:
    def __init__(self, store: EventStore, zones: ZoneConfigProvider):
        self.store = store
        self.zones = zones

    def pair_out(self, out_id: int) -> PairingOutcome:
        out = self.store.get_event(out_id)
        if out is None:
            logger.warning(f"[PAIR] OUT {out_id} not found (upload aborted?)")
            return PairingOutcome(out_id, OUTCOME_NOT_FOUND)
        if out.direction != DIRECTION_OUT:
            logger.warning(f"[PAIR] Event {out_id} is an {out.direction}, not an OUT — skipped")
            return PairingOutcome(out_id, OUTCOME_NOT_AN_OUT)
        if out.status != STATUS_ORPHAN_OPEN:
            return PairingOutcome(out_id, OUTCOME_ALREADY_RESOLVED)

        zone_cfg = self.zones.get(out.zone)
        candidates = self.store.get_open_ins(
            out.zone,
            plate_norm=out.plate_norm,
            after=out.ts - timedelta(hours=zone_cfg.max_stay_hours),
            before=out.ts,
            newest_first=True,
        )
        if not candidates:
            logger.debug(f"[PAIR] No open IN for plate={out.plate_norm} zone={out.zone} — OUT {out_id} stays orphan")
            return PairingOutcome(out_id, OUTCOME_NO_CANDIDATE)
        if len(candidates) > 1:
            logger.info(
                f"[PAIR] {len(candidates)} open INs for plate={out.plate_norm} zone={out.zone}; "
                f"taking nearest prior IN {candidates[0].id}"
            )

        for entry in candidates:
            match_type = MATCH_EXACT if entry.state_norm == out.state_norm else MATCH_STATE_MISMATCH
            try:
                session = commit_pairing(self.store, entry, out, zone_cfg,
                                         match_type, METHOD_NEAREST_PRIOR, 1.0)
            except AlreadyPaired as e:
                if e.event_id == out.id:
                    return PairingOutcome(out_id, OUTCOME_ALREADY_RESOLVED, candidates=len(candidates))
                # The IN was taken by a concurrent pairing; try the next one.
                logger.info(f"[PAIR] IN {entry.id} claimed concurrently, trying next candidate")
                continue
            return PairingOutcome(out_id, OUTCOME_PAIRED, session.id, entry.id, match_type, len(candidates))

        return PairingOutcome(out_id, OUTCOME_NO_CANDIDATE, candidates=len(candidates))

# app/services/fuzzy_matcher.py
"""
Fuzzy matching sweep for one zone.

Runs after exact pairing has drained, over whatever is still unresolved:

  0. Exact pass  — an orphan OUT with an identical plate on an earlier open
                   IN goes back through exact pairing (the IN can arrive in a
                   later upload than its OUT); identical plates are never
                   committed as fuzzy matches
  1. Candidates  — open IN × orphan OUT where in.ts < out.ts <= in.ts + horizon
                   and the fuzzy keys pass the trigram prefilter
  2. Score       — pluggable scorer, score(plate_a, plate_b) -> [0, 1]
  3. Threshold   — keep score >= min_score (or the zone's fuzzy_threshold)
  4. Uniqueness  — commit only when the IN has exactly one surviving OUT
                   AND that OUT has exactly one surviving IN
  5. Commit      — same atomic routine as exact pairing, FUZZY_ACCEPTED

A false positive is worse than a missed match, so anything ambiguous is
left for the operator. Candidate reads are a snapshot; the status guard in
commit_pairing() re-validates each pair at commit time.
"""

from bisect import bisect_right
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from app.config import Settings, settings as default_settings
from app.exceptions import AlreadyPaired
from app.models.event import Event
from app.models.parking_session import MATCH_FUZZY_ACCEPTED
from app.services.event_store import EventStore
from app.services.pairing import OUTCOME_PAIRED, ExactPairingEngine, commit_pairing
from app.services.similarity import PlateScorer, score_plates, trigram_similarity
from app.services.zone_config import ZoneConfigProvider
from app.utils.logger import get_logger

logger = get_logger(__name__)

METHOD_FUZZY = "ocr_weighted_edit_distance"


@dataclass
class ScoredCandidate:
    entry: Event
    exit: Event
    score: float


@dataclass
class SweepReport:
    zone: str
    threshold: float
    open_ins: int = 0
    orphan_outs: int = 0
    candidates: int = 0
    above_threshold: int = 0
    committed: int = 0
    ambiguous: int = 0
    stale: int = 0
    exact_paired: int = 0
    identical_skipped: int = 0
    truncated: bool = False
    session_ids: list[int] = field(default_factory=list)


class FuzzyMatchingEngine:
    def __init__(self, store: EventStore, zones: ZoneConfigProvider,
                 scorer: PlateScorer = score_plates, config: Settings = default_settings,
                 exact: Optional[ExactPairingEngine] = None):
        self.store = store
        self.zones = zones
        self.exact = exact or ExactPairingEngine(store, zones)
        self.scorer = scorer
        self.horizon = timedelta(days=config.FUZZY_HORIZON_DAYS)
        self.prefilter_min = config.FUZZY_PREFILTER_MIN
        self.max_candidates = config.FUZZY_MAX_CANDIDATES

    def generate_candidates(self, ins: list[Event], outs: list[Event]) -> tuple[list[tuple[Event, Event]], Optional[datetime]]:
        """
        Horizon-bounded, prefiltered IN × OUT pairs, earliest INs first.

        When the cap is hit, returns the timestamp of the first IN that was not
        fully expanded. OUTs later than that may still have unseen candidates,
        so the caller must not treat them as unique this sweep.
        """
        outs = sorted(outs, key=lambda e: (e.ts, e.id))
        out_ts = [o.ts for o in outs]
        pairs: list[tuple[Event, Event]] = []

        for entry in sorted(ins, key=lambda e: (e.ts, e.id)):
            lo = bisect_right(out_ts, entry.ts)               # strictly after the IN
            hi = bisect_right(out_ts, entry.ts + self.horizon)
            mine = [
                (entry, out) for out in outs[lo:hi]
                if trigram_similarity(entry.plate_norm_fuzzy, out.plate_norm_fuzzy) >= self.prefilter_min
            ]
            if len(pairs) + len(mine) > self.max_candidates:
                return pairs, entry.ts
            pairs.extend(mine)
        return pairs, None

    def _pair_identical(self, ins: list[Event], outs: list[Event], report: SweepReport) -> bool:
        """Send OUTs that have an earlier open IN with the same plate through exact pairing."""
        earliest: dict[str, datetime] = {}
        for entry in ins:
            if entry.plate_norm not in earliest or entry.ts < earliest[entry.plate_norm]:
                earliest[entry.plate_norm] = entry.ts

        tried = False
        for out in sorted(outs, key=lambda e: (e.ts, e.id)):
            first = earliest.get(out.plate_norm)
            if first is None or first >= out.ts:
                continue
            tried = True
            if self.exact.pair_out(out.id).outcome == OUTCOME_PAIRED:
                report.exact_paired += 1
        return tried

    def sweep(self, zone: str, min_score: Optional[float] = None) -> SweepReport:
        zone_cfg = self.zones.get(zone)
        threshold = zone_cfg.fuzzy_threshold if min_score is None else min_score
        report = SweepReport(zone=zone, threshold=threshold)

        ins = self.store.get_open_ins(zone)
        outs = self.store.get_orphan_outs(zone)
        report.open_ins, report.orphan_outs = len(ins), len(outs)
        if not ins or not outs:
            return report

        if self._pair_identical(ins, outs, report):
            ins = self.store.get_open_ins(zone)
            outs = self.store.get_orphan_outs(zone)
            if not ins or not outs:
                return report

        pairs, cutoff = self.generate_candidates(ins, outs)
        report.candidates = len(pairs)
        if cutoff is not None:
            report.truncated = True
            logger.warning(
                f"[FUZZY] zone={zone}: candidate cap {self.max_candidates} hit; "
                f"deferring OUTs after {cutoff} to the next sweep"
            )

        by_in: dict[int, list[ScoredCandidate]] = {}
        by_out: dict[int, list[ScoredCandidate]] = {}
        for entry, out in pairs:
            s = self.scorer(entry.plate_norm, out.plate_norm)
            if s < threshold:
                continue
            cand = ScoredCandidate(entry, out, s)
            by_in.setdefault(entry.id, []).append(cand)
            by_out.setdefault(out.id, []).append(cand)
            report.above_threshold += 1

        for in_id, cands in by_in.items():
            if len(cands) != 1:
                report.ambiguous += 1
                logger.info(f"[FUZZY] IN {in_id} has {len(cands)} qualifying OUTs — left unpaired")
                continue
            cand = cands[0]
            if len(by_out[cand.exit.id]) != 1:
                report.ambiguous += 1
                logger.info(
                    f"[FUZZY] OUT {cand.exit.id} has {len(by_out[cand.exit.id])} qualifying INs — left unpaired"
                )
                continue
            if cutoff is not None and cand.exit.ts > cutoff:
                continue
            if cand.entry.plate_norm == cand.exit.plate_norm:
                # Exact pairing already declined it (outside max_stay_hours).
                report.identical_skipped += 1
                logger.info(
                    f"[FUZZY] in={in_id} out={cand.exit.id} share plate {cand.exit.plate_norm} "
                    f"but exact pairing declined it — left unpaired"
                )
                continue
            try:
                session = commit_pairing(self.store, cand.entry, cand.exit, zone_cfg,
                                         MATCH_FUZZY_ACCEPTED, METHOD_FUZZY, cand.score)
            except AlreadyPaired as e:
                report.stale += 1
                logger.info(f"[FUZZY] Skipping in={in_id} out={cand.exit.id}: event {e.event_id} resolved since snapshot")
                continue
            report.committed += 1
            report.session_ids.append(session.id)

        logger.info(
            f"[FUZZY] zone={zone} ins={report.open_ins} outs={report.orphan_outs} "
            f"candidates={report.candidates} >=threshold={report.above_threshold} "
            f"committed={report.committed} ambiguous={report.ambiguous} stale={report.stale} "
            f"exact={report.exact_paired}"
        )
        return report

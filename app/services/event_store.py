# app/services/event_store.py
"""
Event Store — the append log of IN/OUT events plus the session/orphan read paths.

Every write that can race goes through a conditional UPDATE on `status`
(optimistic: detect and reject instead of locking the zone). mark_paired()
and expire_open_ins() take the caller's session so they commit or roll back
together with whatever else the caller writes.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import case, func
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session

from app.exceptions import AlreadyPaired, TransientStoreError
from app.models.event import (
    DIRECTION_IN, DIRECTION_OUT, ORPHAN_STATUSES, PAIRABLE_STATUSES,
    STATUS_OPEN, STATUS_ORPHAN_EXPIRED, STATUS_ORPHAN_OPEN, STATUS_PAIRED, Event,
)
from app.models.parking_session import ParkingSession
from app.schemas.event import EventIn
from app.services.normalizer import (
    make_dedup_key, normalize_plate, normalize_plate_fuzzy, normalize_state,
)
from app.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class NormalizedEvent:
    ts: datetime
    zone: str
    direction: str
    plate_raw: str
    plate_norm: str
    plate_norm_fuzzy: str
    state_raw: Optional[str]
    state_norm: str
    camera_id: Optional[str]
    quality: Optional[float]
    upload_id: Optional[str]
    dedup_key: str = field(default="")

    @classmethod
    def from_input(cls, evt: EventIn, upload_id: Optional[str] = None) -> "NormalizedEvent":
        plate_norm = normalize_plate(evt.plate_raw)
        state_norm = normalize_state(evt.state_raw)
        return cls(
            ts=evt.ts,
            zone=evt.zone,
            direction=evt.direction,
            plate_raw=evt.plate_raw,
            plate_norm=plate_norm,
            plate_norm_fuzzy=normalize_plate_fuzzy(evt.plate_raw),
            state_raw=evt.state_raw,
            state_norm=state_norm,
            camera_id=evt.camera_id,
            quality=evt.quality,
            upload_id=upload_id or evt.upload_id,
            dedup_key=make_dedup_key(evt.zone, evt.camera_id, evt.direction, evt.ts, plate_norm, state_norm),
        )

    def initial_status(self) -> str:
        return STATUS_OPEN if self.direction == DIRECTION_IN else STATUS_ORPHAN_OPEN

    def to_row(self) -> dict:
        return {
            "ts": self.ts, "zone": self.zone, "direction": self.direction,
            "plate_raw": self.plate_raw, "plate_norm": self.plate_norm,
            "plate_norm_fuzzy": self.plate_norm_fuzzy, "state_raw": self.state_raw,
            "state_norm": self.state_norm, "camera_id": self.camera_id,
            "quality": self.quality, "upload_id": self.upload_id,
            "dedup_key": self.dedup_key, "status": self.initial_status(),
            "created_at": datetime.utcnow(),
        }


@dataclass
class InsertResult:
    inserted: bool
    id: Optional[int]
    zone: str
    direction: str


class EventStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def session_scope(self):
        """One transaction: commit on success, roll back on any exception."""
        db: Session = self._session_factory()
        try:
            yield db
            db.commit()
        except (OperationalError, DisconnectionError) as e:
            db.rollback()
            logger.warning(f"[STORE] Transaction rolled back, store unavailable: {e}")
            raise TransientStoreError(str(e)) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ── Writes ───────────────────────────────────────────────────────────

    @staticmethod
    def _insert(db: Session):
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise NotImplementedError(f"no ON CONFLICT support for dialect {dialect!r}")
        return insert(Event)

    def insert_event(self, evt: NormalizedEvent) -> InsertResult:
        """Idempotent insert. A dedup collision returns inserted=False and the existing id."""
        with self.session_scope() as db:
            stmt = (
                self._insert(db)
                .values(**evt.to_row())
                .on_conflict_do_nothing(index_elements=["zone", "dedup_key"])
                .returning(Event.id)
            )
            new_id = db.execute(stmt).scalar_one_or_none()
            if new_id is not None:
                return InsertResult(True, new_id, evt.zone, evt.direction)
            existing_id = (
                db.query(Event.id)
                .filter(Event.zone == evt.zone, Event.dedup_key == evt.dedup_key)
                .scalar()
            )
            logger.debug(f"[STORE] Duplicate dropped zone={evt.zone} key={evt.dedup_key[:12]}")
            return InsertResult(False, existing_id, evt.zone, evt.direction)

    def insert_events(self, events: Iterable[NormalizedEvent]) -> list[InsertResult]:
        """
        Batch path: one multi-row INSERT ... ON CONFLICT DO NOTHING RETURNING.
        Only rows that were actually written come back as inserted=True.
        """
        unique: dict[tuple, NormalizedEvent] = {}
        in_batch_duplicates = []
        for evt in events:
            key = (evt.zone, evt.dedup_key)
            if key in unique:
                in_batch_duplicates.append(evt)
            else:
                unique[key] = evt
        if not unique:
            return [InsertResult(False, None, e.zone, e.direction) for e in in_batch_duplicates]

        with self.session_scope() as db:
            stmt = (
                self._insert(db)
                .values([evt.to_row() for evt in unique.values()])
                .on_conflict_do_nothing(index_elements=["zone", "dedup_key"])
                .returning(Event.id, Event.zone, Event.dedup_key)
            )
            written = {(zone, key): event_id for event_id, zone, key in db.execute(stmt).all()}

        results = []
        for key, evt in unique.items():
            event_id = written.get(key)
            results.append(InsertResult(event_id is not None, event_id, evt.zone, evt.direction))
        results.extend(InsertResult(False, None, e.zone, e.direction) for e in in_batch_duplicates)
        return results

    def mark_paired(self, event_id: int, session_id: int, db: Session) -> None:
        """OPEN/ORPHAN_OPEN → PAIRED, inside the caller's transaction. Raises AlreadyPaired otherwise."""
        updated = (
            db.query(Event)
            .filter(Event.id == event_id, Event.status.in_(PAIRABLE_STATUSES))
            .update({Event.status: STATUS_PAIRED, Event.session_id: session_id},
                    synchronize_session=False)
        )
        if updated != 1:
            raise AlreadyPaired(event_id)

    def expire_open_ins(self, zone: str, cutoff: datetime, db: Session) -> int:
        """OPEN INs with ts < cutoff → ORPHAN_EXPIRED. OUTs and resolved events are never touched."""
        return (
            db.query(Event)
            .filter(
                Event.zone == zone,
                Event.direction == DIRECTION_IN,
                Event.status == STATUS_OPEN,
                Event.ts < cutoff,
            )
            .update({Event.status: STATUS_ORPHAN_EXPIRED}, synchronize_session=False)
        )

    def delete_upload_events(self, upload_id: str) -> tuple[int, int]:
        """Remove an aborted upload's unresolved events. Returns (deleted, retained_paired)."""
        with self.session_scope() as db:
            retained = (
                db.query(func.count(Event.id))
                .filter(Event.upload_id == upload_id, Event.status == STATUS_PAIRED)
                .scalar()
            )
            deleted = (
                db.query(Event)
                .filter(Event.upload_id == upload_id, Event.status != STATUS_PAIRED)
                .delete(synchronize_session=False)
            )
        return deleted, retained

    # ── Reads ────────────────────────────────────────────────────────────

    def get_event(self, event_id: int) -> Optional[Event]:
        db: Session = self._session_factory()
        try:
            return db.get(Event, event_id)
        finally:
            db.close()

    def get_open_ins(self, zone: str, plate_norm: Optional[str] = None,
                     after: Optional[datetime] = None, before: Optional[datetime] = None,
                     newest_first: bool = False) -> list[Event]:
        """Open IN events in a zone, ordered by ts ascending (or descending with newest_first)."""
        db: Session = self._session_factory()
        try:
            q = db.query(Event).filter(
                Event.zone == zone,
                Event.direction == DIRECTION_IN,
                Event.status == STATUS_OPEN,
            )
            if plate_norm is not None:
                q = q.filter(Event.plate_norm == plate_norm)
            if after is not None:
                q = q.filter(Event.ts >= after)
            if before is not None:
                q = q.filter(Event.ts < before)
            order = Event.ts.desc() if newest_first else Event.ts.asc()
            return q.order_by(order, Event.id).all()
        finally:
            db.close()

    def get_orphan_outs(self, zone: str) -> list[Event]:
        db: Session = self._session_factory()
        try:
            return (
                db.query(Event)
                .filter(
                    Event.zone == zone,
                    Event.direction == DIRECTION_OUT,
                    Event.status == STATUS_ORPHAN_OPEN,
                )
                .order_by(Event.ts.asc(), Event.id)
                .all()
            )
        finally:
            db.close()

    def zones_with_open_ins(self) -> list[str]:
        db: Session = self._session_factory()
        try:
            rows = (
                db.query(Event.zone)
                .filter(Event.direction == DIRECTION_IN, Event.status == STATUS_OPEN)
                .distinct()
                .all()
            )
            return sorted(z for (z,) in rows)
        finally:
            db.close()

    def zones_with_unresolved(self) -> list[dict]:
        """Per zone: open INs and orphan OUTs, the inputs a fuzzy sweep would look at."""
        db: Session = self._session_factory()
        try:
            rows = (
                db.query(
                    Event.zone,
                    func.sum(case((Event.status == STATUS_OPEN, 1), else_=0)),
                    func.sum(case((Event.status == STATUS_ORPHAN_OPEN, 1), else_=0)),
                )
                .filter(Event.status.in_(PAIRABLE_STATUSES))
                .group_by(Event.zone)
                .order_by(Event.zone)
                .all()
            )
            return [{"zone": z, "open_in": int(i or 0), "orphan_out": int(o or 0)} for z, i, o in rows]
        finally:
            db.close()

    def query_sessions(self, zone: Optional[str] = None, start: Optional[datetime] = None,
                       end: Optional[datetime] = None, match_type: Optional[str] = None,
                       limit: int = 100, offset: int = 0) -> list[ParkingSession]:
        db: Session = self._session_factory()
        try:
            q = db.query(ParkingSession)
            if zone:
                q = q.filter(ParkingSession.zone == zone)
            if start:
                q = q.filter(ParkingSession.entry_ts >= start)
            if end:
                q = q.filter(ParkingSession.entry_ts < end)
            if match_type:
                q = q.filter(ParkingSession.match_type == match_type)
            return q.order_by(ParkingSession.entry_ts.desc()).offset(offset).limit(limit).all()
        finally:
            db.close()

    def query_orphans(self, zone: Optional[str] = None, status: Optional[str] = None,
                      direction: Optional[str] = None, start: Optional[datetime] = None,
                      end: Optional[datetime] = None, limit: int = 100, offset: int = 0) -> list[Event]:
        db: Session = self._session_factory()
        try:
            statuses = (status,) if status else ORPHAN_STATUSES
            q = db.query(Event).filter(Event.status.in_(statuses))
            if zone:
                q = q.filter(Event.zone == zone)
            if direction:
                q = q.filter(Event.direction == direction)
            if start:
                q = q.filter(Event.ts >= start)
            if end:
                q = q.filter(Event.ts < end)
            return q.order_by(Event.ts.desc()).offset(offset).limit(limit).all()
        finally:
            db.close()

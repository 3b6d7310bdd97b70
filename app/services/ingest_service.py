# app/services/ingest_service.py
"""
Ingestion of one upload: validate rows → normalise → batch insert.

Upload status moves PENDING → PROCESSING → COMPLETED | ERROR.
Bad rows are counted and logged, never fatal to the batch. Duplicate rows
(same dedup_key) are dropped silently by the Event Store, so re-running an
upload after a crash is safe.
"""

from datetime import datetime
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy import or_

from app.config import Settings, settings as default_settings
from app.exceptions import UploadCancelled
from app.models.event import DIRECTION_IN, DIRECTION_OUT, STATUS_ORPHAN_OPEN, Event
from app.models.upload import (
    UPLOAD_CANCELLED, UPLOAD_COMPLETED, UPLOAD_ERROR, UPLOAD_PENDING, UPLOAD_PROCESSING, Upload,
)
from app.schemas.event import EventIn
from app.schemas.upload import AbortResult, IngestResult, RowError
from app.services.event_store import EventStore, NormalizedEvent
from app.utils.logger import get_logger

logger = get_logger(__name__)


def _describe(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'row'}: {err['msg']}" for err in e.errors()
    )


class IngestService:
    def __init__(self, store: EventStore, config: Settings = default_settings):
        self.store = store
        self.batch_size = config.INGEST_BATCH_SIZE
        self.max_errors_reported = config.INGEST_MAX_ERRORS_REPORTED

    # ── Upload bookkeeping ───────────────────────────────────────────────

    def create_upload(self, upload_id: str) -> Upload:
        with self.store.session_scope() as db:
            upload = db.get(Upload, upload_id)
            if upload is None:
                upload = Upload(id=upload_id, status=UPLOAD_PENDING, created_at=datetime.utcnow())
                db.add(upload)
                db.flush()
            db.expunge(upload)
        return upload

    def get_upload(self, upload_id: str) -> Optional[Upload]:
        with self.store.session_scope() as db:
            upload = db.get(Upload, upload_id)
            if upload is not None:
                db.expunge(upload)
            return upload

    def _start(self, upload_id: str, claimed: int):
        with self.store.session_scope() as db:
            upload = db.get(Upload, upload_id)
            if upload is None:
                upload = Upload(id=upload_id, created_at=datetime.utcnow())
                db.add(upload)
            elif upload.status == UPLOAD_CANCELLED:
                raise UploadCancelled(upload_id)
            upload.status = UPLOAD_PROCESSING
            upload.rows_claimed = claimed
            upload.error_message = None

    def _finish(self, result: IngestResult):
        with self.store.session_scope() as db:
            upload = db.get(Upload, result.upload_id)
            if upload.status == UPLOAD_CANCELLED:
                return
            upload.status = UPLOAD_COMPLETED
            upload.rows_inserted = result.inserted
            upload.rows_duplicate = result.duplicates
            upload.rows_errored = result.errored
            upload.errors = [e.model_dump() for e in result.errors]
            upload.completed_at = datetime.utcnow()

    def mark_failed(self, upload_id: str, message: str):
        with self.store.session_scope() as db:
            upload = db.get(Upload, upload_id)
            if upload is not None and upload.status != UPLOAD_CANCELLED:
                upload.status = UPLOAD_ERROR
                upload.error_message = message[:500]
                upload.completed_at = datetime.utcnow()

    def _orphan_out_ids(self, upload_id: str, valid: list[NormalizedEvent]) -> list[int]:
        """
        Orphan OUTs worth a pair job: this upload's own, plus OUTs from earlier
        uploads whose plate matches an IN in this one (exit camera loaded first).
        """
        in_keys = {(evt.zone, evt.plate_norm) for evt in valid if evt.direction == DIRECTION_IN}
        match = Event.upload_id == upload_id
        if in_keys:
            match = or_(match, Event.plate_norm.in_(sorted({plate for _, plate in in_keys})))
        with self.store.session_scope() as db:
            rows = (
                db.query(Event.id, Event.zone, Event.plate_norm, Event.upload_id)
                .filter(
                    Event.direction == DIRECTION_OUT,
                    Event.status == STATUS_ORPHAN_OPEN,
                    match,
                )
                .order_by(Event.ts, Event.id)
                .all()
            )
            return [
                event_id for event_id, zone, plate, source in rows
                if source == upload_id or (zone, plate) in in_keys
            ]

    # ── Ingest ───────────────────────────────────────────────────────────

    def validate(self, upload_id: str, rows: list[dict]) -> tuple[list[NormalizedEvent], list[RowError]]:
        valid, errors = [], []
        for number, row in enumerate(rows, start=1):
            try:
                evt = EventIn.model_validate(row)
            except ValidationError as e:
                errors.append(RowError(row=number, reason=_describe(e)))
                continue
            valid.append(NormalizedEvent.from_input(evt, upload_id))
        return valid, errors

    def ingest(self, upload_id: str, rows: list[dict],
               should_stop: Optional[Callable[[], bool]] = None) -> IngestResult:
        """
        Ingest all rows for one upload. `should_stop` is polled between
        batches; when it returns True the ingest stops with UploadCancelled.
        """
        self._start(upload_id, len(rows))
        logger.info(f"[INGEST] Upload {upload_id}: {len(rows)} rows claimed")

        try:
            valid, errors = self.validate(upload_id, rows)
            for err in errors[:self.max_errors_reported]:
                logger.warning(f"[INGEST] Upload {upload_id} skipped row {err.row}: {err.reason}")

            inserted = duplicates = 0
            for start in range(0, len(valid), self.batch_size):
                if should_stop is not None and should_stop():
                    raise UploadCancelled(upload_id)
                batch = valid[start:start + self.batch_size]
                for res in self.store.insert_events(batch):
                    if res.inserted:
                        inserted += 1
                    else:
                        duplicates += 1
        except UploadCancelled:
            logger.warning(f"[INGEST] Upload {upload_id} cancelled mid-ingest")
            raise
        except Exception as e:
            logger.error(f"[INGEST] Upload {upload_id} failed: {e}", exc_info=True)
            self.mark_failed(upload_id, str(e))
            raise

        result = IngestResult(
            upload_id=upload_id,
            status=UPLOAD_COMPLETED,
            inserted=inserted,
            duplicates=duplicates,
            errored=len(errors),
            errors=errors[:self.max_errors_reported],
            out_event_ids=self._orphan_out_ids(upload_id, valid),
            zones=sorted({evt.zone for evt in valid}),
        )
        self._finish(result)
        logger.info(
            f"[INGEST] Upload {upload_id} done: inserted={inserted} "
            f"duplicates={duplicates} errored={len(errors)}"
        )
        return result

    def abort(self, upload_id: str) -> AbortResult:
        """
        Cancel an upload and remove its unresolved events. Events already
        PAIRED are kept, since deleting them would orphan a committed session.
        """
        with self.store.session_scope() as db:
            upload = db.get(Upload, upload_id)
            if upload is None:
                upload = Upload(id=upload_id, created_at=datetime.utcnow())
                db.add(upload)
            upload.status = UPLOAD_CANCELLED
            upload.completed_at = datetime.utcnow()

        deleted, retained = self.store.delete_upload_events(upload_id)
        if retained:
            logger.warning(f"[INGEST] Upload {upload_id} aborted; {retained} paired events retained")
        logger.info(f"[INGEST] Upload {upload_id} aborted; {deleted} events removed")
        return AbortResult(upload_id=upload_id, status=UPLOAD_CANCELLED,
                           deleted_events=deleted, retained_paired_events=retained)

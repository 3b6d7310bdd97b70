# app/services/orchestrator.py
"""
Job scheduler for the reconciliation pipeline.

Four job kinds, each with its own asyncio queue and worker pool:

  ingest       — INGEST_CONCURRENCY workers, one in flight per upload.
                 On completion enqueues a `pair` job per orphan OUT the upload
                 may have unblocked (its own OUTs, and earlier OUTs matching
                 one of its INs) and a delayed `fuzzy-sweep` per affected zone.
  pair         — PAIR_CONCURRENCY workers, PAIR_RATE_LIMIT per second.
                 Conflicts are resolved at the data layer (AlreadyPaired).
  fuzzy-sweep  — FUZZY_CONCURRENCY workers, one sweep in flight per zone,
                 FUZZY_RATE_LIMIT per second. A request for a zone that
                 already has a sweep waiting is folded into it.
  expire       — single flight process-wide; requests while one is waiting
                 are folded into it.

Job state: PENDING → PROCESSING → COMPLETED | ERROR (or CANCELLED for an
aborted upload). Transient failures go back to PENDING and are re-queued
with exponential backoff until JOB_MAX_ATTEMPTS; anything else fails the
job at once. Failed jobs are logged and kept for failed_jobs().

Store work is synchronous SQLAlchemy, so handlers run it in worker threads.
"""

import asyncio
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import DisconnectionError, OperationalError

from app.config import Settings, settings as default_settings
from app.exceptions import TransientStoreError, UploadCancelled
from app.schemas.upload import AbortResult
from app.services.expiry import ExpiryEngine
from app.services.fuzzy_matcher import FuzzyMatchingEngine
from app.services.ingest_service import IngestService
from app.services.pairing import ExactPairingEngine
from app.utils.csv_parser import parse_csv
from app.utils.logger import get_logger
from app.utils.rate_limiter import RateLimiter

logger = get_logger(__name__)

JOB_INGEST = "ingest"
JOB_PAIR = "pair"
JOB_FUZZY_SWEEP = "fuzzy-sweep"
JOB_EXPIRE = "expire"
JOB_KINDS = (JOB_INGEST, JOB_PAIR, JOB_FUZZY_SWEEP, JOB_EXPIRE)

STATE_PENDING = "PENDING"
STATE_PROCESSING = "PROCESSING"
STATE_COMPLETED = "COMPLETED"
STATE_ERROR = "ERROR"
STATE_CANCELLED = "CANCELLED"
TERMINAL_STATES = (STATE_COMPLETED, STATE_ERROR, STATE_CANCELLED)

TRANSIENT_ERRORS = (TransientStoreError, OperationalError, DisconnectionError, TimeoutError, ConnectionError)


@dataclass
class Job:
    kind: str
    payload: dict
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: str = STATE_PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    result: Any = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None


class Orchestrator:
    def __init__(self, ingest: IngestService, pairing: ExactPairingEngine,
                 fuzzy: FuzzyMatchingEngine, expiry: ExpiryEngine,
                 config: Settings = default_settings):
        self.ingest = ingest
        self.pairing = pairing
        self.fuzzy = fuzzy
        self.expiry = expiry
        self.config = config

        self._handlers = {
            JOB_INGEST: self._handle_ingest,
            JOB_PAIR: self._handle_pair,
            JOB_FUZZY_SWEEP: self._handle_fuzzy,
            JOB_EXPIRE: self._handle_expire,
        }
        self._concurrency = {
            JOB_INGEST: config.INGEST_CONCURRENCY,
            JOB_PAIR: config.PAIR_CONCURRENCY,
            JOB_FUZZY_SWEEP: config.FUZZY_CONCURRENCY,
            JOB_EXPIRE: 1,
        }
        self._queues: dict[str, asyncio.Queue] = {kind: asyncio.Queue() for kind in JOB_KINDS}
        self._pair_limiter = RateLimiter(config.PAIR_RATE_LIMIT, 1.0)
        self._fuzzy_limiter = RateLimiter(config.FUZZY_RATE_LIMIT, 1.0)

        self._jobs: dict[str, Job] = {}
        self._finished: deque = deque()
        self._pending_fuzzy: dict[str, Job] = {}
        self._pending_expire: Optional[Job] = None
        self._zone_locks: dict[str, list] = {}       # key -> [lock, holders]
        self._upload_locks: dict[str, list] = {}
        self._expiry_lock = asyncio.Lock()
        self._cancelled_uploads: set[str] = set()

        self._workers: list[asyncio.Task] = []
        self._timers: set[asyncio.Task] = set()
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self):
        if self._workers:
            return
        for kind in JOB_KINDS:
            for n in range(max(1, self._concurrency[kind])):
                self._workers.append(asyncio.create_task(self._worker(kind), name=f"{kind}-worker-{n}"))
        if self.config.EXPIRY_INTERVAL_SECONDS > 0:
            self._workers.append(asyncio.create_task(self._expiry_ticker(), name="expiry-ticker"))
        logger.info(
            f"[JOBS] Orchestrator started: ingest={self._concurrency[JOB_INGEST]} "
            f"pair={self._concurrency[JOB_PAIR]} fuzzy={self._concurrency[JOB_FUZZY_SWEEP]} expire=1"
        )

    async def stop(self):
        tasks = self._workers + list(self._timers)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._timers.clear()
        logger.info("[JOBS] Orchestrator stopped")

    async def join(self):
        """Wait until nothing is queued, running, retrying or delayed."""
        await self._idle.wait()

    # ── Submission ───────────────────────────────────────────────────────

    def enqueue(self, kind: str, payload: Optional[dict] = None, delay: float = 0.0) -> Job:
        payload = dict(payload or {})
        self._validate(kind, payload)

        if kind == JOB_FUZZY_SWEEP and payload["zone"] in self._pending_fuzzy:
            return self._pending_fuzzy[payload["zone"]]
        if kind == JOB_EXPIRE and self._pending_expire is not None:
            return self._pending_expire

        job = Job(kind=kind, payload=payload)
        self._jobs[job.id] = job
        if kind == JOB_FUZZY_SWEEP:
            self._pending_fuzzy[payload["zone"]] = job
        elif kind == JOB_EXPIRE:
            self._pending_expire = job

        self._outstanding += 1
        self._idle.clear()
        self._schedule(job, delay)
        logger.debug(f"[JOBS] Enqueued {kind} job {job.id} delay={delay}s")
        return job

    @staticmethod
    def _validate(kind: str, payload: dict):
        if kind not in JOB_KINDS:
            raise ValueError(f"unknown job kind {kind!r}; expected one of {JOB_KINDS}")
        if kind == JOB_PAIR and not isinstance(payload.get("out_id"), int):
            raise ValueError("pair job requires an integer out_id")
        if kind == JOB_FUZZY_SWEEP and not payload.get("zone"):
            raise ValueError("fuzzy-sweep job requires a zone")
        if kind == JOB_INGEST:
            if not payload.get("upload_id"):
                raise ValueError("ingest job requires an upload_id")
            if payload.get("rows") is None and payload.get("csv_data") is None:
                raise ValueError("ingest job requires rows or csv_data")

    def _schedule(self, job: Job, delay: float):
        if delay > 0:
            timer = asyncio.create_task(self._put_later(job, delay))
            self._timers.add(timer)
            timer.add_done_callback(self._timers.discard)
        else:
            self._queues[job.kind].put_nowait(job)

    async def _put_later(self, job: Job, delay: float):
        await asyncio.sleep(delay)
        self._queues[job.kind].put_nowait(job)

    # ── Queries ──────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_jobs(self, state: Optional[str] = None, kind: Optional[str] = None) -> list[Job]:
        return [
            j for j in self._jobs.values()
            if (state is None or j.state == state) and (kind is None or j.kind == kind)
        ]

    def failed_jobs(self) -> list[Job]:
        return self.list_jobs(state=STATE_ERROR)

    def clear_failed(self) -> int:
        failed = [j.id for j in self.failed_jobs()]
        for job_id in failed:
            del self._jobs[job_id]
        return len(failed)

    def stats(self) -> dict:
        return {
            "running": self.running,
            "outstanding": self._outstanding,
            "queued": {kind: q.qsize() for kind, q in self._queues.items()},
            "failed": len(self.failed_jobs()),
        }

    # ── Upload cancellation ──────────────────────────────────────────────

    async def abort_upload(self, upload_id: str) -> AbortResult:
        """
        Stop an upload: pending ingest jobs are dropped, an in-flight ingest
        stops at its next batch boundary, then its events are cleaned up.
        """
        self._cancelled_uploads.add(upload_id)
        for job in self.list_jobs(state=STATE_PENDING, kind=JOB_INGEST):
            if job.payload.get("upload_id") == upload_id:
                job.state = STATE_CANCELLED
        try:
            async with self._hold(self._upload_locks, upload_id):
                return await asyncio.to_thread(self.ingest.abort, upload_id)
        finally:
            # Later ingests are refused by the upload's CANCELLED status.
            self._cancelled_uploads.discard(upload_id)

    # ── Workers ──────────────────────────────────────────────────────────

    async def _worker(self, kind: str):
        queue = self._queues[kind]
        while True:
            job = await queue.get()
            try:
                finished = await self._run(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:    # never let one job kill the worker
                logger.error(f"[JOBS] Worker error on {job.kind} job {job.id}: {e}", exc_info=True)
                self._finish(job, STATE_ERROR, error=str(e))
                finished = True
            finally:
                queue.task_done()
            if finished:
                self._job_done()

    async def _run(self, job: Job) -> bool:
        """Run one attempt. Returns True when the job reached a terminal state."""
        if job.state == STATE_CANCELLED:
            self._finish(job, STATE_CANCELLED)
            return True

        if job.kind == JOB_FUZZY_SWEEP and self._pending_fuzzy.get(job.payload["zone"]) is job:
            del self._pending_fuzzy[job.payload["zone"]]
        if job.kind == JOB_EXPIRE and self._pending_expire is job:
            self._pending_expire = None

        job.attempts += 1
        job.state = STATE_PROCESSING
        try:
            job.result = await self._handlers[job.kind](job)
        except UploadCancelled:
            self._finish(job, STATE_CANCELLED)
            return True
        except TRANSIENT_ERRORS as e:
            job.last_error = f"{type(e).__name__}: {e}"
            if job.attempts < self.config.JOB_MAX_ATTEMPTS:
                delay = min(self.config.JOB_BACKOFF_SECONDS * 2 ** (job.attempts - 1),
                            self.config.JOB_BACKOFF_MAX_SECONDS)
                logger.warning(
                    f"[JOBS] {job.kind} job {job.id} attempt {job.attempts}/{self.config.JOB_MAX_ATTEMPTS} "
                    f"failed ({job.last_error}); retry in {delay}s"
                )
                job.state = STATE_PENDING
                self._schedule(job, delay)
                return False
            logger.error(f"[JOBS] {job.kind} job {job.id} gave up after {job.attempts} attempts: {job.last_error}")
            self._finish(job, STATE_ERROR)
            return True
        except Exception as e:
            logger.error(f"[JOBS] {job.kind} job {job.id} failed: {e}", exc_info=True)
            self._finish(job, STATE_ERROR, error=f"{type(e).__name__}: {e}")
            return True

        self._finish(job, STATE_COMPLETED)
        return True

    def _finish(self, job: Job, state: str, error: Optional[str] = None):
        job.state = state
        if error is not None:
            job.last_error = error
        job.finished_at = datetime.utcnow()
        if state != STATE_ERROR:
            self._finished.append(job.id)
            while len(self._finished) > self.config.JOB_HISTORY_LIMIT:
                self._jobs.pop(self._finished.popleft(), None)

    def _job_done(self):
        self._outstanding -= 1
        if self._outstanding == 0:
            self._idle.set()

    async def _expiry_ticker(self):
        while True:
            await asyncio.sleep(self.config.EXPIRY_INTERVAL_SECONDS)
            self.enqueue(JOB_EXPIRE)

    @asynccontextmanager
    async def _hold(self, locks: dict, key: str):
        """Hold the lock for `key`; the entry is dropped once nobody holds or waits on it."""
        entry = locks.get(key)
        if entry is None:
            entry = locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del locks[key]

    # ── Handlers ─────────────────────────────────────────────────────────

    async def _handle_ingest(self, job: Job) -> dict:
        upload_id = job.payload["upload_id"]
        async with self._hold(self._upload_locks, upload_id):
            if upload_id in self._cancelled_uploads:
                raise UploadCancelled(upload_id)
            rows = job.payload.get("rows")
            if rows is None:
                try:
                    rows = parse_csv(job.payload["csv_data"], job.payload.get("mapping"))
                except Exception as e:
                    await asyncio.to_thread(self.ingest.mark_failed, upload_id, f"CSV parse failed: {e}")
                    raise
            result = await asyncio.to_thread(
                self.ingest.ingest, upload_id, rows,
                lambda: upload_id in self._cancelled_uploads,
            )

        for out_id in result.out_event_ids:
            self.enqueue(JOB_PAIR, {"out_id": out_id})
        for zone in result.zones:
            self.enqueue(JOB_FUZZY_SWEEP, {"zone": zone}, delay=self.config.FUZZY_SWEEP_DELAY_SECONDS)
        return result.model_dump(exclude={"out_event_ids"})

    async def _handle_pair(self, job: Job) -> dict:
        await self._pair_limiter.acquire()
        outcome = await asyncio.to_thread(self.pairing.pair_out, job.payload["out_id"])
        return asdict(outcome)

    async def _handle_fuzzy(self, job: Job) -> dict:
        zone = job.payload["zone"]
        async with self._hold(self._zone_locks, zone):
            await self._fuzzy_limiter.acquire()
            report = await asyncio.to_thread(self.fuzzy.sweep, zone, job.payload.get("min_score"))
        return asdict(report)

    async def _handle_expire(self, job: Job) -> dict:
        async with self._expiry_lock:
            expired = await asyncio.to_thread(self.expiry.expire)
        return {"expired": expired, "total": sum(expired.values())}

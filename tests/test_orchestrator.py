# tests/test_orchestrator.py
"""Job orchestrator: retries, failure surfacing, single-flight, per-zone serialisation, sequencing."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import threading
import time
import pytest
from unittest.mock import MagicMock
from sqlalchemy.orm import sessionmaker
from app.database import build_engine, create_tables
from app.exceptions import TransientStoreError
from app.models.parking_session import ParkingSession
from app.schemas.upload import AbortResult, IngestResult
from app.services.fuzzy_matcher import SweepReport
from app.services.orchestrator import (
    JOB_EXPIRE, JOB_FUZZY_SWEEP, JOB_INGEST, JOB_PAIR, Orchestrator,
)
from app.pipeline import build_pipeline
from app.services.pairing import PairingOutcome


def make_orchestrator(config, ingest=None, pairing=None, fuzzy=None, expiry=None):
    ingest = ingest or MagicMock()
    pairing = pairing or MagicMock()
    pairing.pair_out.side_effect = pairing.pair_out.side_effect or (lambda out_id: PairingOutcome(out_id, "PAIRED"))
    fuzzy = fuzzy or MagicMock()
    fuzzy.sweep.side_effect = fuzzy.sweep.side_effect or (lambda zone, min_score=None: SweepReport(zone, 0.95))
    expiry = expiry or MagicMock()
    expiry.expire.return_value = {}
    return Orchestrator(ingest, pairing, fuzzy, expiry, config)


async def run_until_idle(orch, timeout=5.0):
    orch.start()
    try:
        await asyncio.wait_for(orch.join(), timeout)
    finally:
        await orch.stop()


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, config):
        pairing = MagicMock()
        pairing.pair_out.side_effect = [TransientStoreError("locked"), PairingOutcome(7, "PAIRED")]
        orch = make_orchestrator(config, pairing=pairing)

        job = orch.enqueue(JOB_PAIR, {"out_id": 7})
        await run_until_idle(orch)

        assert job.state == "COMPLETED"
        assert job.attempts == 2
        assert job.result["outcome"] == "PAIRED"

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_as_failed(self, config):
        pairing = MagicMock()
        pairing.pair_out.side_effect = TransientStoreError("store down")
        orch = make_orchestrator(config, pairing=pairing)

        job = orch.enqueue(JOB_PAIR, {"out_id": 7})
        await run_until_idle(orch)

        assert job.state == "ERROR"
        assert job.attempts == config.JOB_MAX_ATTEMPTS
        assert "store down" in job.last_error
        assert orch.failed_jobs() == [job]

    @pytest.mark.asyncio
    async def test_logic_error_fails_without_retry(self, config):
        fuzzy = MagicMock()
        fuzzy.sweep.side_effect = ValueError("corrupt candidate")
        orch = make_orchestrator(config, fuzzy=fuzzy)

        job = orch.enqueue(JOB_FUZZY_SWEEP, {"zone": "Z"})
        await run_until_idle(orch)

        assert job.state == "ERROR"
        assert job.attempts == 1
        assert orch.clear_failed() == 1
        assert orch.failed_jobs() == []


class TestSubmission:
    def test_rejects_bad_jobs(self, config):
        orch = make_orchestrator(config)
        with pytest.raises(ValueError):
            orch.enqueue("reindex", {})
        with pytest.raises(ValueError):
            orch.enqueue(JOB_PAIR, {"out_id": "seven"})
        with pytest.raises(ValueError):
            orch.enqueue(JOB_FUZZY_SWEEP, {})
        with pytest.raises(ValueError):
            orch.enqueue(JOB_INGEST, {"upload_id": "u1"})

    @pytest.mark.asyncio
    async def test_pending_sweeps_coalesce_per_zone(self, config):
        orch = make_orchestrator(config)
        a1 = orch.enqueue(JOB_FUZZY_SWEEP, {"zone": "A"})
        a2 = orch.enqueue(JOB_FUZZY_SWEEP, {"zone": "A"})
        b = orch.enqueue(JOB_FUZZY_SWEEP, {"zone": "B"})
        assert a1 is a2
        assert b is not a1
        await run_until_idle(orch)
        assert orch.fuzzy.sweep.call_count == 2

    @pytest.mark.asyncio
    async def test_expire_is_single_flight(self, config):
        orch = make_orchestrator(config)
        first = orch.enqueue(JOB_EXPIRE)
        assert orch.enqueue(JOB_EXPIRE) is first
        await run_until_idle(orch)
        assert orch.expiry.expire.call_count == 1
        assert first.result == {"expired": {}, "total": 0}


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_sweeps_for_one_zone_never_overlap(self, config):
        active, peak = {}, {}
        guard = threading.Lock()

        def slow_sweep(zone, min_score=None):
            with guard:
                active[zone] = active.get(zone, 0) + 1
                peak[zone] = max(peak.get(zone, 0), active[zone])
            time.sleep(0.05)
            with guard:
                active[zone] -= 1
            return SweepReport(zone, 0.95)

        fuzzy = MagicMock()
        fuzzy.sweep.side_effect = slow_sweep
        orch = make_orchestrator(config, fuzzy=fuzzy)
        orch.start()
        try:
            orch.enqueue(JOB_FUZZY_SWEEP, {"zone": "A"})
            await asyncio.sleep(0.01)                      # first sweep is running now
            orch.enqueue(JOB_FUZZY_SWEEP, {"zone": "A"})
            orch.enqueue(JOB_FUZZY_SWEEP, {"zone": "B"})
            await asyncio.wait_for(orch.join(), 5)
        finally:
            await orch.stop()

        assert fuzzy.sweep.call_count == 3
        assert peak["A"] == 1

    @pytest.mark.asyncio
    async def test_ingest_fans_out_pairing_and_sweeps(self, config):
        ingest = MagicMock()
        ingest.ingest.return_value = IngestResult(upload_id="u1", status="COMPLETED", inserted=3,
                                                  out_event_ids=[11, 12], zones=["Z"])
        orch = make_orchestrator(config, ingest=ingest)

        job = orch.enqueue(JOB_INGEST, {"upload_id": "u1", "rows": [{"any": "row"}]})
        await run_until_idle(orch)

        assert job.state == "COMPLETED"
        assert job.result["inserted"] == 3
        paired = sorted(call.args[0] for call in orch.pairing.pair_out.call_args_list)
        assert paired == [11, 12]
        orch.fuzzy.sweep.assert_called_once_with("Z", None)

    @pytest.mark.asyncio
    async def test_ingest_parses_csv_payload(self, config):
        ingest = MagicMock()
        ingest.ingest.return_value = IngestResult(upload_id="u1", status="COMPLETED")
        orch = make_orchestrator(config, ingest=ingest)

        orch.enqueue(JOB_INGEST, {"upload_id": "u1", "csv_data": "plate,zone\nABC123,Z\n"})
        await run_until_idle(orch)

        rows = ingest.ingest.call_args.args[1]
        assert rows == [{"plate_raw": "ABC123", "zone": "Z"}]


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_cancels_pending_ingest(self, config):
        ingest = MagicMock()
        ingest.abort.return_value = AbortResult(upload_id="u1", status="CANCELLED",
                                                deleted_events=0, retained_paired_events=0)
        orch = make_orchestrator(config, ingest=ingest)
        job = orch.enqueue(JOB_INGEST, {"upload_id": "u1", "rows": []})

        result = await orch.abort_upload("u1")
        await run_until_idle(orch)

        assert result.status == "CANCELLED"
        assert job.state == "CANCELLED"
        ingest.ingest.assert_not_called()
        ingest.abort.assert_called_once_with("u1")


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_upload_to_sessions(self, config, tmp_path):
        config.FUZZY_SWEEP_DELAY_SECONDS = 0.5
        engine = build_engine(f"sqlite:///{tmp_path / 'e2e.db'}")
        create_tables(bind=engine)
        pipeline = build_pipeline(sessionmaker(bind=engine), config)
        rows = [
            {"ts": "2025-03-10T10:00:00Z", "zone": "Z", "direction": "IN", "plate_raw": "ABC123", "state_raw": "CA"},
            {"ts": "2025-03-10T11:00:00Z", "zone": "Z", "direction": "OUT", "plate_raw": "ABC123", "state_raw": "CA"},
            {"ts": "2025-03-10T10:00:00Z", "zone": "Z", "direction": "IN", "plate_raw": "AB0123", "state_raw": "CA"},
            {"ts": "2025-03-10T12:00:00Z", "zone": "Z", "direction": "OUT", "plate_raw": "ABO123", "state_raw": "CA"},
            {"ts": "garbage", "zone": "Z", "direction": "IN", "plate_raw": "ZZZ999"},
        ]

        job = pipeline.orchestrator.enqueue(JOB_INGEST, {"upload_id": "u1", "rows": rows})
        await run_until_idle(pipeline.orchestrator, timeout=15)

        assert job.state == "COMPLETED"
        assert job.result["errored"] == 1
        db = sessionmaker(bind=engine)()
        try:
            match_types = sorted(s.match_type for s in db.query(ParkingSession).all())
        finally:
            db.close()
        engine.dispose()
        assert match_types == ["EXACT", "FUZZY_ACCEPTED"]

    @pytest.mark.asyncio
    async def test_entry_upload_after_exit_upload_pairs_exactly(self, config, tmp_path):
        config.FUZZY_SWEEP_DELAY_SECONDS = 0.5
        engine = build_engine(f"sqlite:///{tmp_path / 'order.db'}")
        create_tables(bind=engine)
        pipeline = build_pipeline(sessionmaker(bind=engine), config)
        orch = pipeline.orchestrator
        exit_row = {"ts": "2025-03-10T11:00:00Z", "zone": "Z", "direction": "OUT",
                    "plate_raw": "ABC123", "state_raw": "NY"}
        entry_row = {"ts": "2025-03-10T10:00:00Z", "zone": "Z", "direction": "IN",
                     "plate_raw": "ABC123", "state_raw": "CA"}

        orch.start()
        try:
            orch.enqueue(JOB_INGEST, {"upload_id": "exit-cam", "rows": [exit_row]})
            await asyncio.wait_for(orch.join(), 15)
            assert [j.result["outcome"] for j in orch.list_jobs(kind=JOB_PAIR)] == ["NO_CANDIDATE"]

            orch.enqueue(JOB_INGEST, {"upload_id": "entry-cam", "rows": [entry_row]})
            await asyncio.wait_for(orch.join(), 15)
        finally:
            await orch.stop()

        assert sorted(j.result["outcome"] for j in orch.list_jobs(kind=JOB_PAIR)) == ["NO_CANDIDATE", "PAIRED"]
        db = sessionmaker(bind=engine)()
        try:
            sessions = [(s.match_type, s.confidence_score, s.flags) for s in db.query(ParkingSession).all()]
        finally:
            db.close()
        engine.dispose()
        assert sessions == [("STATE_MISMATCH", 1.0, [])]


class TestUploadBookkeeping:
    @pytest.mark.asyncio
    async def test_unparseable_csv_marks_upload_failed(self, config, ingest):
        ingest.create_upload("u1")
        orch = make_orchestrator(config, ingest=ingest)
        oversized = "plate,zone\n" + "A" * 200_000 + ",Z\n"     # beyond csv.field_size_limit()

        job = orch.enqueue(JOB_INGEST, {"upload_id": "u1", "csv_data": oversized})
        await run_until_idle(orch)

        assert job.state == "ERROR"
        upload = ingest.get_upload("u1")
        assert upload.status == "ERROR"
        assert "CSV parse failed" in upload.error_message

    @pytest.mark.asyncio
    async def test_locks_and_cancel_marks_released(self, config):
        ingest = MagicMock()
        ingest.ingest.return_value = IngestResult(upload_id="u1", status="COMPLETED", zones=["Z"])
        ingest.abort.return_value = AbortResult(upload_id="u2", status="CANCELLED",
                                                deleted_events=0, retained_paired_events=0)
        orch = make_orchestrator(config, ingest=ingest)

        orch.enqueue(JOB_INGEST, {"upload_id": "u1", "rows": []})
        await run_until_idle(orch)
        await orch.abort_upload("u2")

        assert orch.fuzzy.sweep.call_count == 1
        assert orch._upload_locks == {}
        assert orch._zone_locks == {}
        assert orch._cancelled_uploads == set()

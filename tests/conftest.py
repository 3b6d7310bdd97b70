# tests/conftest.py
"""Shared fixtures: an isolated SQLite database per test plus the services built on it."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Must be set before anything under app/ is imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["LOG_TO_FILE"] = "false"
os.environ["API_KEY"] = ""

import pytest
from datetime import datetime
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.database import build_engine, create_tables
from app.models.event import Event
from app.models.parking_session import ParkingSession
from app.schemas.event import EventIn
from app.schemas.zone_config import ZoneConfigUpdate
from app.services.event_store import EventStore, NormalizedEvent
from app.services.expiry import ExpiryEngine
from app.services.fuzzy_matcher import FuzzyMatchingEngine
from app.services.ingest_service import IngestService
from app.services.pairing import ExactPairingEngine
from app.services.zone_config import ZoneConfigProvider

ZONE = "Z"


@pytest.fixture
def config():
    return Settings(_env_file=None, DATABASE_URL="sqlite://", LOG_TO_FILE=False,
                    INGEST_BATCH_SIZE=50, FUZZY_SWEEP_DELAY_SECONDS=0.0,
                    JOB_BACKOFF_SECONDS=0.01, JOB_BACKOFF_MAX_SECONDS=0.05,
                    PAIR_RATE_LIMIT=0, FUZZY_RATE_LIMIT=0)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    create_tables(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return EventStore(session_factory)


@pytest.fixture
def zones(session_factory, config):
    return ZoneConfigProvider(session_factory, config)


@pytest.fixture
def pairing(store, zones):
    return ExactPairingEngine(store, zones)


@pytest.fixture
def fuzzy(store, zones, config):
    return FuzzyMatchingEngine(store, zones, config=config)


@pytest.fixture
def expiry(store, zones):
    return ExpiryEngine(store, zones)


@pytest.fixture
def ingest(store, config):
    return IngestService(store, config)


@pytest.fixture
def add_event(store):
    """Insert one event and return its id. ts accepts 'HH:MM' on 2025-03-10 or a datetime."""
    def _add(direction, plate, ts, zone=ZONE, state="CA", camera="cam-1", upload_id=None):
        if isinstance(ts, str):
            hour, minute = (int(p) for p in ts.split(":"))
            ts = datetime(2025, 3, 10, hour, minute)
        evt = EventIn(ts=ts, zone=zone, direction=direction, plate_raw=plate,
                      state_raw=state, camera_id=camera)
        result = store.insert_event(NormalizedEvent.from_input(evt, upload_id))
        assert result.inserted
        return result.id
    return _add


@pytest.fixture
def set_zone(zones):
    def _set(zone_id=ZONE, **fields):
        return zones.upsert(zone_id, ZoneConfigUpdate(**fields))
    return _set


@pytest.fixture
def all_sessions(session_factory):
    def _all():
        db = session_factory()
        try:
            return db.query(ParkingSession).order_by(ParkingSession.id).all()
        finally:
            db.close()
    return _all


@pytest.fixture
def all_events(session_factory):
    def _all():
        db = session_factory()
        try:
            return db.query(Event).order_by(Event.id).all()
        finally:
            db.close()
    return _all

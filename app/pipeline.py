# app/pipeline.py
"""
Wires the store, engines and orchestrator together around one session factory.
The FastAPI app keeps a single Pipeline on app.state; routers reach it via get_pipeline().
"""

from dataclasses import dataclass

from fastapi import Request

from app.config import Settings, settings as default_settings
from app.services.event_store import EventStore
from app.services.expiry import ExpiryEngine
from app.services.fuzzy_matcher import FuzzyMatchingEngine
from app.services.ingest_service import IngestService
from app.services.orchestrator import Orchestrator
from app.services.pairing import ExactPairingEngine
from app.services.zone_config import ZoneConfigProvider


@dataclass
class Pipeline:
    store: EventStore
    zones: ZoneConfigProvider
    ingest: IngestService
    pairing: ExactPairingEngine
    fuzzy: FuzzyMatchingEngine
    expiry: ExpiryEngine
    orchestrator: Orchestrator


def build_pipeline(session_factory, config: Settings = default_settings) -> Pipeline:
    store = EventStore(session_factory)
    zones = ZoneConfigProvider(session_factory, config)
    ingest = IngestService(store, config)
    pairing = ExactPairingEngine(store, zones)
    fuzzy = FuzzyMatchingEngine(store, zones, config=config, exact=pairing)
    expiry = ExpiryEngine(store, zones)
    orchestrator = Orchestrator(ingest, pairing, fuzzy, expiry, config)
    return Pipeline(store, zones, ingest, pairing, fuzzy, expiry, orchestrator)


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline

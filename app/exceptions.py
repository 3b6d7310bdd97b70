# app/exceptions.py
"""
Error taxonomy for the reconciliation pipeline.

  validation  → pydantic ValidationError on EventIn (row skipped, batch continues)
  conflict    → AlreadyPaired        (benign, expected under concurrency)
  transient   → TransientStoreError  (retried with backoff by the orchestrator)
  fatal       → ZoneConfigError, InvalidPairing (job aborted, no partial writes)
  cancelled   → UploadCancelled      (ingest stops at the next batch boundary)
"""


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class AlreadyPaired(PipelineError):
    """The event is no longer OPEN/ORPHAN_OPEN; another pairing got there first."""

    def __init__(self, event_id: int):
        super().__init__(f"event {event_id} is already resolved")
        self.event_id = event_id


class TransientStoreError(PipelineError):
    """Store temporarily unavailable. Safe to retry."""


class ZoneConfigError(PipelineError):
    def __init__(self, zone_id: str, reason: str):
        super().__init__(f"invalid config for zone {zone_id!r}: {reason}")
        self.zone_id = zone_id


class InvalidPairing(PipelineError):
    """A candidate pair violates a session invariant (e.g. exit before entry)."""


class UploadCancelled(PipelineError):
    def __init__(self, upload_id: str):
        super().__init__(f"upload {upload_id} was cancelled")
        self.upload_id = upload_id

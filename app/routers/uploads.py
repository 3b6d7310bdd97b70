# app/routers/uploads.py
"""
Upload lifecycle endpoints.
POST /uploads/{id}/ingest — queue an ingest job for an upload (rows or CSV text).
POST /uploads/{id}/abort  — cancel an upload and drop its unresolved events.
GET  /uploads/{id}        — upload status and row counts.
"""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, status

from app.models.upload import UPLOAD_CANCELLED
from app.pipeline import Pipeline, get_pipeline
from app.schemas.job import JobOut
from app.schemas.upload import AbortResult, IngestRequest, UploadOut
from app.services.orchestrator import JOB_INGEST
from app.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.post("/uploads/{upload_id}/ingest", response_model=JobOut,
             status_code=status.HTTP_202_ACCEPTED, summary="Queue an upload for ingestion")
async def ingest_upload(upload_id: str, body: IngestRequest, pipeline: Pipeline = Depends(get_pipeline)):
    upload = await asyncio.to_thread(pipeline.ingest.create_upload, upload_id)
    if upload.status == UPLOAD_CANCELLED:
        raise HTTPException(status_code=409, detail=f"Upload {upload_id} was cancelled")
    payload = {"upload_id": upload_id, "mapping": body.mapping}
    if body.rows is not None:
        payload["rows"] = body.rows
    else:
        payload["csv_data"] = body.csv_data
    job = pipeline.orchestrator.enqueue(JOB_INGEST, payload)
    logger.info(f"[API] Upload {upload_id} queued as job {job.id}")
    return job


@router.post("/uploads/{upload_id}/abort", response_model=AbortResult, summary="Cancel an upload")
async def abort_upload(upload_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    return await pipeline.orchestrator.abort_upload(upload_id)


@router.get("/uploads/{upload_id}", response_model=UploadOut, summary="Upload status")
def get_upload(upload_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    upload = pipeline.ingest.get_upload(upload_id)
    if not upload:
        raise HTTPException(status_code=404, detail="Upload not found")
    return upload

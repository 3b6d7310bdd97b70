# app/routers/jobs.py
"""Job submission and inspection. Failed jobs stay listed until cleared."""

from fastapi import APIRouter, Depends, HTTPException, status

from app.pipeline import Pipeline, get_pipeline
from app.schemas.job import JobOut, JobSubmit

router = APIRouter()


@router.post("/jobs", response_model=JobOut, status_code=status.HTTP_202_ACCEPTED, summary="Submit a job")
async def submit_job(body: JobSubmit, pipeline: Pipeline = Depends(get_pipeline)):
    """kind is one of ingest | pair | fuzzy-sweep | expire."""
    try:
        return pipeline.orchestrator.enqueue(body.kind, body.payload, delay=body.delay_seconds)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/jobs", response_model=list[JobOut], summary="List jobs")
async def list_jobs(state: str = None, kind: str = None, pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.orchestrator.list_jobs(state=state, kind=kind)


@router.delete("/jobs/failed", summary="Forget failed jobs")
async def clear_failed_jobs(pipeline: Pipeline = Depends(get_pipeline)):
    return {"cleared": pipeline.orchestrator.clear_failed()}


@router.get("/jobs/{job_id}", response_model=JobOut, summary="Job status")
async def get_job(job_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    job = pipeline.orchestrator.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

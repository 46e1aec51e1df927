"""
Single-image analysis jobs
"""
from fastapi import APIRouter, Depends

from ..logger import logger
from ..models import Job
from ..pipeline.orchestrator import StageOrchestrator
from ..pipeline.registry import get_pipeline
from ..pipeline.stages import JobKind
from ..schemas import CreateJobRequest, EventListResponse, EventResponse, JobResponse

router = APIRouter(prefix="/jobs", tags=["Jobs"])


def job_response(job: Job) -> JobResponse:
    return JobResponse(
        id=job.id,
        subjectId=job.subject_id,
        status=job.status,
        currentStage=job.current_stage,
        progress=job.progress or 0,
        attempt=job.attempt or 1,
        error=job.error,
        resultId=job.result_id,
        qualityScore=job.quality_score,
        isPartialResult=job.is_partial_result,
        createdAt=job.created_at,
        updatedAt=job.updated_at,
        completedAt=job.completed_at,
    )


def event_response(event) -> EventResponse:
    return EventResponse(
        id=event.id,
        eventName=event.event_name,
        stage=event.stage,
        status=event.status,
        progress=event.progress or 0,
        attempt=event.attempt or 1,
        message=event.message,
        metadata=event.event_metadata or {},
        startedAt=event.started_at,
        endedAt=event.ended_at,
        durationMs=event.duration_ms,
        createdAt=event.created_at,
    )


@router.post("", response_model=JobResponse, status_code=202)
async def create_job(payload: CreateJobRequest, pipeline: StageOrchestrator = Depends(get_pipeline)):
    """Create a single-image analysis job and start its first stage"""
    job = await pipeline.create_job(
        subject_id=payload.subjectId,
        subject_url=payload.subjectUrl,
        user_context=payload.userContext,
    )
    logger.info(f"Analysis job accepted: {job.id}", extra={"job_id": job.id})
    return job_response(job)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, pipeline: StageOrchestrator = Depends(get_pipeline)):
    return job_response(await pipeline.get_job(JobKind.SINGLE, job_id))


@router.get("/{job_id}/events", response_model=EventListResponse)
async def list_job_events(job_id: str, pipeline: StageOrchestrator = Depends(get_pipeline)):
    """Progress trail of a job in insertion order"""
    events = await pipeline.list_events(JobKind.SINGLE, job_id)
    return EventListResponse(jobId=job_id, events=[event_response(e) for e in events])


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str, pipeline: StageOrchestrator = Depends(get_pipeline)):
    return job_response(await pipeline.cancel(JobKind.SINGLE, job_id))


@router.post("/{job_id}/retry", response_model=JobResponse, status_code=202)
async def retry_job(job_id: str, pipeline: StageOrchestrator = Depends(get_pipeline)):
    """Re-run a failed job from the stage it failed in"""
    return job_response(await pipeline.retry_job(JobKind.SINGLE, job_id))

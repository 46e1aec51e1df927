"""
Group (multi-image) analysis jobs and prompt sessions
"""
from fastapi import APIRouter, Depends

from ..models import GroupJob
from ..pipeline.orchestrator import StageOrchestrator
from ..pipeline.registry import get_pipeline
from ..pipeline.stages import JobKind
from ..schemas import (
    CreateGroupJobRequest,
    EventListResponse,
    ForkSessionRequest,
    ForkSessionResponse,
    GroupJobResponse,
)
from .jobs import event_response

router = APIRouter(tags=["Group jobs"])


def group_job_response(job: GroupJob) -> GroupJobResponse:
    return GroupJobResponse(
        id=job.id,
        groupId=job.group_id,
        sessionId=job.session_id,
        subjectIds=list(job.subject_ids or []),
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


@router.post("/group-jobs", response_model=GroupJobResponse, status_code=202)
async def create_group_job(payload: CreateGroupJobRequest, pipeline: StageOrchestrator = Depends(get_pipeline)):
    job = await pipeline.create_group_job(
        group_id=payload.groupId,
        subject_ids=payload.subjectIds,
        subject_urls=payload.subjectUrls,
        group_context=payload.groupContext,
        prompt=payload.prompt,
        session_id=payload.sessionId,
    )
    return group_job_response(job)


@router.get("/group-jobs/{job_id}", response_model=GroupJobResponse)
async def get_group_job(job_id: str, pipeline: StageOrchestrator = Depends(get_pipeline)):
    return group_job_response(await pipeline.get_job(JobKind.GROUP, job_id))


@router.get("/group-jobs/{job_id}/events", response_model=EventListResponse)
async def list_group_job_events(job_id: str, pipeline: StageOrchestrator = Depends(get_pipeline)):
    events = await pipeline.list_events(JobKind.GROUP, job_id)
    return EventListResponse(jobId=job_id, events=[event_response(e) for e in events])


@router.post("/group-jobs/{job_id}/cancel", response_model=GroupJobResponse)
async def cancel_group_job(job_id: str, pipeline: StageOrchestrator = Depends(get_pipeline)):
    return group_job_response(await pipeline.cancel(JobKind.GROUP, job_id))


@router.post("/sessions/{session_id}/fork", response_model=ForkSessionResponse, status_code=202)
async def fork_session(
    session_id: str,
    payload: ForkSessionRequest,
    pipeline: StageOrchestrator = Depends(get_pipeline),
):
    """Branch a group session with a new prompt and analyze it as a new group job"""
    job = await pipeline.fork_and_run(session_id, payload.prompt, group_context=payload.groupContext)
    return ForkSessionResponse(
        sessionId=job.session_id,
        parentSessionId=session_id,
        groupJob=group_job_response(job),
    )

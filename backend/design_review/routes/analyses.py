"""
Stored analysis versions and internal stage endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends

from ..pipeline.orchestrator import StageOrchestrator
from ..pipeline.registry import get_pipeline
from ..pipeline.stages import JobKind, Stage
from ..schemas import AnalysisHistoryResponse, AnalysisVersion, StageRunResponse

router = APIRouter(tags=["Analyses"])


@router.get("/subjects/{subject_id}/analyses", response_model=AnalysisHistoryResponse)
async def list_analyses(
    subject_id: str,
    analysis_type: Optional[str] = None,
    pipeline: StageOrchestrator = Depends(get_pipeline),
):
    """All stored versions for a subject, newest first"""
    rows = await pipeline.history(subject_id, analysis_type)
    return AnalysisHistoryResponse(
        subjectId=subject_id,
        analyses=[
            AnalysisVersion(
                id=row.id,
                subjectId=row.subject_id,
                analysisType=row.analysis_type,
                version=row.version,
                status=row.status,
                qualityScore=row.quality_score,
                isPartialResult=row.is_partial_result,
                summary=row.summary or {},
                createdAt=row.created_at,
            )
            for row in rows
        ],
    )


@router.post("/internal/{kind}/{job_id}/stages/{stage}", response_model=StageRunResponse)
async def run_stage(
    kind: JobKind,
    job_id: str,
    stage: Stage,
    pipeline: StageOrchestrator = Depends(get_pipeline),
):
    """Run one stage synchronously; repeated calls for a finished stage are no-ops"""
    outcome = await pipeline.run_stage(kind, job_id, stage)
    return StageRunResponse(jobId=job_id, stage=stage.value, outcome=outcome)

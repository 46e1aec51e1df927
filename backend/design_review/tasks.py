import asyncio
import traceback

from .db import TaskSessionLocal
from .logger import logger
from .pipeline.registry import build_pipeline
from .pipeline.stages import JobKind, Stage
from .workers import celery_app


@celery_app.task(bind=True, acks_late=True)
def run_stage_task(self, kind: str, job_id: str, stage: str):
    """
    Run one pipeline stage for one job.

    Stage failures are recorded on the job by the orchestrator and end the
    task normally; only unexpected errors propagate to Celery.
    """
    async def _run():
        logger.info(f"Running {stage} stage", extra={"job_kind": kind, "job_id": job_id, "stage": stage})
        orchestrator = build_pipeline(session_factory=TaskSessionLocal)
        try:
            return await orchestrator.run_stage(JobKind(kind), job_id, Stage(stage))
        except Exception as e:
            logger.error(
                f"Stage task crashed for job {job_id}: {e}",
                extra={
                    "job_kind": kind,
                    "job_id": job_id,
                    "stage": stage,
                    "traceback": traceback.format_exc(),
                },
            )
            raise

    return asyncio.run(_run())


@celery_app.task(bind=True, acks_late=True)
def resume_abandoned_task(self, stale_after_seconds: int = None):
    async def _run():
        orchestrator = build_pipeline(session_factory=TaskSessionLocal)
        resumed = await orchestrator.resume_abandoned(stale_after_seconds)
        logger.info("Resume sweep finished", extra={"resumed": len(resumed)})
        return len(resumed)

    return asyncio.run(_run())


@celery_app.task(bind=True, acks_late=True)
def purge_events_task(self, retention_days: int = None):
    async def _run():
        orchestrator = build_pipeline(session_factory=TaskSessionLocal)
        return await orchestrator.purge_events(retention_days)

    return asyncio.run(_run())

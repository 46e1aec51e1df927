from celery import Celery
from celery.schedules import crontab

from .config import settings

PIPELINE_TASKS = (
    "design_review.tasks.run_stage_task",
    "design_review.tasks.resume_abandoned_task",
    "design_review.tasks.purge_events_task",
)


def _route_task(name, args, kwargs, options, task=None):
    """
    Route pipeline tasks to the pipeline queue.

    Call sites pass `queue=` explicitly; this keeps `.delay(...)` and beat
    deliveries on the same queue.
    """
    if name in PIPELINE_TASKS:
        return {"queue": settings.PIPELINE_QUEUE}
    return None


celery_app = Celery(
    "design_review",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["design_review.tasks"]
)

celery_app.conf.update(
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_transport_options={"visibility_timeout": 3600},
    task_routes=(_route_task,),
    beat_schedule={
        "purge-analysis-events": {
            "task": "design_review.tasks.purge_events_task",
            "schedule": crontab(hour=3, minute=0),
        },
        "resume-abandoned-jobs": {
            "task": "design_review.tasks.resume_abandoned_task",
            "schedule": 300.0,
        },
    },
)

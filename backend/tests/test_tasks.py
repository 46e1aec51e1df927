from design_review import tasks
from design_review.config import settings
from design_review.pipeline.dispatch import CeleryStageDispatcher
from design_review.pipeline.stages import JobKind, Stage
from design_review.workers import _route_task, celery_app


class RecordingPipeline:
    def __init__(self):
        self.calls = []

    async def run_stage(self, kind, job_id, stage):
        self.calls.append(("run_stage", kind, job_id, stage))
        return "completed"

    async def resume_abandoned(self, stale_after_seconds=None):
        self.calls.append(("resume_abandoned", stale_after_seconds))
        return [(JobKind.SINGLE, "job-1", Stage.VISION)]

    async def purge_events(self, retention_days=None):
        self.calls.append(("purge_events", retention_days))
        return 4


def _patch_pipeline(monkeypatch):
    pipeline = RecordingPipeline()
    monkeypatch.setattr(tasks, "build_pipeline", lambda **kwargs: pipeline)
    return pipeline


def test_pipeline_tasks_are_routed_to_pipeline_queue():
    assert _route_task("design_review.tasks.run_stage_task", (), {}, {}) == {"queue": settings.PIPELINE_QUEUE}
    assert _route_task("celery.backend_cleanup", (), {}, {}) is None


def test_beat_schedule_has_purge_and_resume():
    schedule = celery_app.conf.beat_schedule
    assert schedule["purge-analysis-events"]["task"] == "design_review.tasks.purge_events_task"
    assert schedule["resume-abandoned-jobs"]["schedule"] == 300.0


def test_run_stage_task_converts_arguments(monkeypatch):
    pipeline = _patch_pipeline(monkeypatch)

    assert tasks.run_stage_task("group", "job-9", "ai") == "completed"
    assert pipeline.calls == [("run_stage", JobKind.GROUP, "job-9", Stage.AI)]


def test_maintenance_tasks(monkeypatch):
    pipeline = _patch_pipeline(monkeypatch)

    assert tasks.resume_abandoned_task(120) == 1
    assert tasks.purge_events_task() == 4
    assert pipeline.calls == [("resume_abandoned", 120), ("purge_events", None)]


def test_celery_dispatcher_enqueues_stage(monkeypatch):
    sent = []
    monkeypatch.setattr(tasks.run_stage_task, "apply_async", lambda **kwargs: sent.append(kwargs))

    CeleryStageDispatcher("pipeline-test").dispatch(JobKind.SINGLE, "job-1", Stage.SYNTHESIS)

    assert sent == [{"args": ("single", "job-1", "synthesis"), "queue": "pipeline-test"}]

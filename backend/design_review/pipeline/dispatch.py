from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING, Deque, List, Tuple

from ..config import settings
from ..logger import logger
from .stages import JobKind, Stage

if TYPE_CHECKING:
    from .orchestrator import StageOrchestrator


class StageDispatcher:
    """Hands a (kind, job, stage) triple to whatever runs stage handlers."""

    def dispatch(self, kind: JobKind, job_id: str, stage: Stage) -> None:
        raise NotImplementedError


class CeleryStageDispatcher(StageDispatcher):
    def __init__(self, queue: str | None = None):
        self.queue = queue or settings.PIPELINE_QUEUE

    def dispatch(self, kind: JobKind, job_id: str, stage: Stage) -> None:
        from ..tasks import run_stage_task

        run_stage_task.apply_async(
            args=(JobKind(kind).value, job_id, Stage(stage).value),
            queue=self.queue,
        )
        logger.info(
            "Dispatched stage",
            extra={"job_kind": JobKind(kind).value, "job_id": job_id, "stage": Stage(stage).value, "queue": self.queue},
        )


class LocalQueueDispatcher(StageDispatcher):
    """In-process FIFO of pending stage runs, drained explicitly by the caller."""

    def __init__(self):
        self.pending: Deque[Tuple[JobKind, str, Stage]] = deque()
        self.history: List[Tuple[JobKind, str, Stage]] = []

    def dispatch(self, kind: JobKind, job_id: str, stage: Stage) -> None:
        item = (JobKind(kind), job_id, Stage(stage))
        self.pending.append(item)
        self.history.append(item)

    async def drain(self, orchestrator: "StageOrchestrator", limit: int = 100) -> int:
        ran = 0
        while self.pending and ran < limit:
            kind, job_id, stage = self.pending.popleft()
            await orchestrator.run_stage(kind, job_id, stage)
            ran += 1
        return ran

from enum import Enum
from typing import Dict, Optional, Tuple


class JobKind(str, Enum):
    SINGLE = "single"
    GROUP = "group"


class Stage(str, Enum):
    CONTEXT = "context"
    VISION = "vision"
    AI = "ai"
    SYNTHESIS = "synthesis"


class Phase(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


STAGE_ORDER: Tuple[Stage, ...] = (Stage.CONTEXT, Stage.VISION, Stage.AI, Stage.SYNTHESIS)

# (floor on entry, floor on completion)
STAGE_PROGRESS: Dict[Stage, Tuple[int, int]] = {
    Stage.CONTEXT: (5, 20),
    Stage.VISION: (25, 55),
    Stage.AI: (60, 85),
    Stage.SYNTHESIS: (85, 100),
}

DOMAINS: Dict[JobKind, str] = {
    JobKind.SINGLE: "analysis",
    JobKind.GROUP: "group-analysis",
}

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)
COMPLETED_STAGE = "completed"


def next_stage(stage: Stage) -> Optional[Stage]:
    idx = STAGE_ORDER.index(stage)
    if idx + 1 < len(STAGE_ORDER):
        return STAGE_ORDER[idx + 1]
    return None


def event_name(kind: JobKind, stage: Stage, phase: Phase) -> str:
    """e.g. ``analysis/vision.started`` or ``group-analysis/ai.failed``"""
    return f"{DOMAINS[JobKind(kind)]}/{Stage(stage).value}.{Phase(phase).value}"


def start_floor(stage: Stage) -> int:
    return STAGE_PROGRESS[Stage(stage)][0]


def end_floor(stage: Stage) -> int:
    return STAGE_PROGRESS[Stage(stage)][1]

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..logger import logger
from ..models import Event as EventModel
from ..models import utcnow
from .stages import JobKind, Phase, Stage, event_name


def _owner_column(kind: JobKind):
    if JobKind(kind) == JobKind.GROUP:
        return EventModel.group_job_id
    return EventModel.job_id


async def latest_event(
    db: AsyncSession,
    *,
    kind: JobKind,
    job_id: str,
    stage: Stage,
    attempt: Optional[int] = None,
    phase: Optional[Phase] = None,
) -> Optional[EventModel]:
    """Most recent event (by insertion order) for one job stage, optionally narrowed to a run and phase."""
    query = select(EventModel).where(
        _owner_column(kind) == job_id,
        EventModel.stage == Stage(stage).value,
    )
    if attempt is not None:
        query = query.where(EventModel.attempt == attempt)
    if phase is not None:
        query = query.where(EventModel.event_name == event_name(kind, stage, phase))
    result = await db.execute(query.order_by(desc(EventModel.id)).limit(1))
    return result.scalar_one_or_none()


async def append_event(
    db: AsyncSession,
    *,
    kind: JobKind,
    job_id: str,
    attempt: int,
    stage: Stage,
    phase: Phase,
    status: str,
    progress: int,
    message: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> EventModel:
    """
    Append one immutable event row.

    For terminal phases the duration is derived here, once, from the most recent
    `.started` event of the same stage in the same run. The row is flushed but not
    committed; the caller owns the transaction so the event lands together with
    the job update it describes.
    """
    now = now or utcnow()
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    if Phase(phase) == Phase.STARTED:
        started_at = now
    else:
        ended_at = now
        started = await latest_event(
            db, kind=kind, job_id=job_id, stage=stage, attempt=attempt, phase=Phase.STARTED
        )
        if started is not None and started.started_at is not None:
            started_at = started.started_at
            duration_ms = max(0, int((now - started.started_at).total_seconds() * 1000))

    owner = {"group_job_id": job_id} if JobKind(kind) == JobKind.GROUP else {"job_id": job_id}
    event = EventModel(
        **owner,
        attempt=attempt,
        event_name=event_name(kind, stage, phase),
        stage=Stage(stage).value,
        status=status,
        progress=progress,
        message=message,
        event_metadata=metadata or {},
        started_at=started_at,
        ended_at=ended_at,
        duration_ms=duration_ms,
        created_at=now,
    )
    db.add(event)
    await db.flush()

    logger.info(
        f"Event {event.event_name}",
        extra={
            "job_id": job_id,
            "job_kind": JobKind(kind).value,
            "stage": Stage(stage).value,
            "attempt": attempt,
            "event_status": status,
            "progress": progress,
            "duration_ms": duration_ms,
        },
    )
    return event


async def list_events(db: AsyncSession, *, kind: JobKind, job_id: str) -> List[EventModel]:
    result = await db.execute(
        select(EventModel).where(_owner_column(kind) == job_id).order_by(EventModel.id)
    )
    return list(result.scalars().all())


async def stage_output(db: AsyncSession, *, kind: JobKind, job_id: str, stage: Stage) -> Dict[str, Any]:
    """
    Output recorded by the latest successful run of a stage.

    Looks across runs so a retried job can reuse the outputs of stages that
    completed before the failure.
    """
    event = await latest_event(db, kind=kind, job_id=job_id, stage=stage, phase=Phase.COMPLETED)
    if event is None:
        return {}
    return dict((event.event_metadata or {}).get("output") or {})


async def purge_events(db: AsyncSession, *, retention_days: int = 60, now: Optional[datetime] = None) -> int:
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    result = await db.execute(delete(EventModel).where(EventModel.created_at < cutoff))
    await db.commit()
    deleted = int(result.rowcount or 0)
    logger.info(
        "Purged analysis events",
        extra={"retention_days": retention_days, "cutoff": cutoff.isoformat(), "deleted": deleted},
    )
    return deleted

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import ConstraintConflict
from ..logger import logger
from ..models import AnalysisResult as AnalysisResultModel
from ..models import utcnow

DEFAULT_ANALYSIS_TYPE = "full_analysis"


@dataclass
class StoreRequest:
    subject_id: str
    analysis_type: str = DEFAULT_ANALYSIS_TYPE
    user_context: Optional[str] = None
    summary: Dict[str, Any] = field(default_factory=dict)
    suggestions: List[Any] = field(default_factory=list)
    visual_annotations: List[Any] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    quality_score: Optional[int] = None
    is_partial_result: bool = False
    force_new: bool = False
    within_hours: int = 24


@dataclass(frozen=True)
class StoreResult:
    id: str
    version: int
    is_new: bool


def analysis_hash(subject_id: str, analysis_type: str, user_context: Optional[str]) -> str:
    payload = f"{subject_id}-{analysis_type}-{user_context or ''}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


async def check_existing(
    db: AsyncSession,
    subject_id: str,
    analysis_type: str = DEFAULT_ANALYSIS_TYPE,
    *,
    within_hours: int = 24,
    analysis_hash: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[AnalysisResultModel]:
    """Latest completed version created inside the window, optionally only if its hash matches."""
    cutoff = (now or utcnow()) - timedelta(hours=within_hours)
    query = select(AnalysisResultModel).where(
        AnalysisResultModel.subject_id == subject_id,
        AnalysisResultModel.analysis_type == analysis_type,
        AnalysisResultModel.status == "completed",
        AnalysisResultModel.created_at >= cutoff,
    )
    if analysis_hash is not None:
        query = query.where(AnalysisResultModel.analysis_hash == analysis_hash)
    result = await db.execute(query.order_by(desc(AnalysisResultModel.version)).limit(1))
    return result.scalar_one_or_none()


async def latest_version(db: AsyncSession, subject_id: str, analysis_type: str) -> Optional[AnalysisResultModel]:
    result = await db.execute(
        select(AnalysisResultModel)
        .where(
            AnalysisResultModel.subject_id == subject_id,
            AnalysisResultModel.analysis_type == analysis_type,
        )
        .order_by(desc(AnalysisResultModel.version))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def next_version(db: AsyncSession, subject_id: str, analysis_type: str) -> int:
    current = (
        await db.execute(
            select(func.max(AnalysisResultModel.version)).where(
                AnalysisResultModel.subject_id == subject_id,
                AnalysisResultModel.analysis_type == analysis_type,
            )
        )
    ).scalar_one_or_none()
    return int(current or 0) + 1


async def insert_row(db: AsyncSession, row, *, commit: bool = True) -> None:
    """
    Add `row` and commit, or only flush when `commit` is False.

    A unique-constraint violation rolls back the whole transaction and is
    raised as ConstraintConflict.
    """
    db.add(row)
    try:
        if commit:
            await db.commit()
        else:
            await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise ConstraintConflict(f"{type(row).__tablename__}: {e.orig}") from e


async def store(db: AsyncSession, request: StoreRequest, *, commit: bool = True) -> StoreResult:
    """
    Persist an analysis as the next version for its subject and type.

    Commits its own transaction unless `commit` is False, in which case the
    row is only flushed and the caller commits it with its other writes.
    Unless `force_new` is set, a matching analysis inside the dedup window is
    returned instead of writing a new row. A unique-version conflict with a
    concurrent writer is resolved by returning the row that won.
    """
    digest = analysis_hash(request.subject_id, request.analysis_type, request.user_context)

    if not request.force_new:
        existing = await check_existing(
            db,
            request.subject_id,
            request.analysis_type,
            within_hours=request.within_hours,
            analysis_hash=digest,
        )
        if existing is not None:
            logger.info(
                "Reusing recent analysis",
                extra={"subject_id": request.subject_id, "analysis_id": existing.id, "version": existing.version},
            )
            return StoreResult(id=existing.id, version=existing.version, is_new=False)

    version = await next_version(db, request.subject_id, request.analysis_type)
    metadata = dict(request.metadata)
    metadata.update({"qualityScore": request.quality_score, "isPartialResult": request.is_partial_result})
    row = AnalysisResultModel(
        id=str(uuid.uuid4()),
        subject_id=request.subject_id,
        analysis_type=request.analysis_type,
        analysis_hash=digest,
        version=version,
        status="completed",
        user_context=request.user_context,
        summary=request.summary,
        suggestions=request.suggestions,
        visual_annotations=request.visual_annotations,
        result_metadata=metadata,
        quality_score=request.quality_score,
        is_partial_result=request.is_partial_result,
    )
    row_id = row.id
    try:
        await insert_row(db, row, commit=commit)
    except ConstraintConflict:
        winner = await latest_version(db, request.subject_id, request.analysis_type)
        if winner is None:
            raise
        logger.warning(
            "Version conflict, using concurrent write",
            extra={
                "subject_id": request.subject_id,
                "analysis_type": request.analysis_type,
                "attempted_version": version,
                "analysis_id": winner.id,
                "version": winner.version,
            },
        )
        return StoreResult(id=winner.id, version=winner.version, is_new=False)

    logger.info(
        "Stored analysis version",
        extra={"subject_id": request.subject_id, "analysis_id": row_id, "version": version},
    )
    return StoreResult(id=row_id, version=version, is_new=True)


async def history(
    db: AsyncSession, subject_id: str, analysis_type: Optional[str] = None
) -> List[AnalysisResultModel]:
    query = select(AnalysisResultModel).where(AnalysisResultModel.subject_id == subject_id)
    if analysis_type is not None:
        query = query.where(AnalysisResultModel.analysis_type == analysis_type)
    result = await db.execute(query.order_by(desc(AnalysisResultModel.version)))
    return list(result.scalars().all())


async def update_status(
    db: AsyncSession, analysis_id: str, status: str, error: Optional[str] = None
) -> Optional[AnalysisResultModel]:
    row = await db.get(AnalysisResultModel, analysis_id)
    if row is None:
        return None
    row.status = status
    if error is not None:
        metadata = dict(row.result_metadata or {})
        metadata["error"] = error
        row.result_metadata = metadata
    await db.commit()
    return row


async def delete_version(db: AsyncSession, analysis_id: str) -> bool:
    row = await db.get(AnalysisResultModel, analysis_id)
    if row is None:
        return False
    await db.delete(row)
    await db.commit()
    logger.info("Deleted analysis version", extra={"analysis_id": analysis_id, "version": row.version})
    return True

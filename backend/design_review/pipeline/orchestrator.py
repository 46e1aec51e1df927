from __future__ import annotations

import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..exceptions import (
    AnalysisValidationError,
    ConstraintConflict,
    DesignReviewError,
    InvalidJobStateError,
    JobNotFoundError,
    StageFailedError,
)
from ..inference.base import ProviderRequest
from ..inference.normalize import normalize_analysis, normalize_context, normalize_group, normalize_vision
from ..logger import logger
from ..models import GroupAnalysisResult as GroupAnalysisResultModel
from ..models import GroupJob as GroupJobModel
from ..models import GroupSession as GroupSessionModel
from ..models import Job as JobModel
from ..models import utcnow
from . import event_log, group_aggregator, prompts, quality, versioning
from .dispatch import StageDispatcher
from .gateway import ProviderGateway
from .stages import (
    ACTIVE_STATUSES,
    COMPLETED_STAGE,
    JobKind,
    JobStatus,
    Phase,
    Stage,
    end_floor,
    next_stage,
    start_floor,
)


@dataclass
class PipelineContext:
    session_factory: async_sessionmaker
    gateway: ProviderGateway
    dispatcher: StageDispatcher
    settings: Settings


@dataclass
class StageResult:
    output: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    # extra job columns written together with the completion
    job_values: Dict[str, Any] = field(default_factory=dict)


def _model(kind: JobKind):
    return GroupJobModel if JobKind(kind) == JobKind.GROUP else JobModel


def _image_urls(kind: JobKind, job) -> List[str]:
    if JobKind(kind) == JobKind.GROUP:
        return list(job.subject_urls or [])
    return [job.subject_url]


def _valid_image_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://", "data:image/"))


def _at_least(model, floor: int):
    return case((model.progress > floor, model.progress), else_=floor)


class StageOrchestrator:
    """
    Drives single and group jobs through context -> vision -> ai -> synthesis.

    Every stage run is a short transaction pair: claim the stage and append
    `.started`, call providers, then advance the job and append `.completed`
    (or `.failed`). The claim is a check-and-set on (status, current_stage,
    attempt) plus a claim token, so only one delivery of a stage runs it;
    duplicate or stale deliveries become no-ops. Nothing about progress is
    kept in memory between stage runs.
    """

    def __init__(self, ctx: PipelineContext):
        self.ctx = ctx
        self.settings = ctx.settings
        self.gateway = ctx.gateway
        self.dispatcher = ctx.dispatcher
        self._handlers = {
            Stage.CONTEXT: self._run_context,
            Stage.VISION: self._run_vision,
            Stage.AI: self._run_ai,
            Stage.SYNTHESIS: self._run_synthesis,
        }

    # ---- job lifecycle -------------------------------------------------

    async def create_job(
        self,
        *,
        subject_id: str,
        subject_url: str,
        user_context: Optional[str] = None,
        start: bool = True,
    ) -> JobModel:
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise AnalysisValidationError("subject_id is required")
        if not _valid_image_url(subject_url):
            raise AnalysisValidationError("subject_url must be an http(s) or data:image URL")

        job = JobModel(
            id=str(uuid.uuid4()),
            subject_id=subject_id,
            subject_url=subject_url,
            user_context=user_context,
            status=JobStatus.PENDING.value,
            current_stage=Stage.CONTEXT.value,
            progress=0,
            attempt=1,
        )
        async with self.ctx.session_factory() as db:
            db.add(job)
            await db.commit()

        logger.info("Created analysis job", extra={"job_id": job.id, "subject_id": subject_id})
        if start:
            self.dispatcher.dispatch(JobKind.SINGLE, job.id, Stage.CONTEXT)
        return job

    async def create_group_job(
        self,
        *,
        group_id: str,
        subject_ids: Sequence[str],
        subject_urls: Sequence[str],
        group_context: Optional[str] = None,
        prompt: Optional[str] = None,
        session_id: Optional[str] = None,
        start: bool = True,
    ) -> GroupJobModel:
        if not isinstance(group_id, str) or not group_id.strip():
            raise AnalysisValidationError("group_id is required")
        subject_ids = list(subject_ids or [])
        subject_urls = list(subject_urls or [])
        if len(subject_ids) < 2:
            raise AnalysisValidationError("A group analysis needs at least two images")
        if len(subject_ids) != len(subject_urls):
            raise AnalysisValidationError("subject_ids and subject_urls must have the same length")
        if not all(_valid_image_url(u) for u in subject_urls):
            raise AnalysisValidationError("Every subject_url must be an http(s) or data:image URL")

        async with self.ctx.session_factory() as db:
            if session_id is None:
                session = await group_aggregator.create_session(
                    db,
                    group_id=group_id,
                    prompt=prompt or "",
                    subject_ids=subject_ids,
                    subject_urls=subject_urls,
                    is_custom=bool(prompt),
                )
                session_id = session.id

            job = GroupJobModel(
                id=str(uuid.uuid4()),
                group_id=group_id,
                session_id=session_id,
                subject_ids=subject_ids,
                subject_urls=subject_urls,
                group_context=group_context,
                status=JobStatus.PENDING.value,
                current_stage=Stage.CONTEXT.value,
                progress=0,
                attempt=1,
            )
            db.add(job)
            await db.commit()

        logger.info(
            "Created group analysis job",
            extra={"job_id": job.id, "group_id": group_id, "session_id": session_id, "image_count": len(subject_ids)},
        )
        if start:
            self.dispatcher.dispatch(JobKind.GROUP, job.id, Stage.CONTEXT)
        return job

    async def _load(self, db: AsyncSession, kind: JobKind, job_id: str):
        job = await db.get(_model(kind), job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def get_job(self, kind: JobKind, job_id: str):
        async with self.ctx.session_factory() as db:
            return await self._load(db, kind, job_id)

    async def list_events(self, kind: JobKind, job_id: str):
        async with self.ctx.session_factory() as db:
            await self._load(db, kind, job_id)
            return await event_log.list_events(db, kind=kind, job_id=job_id)

    async def start(self, kind: JobKind, job_id: str) -> None:
        """Dispatch the job's current stage; returns without waiting for it."""
        job = await self.get_job(kind, job_id)
        if job.status not in ACTIVE_STATUSES:
            raise InvalidJobStateError(job_id, job.status, "pending or processing")
        self.dispatcher.dispatch(kind, job_id, Stage(job.current_stage))

    async def cancel(self, kind: JobKind, job_id: str):
        """
        Mark the job cancelled immediately.

        Provider calls already in flight finish on their own; the stage handler
        sees the status before advancing and stops there.
        """
        kind = JobKind(kind)
        model = _model(kind)
        async with self.ctx.session_factory() as db:
            job = await self._load(db, kind, job_id)
            if job.status == JobStatus.CANCELLED.value:
                return job
            if job.status not in ACTIVE_STATUSES:
                raise InvalidJobStateError(job_id, job.status, "pending or processing")

            res = await db.execute(
                update(model)
                .where(model.id == job_id, model.status.in_(ACTIVE_STATUSES))
                .values(status=JobStatus.CANCELLED.value, error="Cancelled by request")
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                await db.rollback()
                await db.refresh(job)
                return job

            await event_log.append_event(
                db,
                kind=kind,
                job_id=job_id,
                attempt=job.attempt,
                stage=Stage(job.current_stage),
                phase=Phase.FAILED,
                status=JobStatus.CANCELLED.value,
                progress=job.progress or 0,
                message="Cancelled by request",
            )
            await db.commit()
            await db.refresh(job)

        logger.info("Cancelled job", extra={"job_kind": kind.value, "job_id": job_id, "stage": job.current_stage})
        return job

    async def retry_job(self, kind: JobKind, job_id: str):
        """Re-enter a failed job at the stage it failed in, as a new processing run."""
        kind = JobKind(kind)
        model = _model(kind)
        async with self.ctx.session_factory() as db:
            job = await self._load(db, kind, job_id)
            if job.status != JobStatus.FAILED.value:
                raise InvalidJobStateError(job_id, job.status, JobStatus.FAILED.value)
            stage = Stage(job.current_stage)

            res = await db.execute(
                update(model)
                .where(model.id == job_id, model.status == JobStatus.FAILED.value, model.attempt == job.attempt)
                .values(
                    status=JobStatus.PENDING.value,
                    attempt=job.attempt + 1,
                    error=None,
                    progress=start_floor(stage),
                    claimed_stage=None,
                    claim_token=None,
                    claimed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                await db.rollback()
                raise InvalidJobStateError(job_id, "retrying", JobStatus.FAILED.value)
            await db.commit()
            await db.refresh(job)

        logger.info(
            "Retrying job",
            extra={"job_kind": kind.value, "job_id": job_id, "stage": stage.value, "attempt": job.attempt},
        )
        self.dispatcher.dispatch(kind, job_id, stage)
        return job

    async def fork_and_run(self, source_session_id: str, new_prompt: str, group_context: Optional[str] = None):
        async with self.ctx.session_factory() as db:
            child = await group_aggregator.fork(db, source_session_id, new_prompt)
        return await self.create_group_job(
            group_id=child.group_id,
            subject_ids=child.subject_ids or [],
            subject_urls=child.subject_urls or [],
            group_context=group_context,
            session_id=child.id,
        )

    async def history(self, subject_id: str, analysis_type: Optional[str] = None):
        async with self.ctx.session_factory() as db:
            return await versioning.history(db, subject_id, analysis_type)

    async def purge_events(self, retention_days: Optional[int] = None) -> int:
        days = self.settings.EVENT_RETENTION_DAYS if retention_days is None else retention_days
        async with self.ctx.session_factory() as db:
            return await event_log.purge_events(db, retention_days=days)

    async def resume_abandoned(
        self,
        stale_after_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
        release_claims: bool = True,
    ) -> List[Tuple[JobKind, str, Stage]]:
        """
        Re-dispatch active jobs whose current stage stalled.

        A stage is stalled when its latest `.started` in the current run is older
        than the window, or when nothing was written for it at all and the job
        has not been touched within the window. Unless `release_claims` is
        False, claims older than the window are released before re-dispatching.
        """
        window = self.settings.STALE_STAGE_SECONDS if stale_after_seconds is None else stale_after_seconds
        cutoff = (now or utcnow()) - timedelta(seconds=window)
        stalled: List[Tuple[JobKind, str, Stage]] = []

        async with self.ctx.session_factory() as db:
            for kind in (JobKind.SINGLE, JobKind.GROUP):
                model = _model(kind)
                rows = (await db.execute(select(model).where(model.status.in_(ACTIVE_STATUSES)))).scalars().all()
                for job in rows:
                    if job.current_stage == COMPLETED_STAGE:
                        continue
                    stage = Stage(job.current_stage)
                    last = await event_log.latest_event(
                        db, kind=kind, job_id=job.id, stage=stage, attempt=job.attempt
                    )
                    if last is None:
                        stale = (job.updated_at or job.created_at) < cutoff
                    elif last.event_name.endswith(f".{Phase.STARTED.value}"):
                        stale = last.created_at < cutoff
                    else:
                        stale = False
                    if stale:
                        stalled.append((kind, job.id, stage))

            # a stale claim would turn the redelivery into a no-op
            if release_claims:
                for kind, job_id, stage in stalled:
                    model = _model(kind)
                    await db.execute(
                        update(model)
                        .where(model.id == job_id, model.claimed_stage == stage.value, model.claimed_at < cutoff)
                        .values(claimed_stage=None, claim_token=None, claimed_at=None)
                        .execution_options(synchronize_session=False)
                    )
                await db.commit()

        for kind, job_id, stage in stalled:
            logger.warning(
                "Resuming stalled stage",
                extra={"job_kind": kind.value, "job_id": job_id, "stage": stage.value},
            )
            self.dispatcher.dispatch(kind, job_id, stage)
        return stalled

    # ---- stage execution -----------------------------------------------

    async def run_context(self, kind: JobKind, job_id: str) -> str:
        return await self.run_stage(kind, job_id, Stage.CONTEXT)

    async def run_vision(self, kind: JobKind, job_id: str) -> str:
        return await self.run_stage(kind, job_id, Stage.VISION)

    async def run_ai(self, kind: JobKind, job_id: str) -> str:
        return await self.run_stage(kind, job_id, Stage.AI)

    async def run_synthesis(self, kind: JobKind, job_id: str) -> str:
        return await self.run_stage(kind, job_id, Stage.SYNTHESIS)

    async def run_stage(self, kind: JobKind, job_id: str, stage: Stage) -> str:
        """
        Run one stage of one job. Safe to call repeatedly.

        Returns "completed", "failed", "cancelled", "skipped" (stale or
        duplicate delivery) or "missing".
        """
        kind = JobKind(kind)
        stage = Stage(stage)
        model = _model(kind)
        log_extra = {"job_kind": kind.value, "job_id": job_id, "stage": stage.value}

        async with self.ctx.session_factory() as db:
            job = await db.get(model, job_id)
            if job is None:
                logger.warning("Stage requested for unknown job", extra=log_extra)
                return "missing"
            if job.status not in ACTIVE_STATUSES or job.current_stage != stage.value:
                logger.info(
                    "Stage not current, skipping",
                    extra={**log_extra, "status": job.status, "current_stage": job.current_stage},
                )
                return "skipped"

            attempt = job.attempt
            log_extra["attempt"] = attempt
            guard = (
                model.id == job_id,
                model.status.in_(ACTIVE_STATUSES),
                model.current_stage == stage.value,
                model.attempt == attempt,
            )

            floor = start_floor(stage)
            token = str(uuid.uuid4())
            claimed_at = utcnow()
            lease_cutoff = claimed_at - timedelta(seconds=self.settings.STALE_STAGE_SECONDS)
            res = await db.execute(
                update(model)
                .where(
                    *guard,
                    or_(
                        model.claimed_stage.is_(None),
                        model.claimed_stage != stage.value,
                        model.claimed_at < lease_cutoff,
                    ),
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    progress=_at_least(model, floor),
                    claimed_stage=stage.value,
                    claim_token=token,
                    claimed_at=claimed_at,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                await db.rollback()
                logger.info("Stage already claimed, skipping", extra=log_extra)
                return "skipped"
            guard = guard + (model.claim_token == token,)
            await event_log.append_event(
                db,
                kind=kind,
                job_id=job_id,
                attempt=attempt,
                stage=stage,
                phase=Phase.STARTED,
                status=JobStatus.PROCESSING.value,
                progress=max(job.progress or 0, floor),
            )
            await db.commit()
            await db.refresh(job)

            try:
                result = await self._handlers[stage](db, kind, job)
            except StageFailedError as e:
                return await self._fail(db, kind, job, stage, e.message, e.metadata, guard)
            except Exception as e:
                logger.error(
                    f"Stage {stage.value} crashed: {e}",
                    extra={**log_extra, "traceback": traceback.format_exc()},
                )
                await db.rollback()
                await db.refresh(job)
                await self._fail(
                    db, kind, job, stage, f"Unexpected error in {stage.value} stage: {e}",
                    {"exc_type": type(e).__name__}, guard,
                )
                raise

            await db.refresh(job)
            if job.status not in ACTIVE_STATUSES or job.claim_token != token:
                status, current = job.status, job.current_stage
                await db.rollback()
                logger.info(
                    "Job left this stage run, not advancing",
                    extra={**log_extra, "status": status, "current_stage": current},
                )
                return "cancelled" if status == JobStatus.CANCELLED.value else "skipped"

            nxt = next_stage(stage)
            end = end_floor(stage)
            values: Dict[str, Any] = {
                "progress": _at_least(model, end),
                "current_stage": nxt.value if nxt else COMPLETED_STAGE,
            }
            values.update(result.job_values)
            if nxt is None:
                values.update(status=JobStatus.COMPLETED.value, completed_at=utcnow())

            res = await db.execute(
                update(model).where(*guard).values(**values).execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                await db.rollback()
                logger.info("Stage advanced concurrently, discarding result", extra=log_extra)
                return "skipped"
            await event_log.append_event(
                db,
                kind=kind,
                job_id=job_id,
                attempt=attempt,
                stage=stage,
                phase=Phase.COMPLETED,
                status=JobStatus.COMPLETED.value,
                progress=max(job.progress or 0, end),
                metadata={"output": result.output, **result.metadata},
            )
            await db.commit()

        logger.info(f"Stage {stage.value} completed", extra={**log_extra, "next_stage": nxt.value if nxt else None})
        if nxt is not None:
            self.dispatcher.dispatch(kind, job_id, nxt)
        return "completed"

    async def _fail(
        self,
        db: AsyncSession,
        kind: JobKind,
        job,
        stage: Stage,
        message: str,
        metadata: Dict[str, Any],
        guard,
    ) -> str:
        model = _model(kind)
        job_id, attempt, progress = job.id, job.attempt, job.progress or 0
        session_id = job.session_id if kind == JobKind.GROUP else None
        log_extra = {"job_kind": kind.value, "job_id": job_id, "stage": stage.value, "attempt": attempt}

        res = await db.execute(
            update(model)
            .where(*guard)
            .values(status=JobStatus.FAILED.value, error=message)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            await db.rollback()
            logger.info("Stage failed after job left active state", extra=log_extra)
            return "skipped"

        await event_log.append_event(
            db,
            kind=kind,
            job_id=job_id,
            attempt=attempt,
            stage=stage,
            phase=Phase.FAILED,
            status=JobStatus.FAILED.value,
            progress=progress,
            message=message,
            metadata=metadata,
        )
        if session_id:
            await db.execute(
                update(GroupSessionModel)
                .where(GroupSessionModel.id == session_id)
                .values(status="failed")
                .execution_options(synchronize_session=False)
            )
        await db.commit()
        logger.error(f"Stage {stage.value} failed: {message}", extra=log_extra)
        return "failed"

    # ---- stage handlers ------------------------------------------------

    def _vision_model(self, provider: str) -> str:
        models = {
            "openai": self.settings.OPENAI_VISION_MODEL,
            "google": self.settings.GOOGLE_VISION_MODEL,
            "anthropic": self.settings.ANTHROPIC_VISION_MODEL,
        }
        return models.get(provider, "default")

    async def _run_context(self, db: AsyncSession, kind: JobKind, job) -> StageResult:
        notes = job.group_context if kind == JobKind.GROUP else job.user_context
        prompt = prompts.CONTEXT_PROMPT
        if notes:
            prompt = f"{prompt}\n\nReviewer notes: {notes}"
        request = ProviderRequest(
            provider=self.settings.CONTEXT_PROVIDER,
            model=self.settings.CONTEXT_MODEL,
            prompt=prompt,
            image_urls=_image_urls(kind, job),
            system_prompt=prompts.SYSTEM_PROMPT,
        )
        result = await self.gateway.invoke(request)
        metadata: Dict[str, Any] = {"providers": [result.to_metadata()]}
        try:
            result.raise_for_error()
        except DesignReviewError as e:
            raise StageFailedError(
                Stage.CONTEXT.value, f"Context detection failed: {result.error}", {**metadata, "error_code": e.code}
            ) from e

        norm = normalize_context(result.response)
        metadata["warnings"] = norm.warnings
        if not norm.ok:
            raise StageFailedError(Stage.CONTEXT.value, "Context detection returned no usable output", metadata)
        return StageResult(output=norm.data, metadata=metadata)

    async def _run_vision(self, db: AsyncSession, kind: JobKind, job) -> StageResult:
        urls = _image_urls(kind, job)
        requests = [
            ProviderRequest(
                provider=name,
                model=self._vision_model(name),
                prompt=prompts.VISION_PROMPT,
                image_urls=urls,
                system_prompt=prompts.SYSTEM_PROMPT,
            )
            for name in self.settings.VISION_PROVIDERS
        ]
        results = await self.gateway.invoke_many(requests)

        outputs: List[Dict[str, Any]] = []
        outcomes: List[Dict[str, Any]] = []
        warnings: List[str] = []
        for result in results:
            entry = result.to_metadata()
            if result.ok:
                norm = normalize_vision(result.provider, result.response, len(urls))
                warnings.extend(f"{result.provider}: {w}" for w in norm.warnings)
                if norm.ok:
                    outputs.append(norm.data)
                else:
                    entry.update(ok=False, error="No usable elements in provider output", error_kind="invalid_response")
            outcomes.append(entry)

        metadata = {"providers": outcomes, "warnings": warnings}
        succeeded = [o["provider"] for o in outcomes if o["ok"]]
        if not succeeded:
            if self.settings.REQUIRE_VISION_RESULTS:
                raise StageFailedError(Stage.VISION.value, "Every vision provider failed", metadata)
            logger.warning(
                "All vision providers failed, continuing without vision input",
                extra={"job_id": job.id, "providers": [o["provider"] for o in outcomes]},
            )
        output = {
            "results": outputs,
            "providerStatus": {o["provider"]: bool(o["ok"]) for o in outcomes},
        }
        return StageResult(output=output, metadata=metadata)

    async def _run_ai(self, db: AsyncSession, kind: JobKind, job) -> StageResult:
        context = await event_log.stage_output(db, kind=kind, job_id=job.id, stage=Stage.CONTEXT)
        vision = (await event_log.stage_output(db, kind=kind, job_id=job.id, stage=Stage.VISION)).get("results") or []
        urls = _image_urls(kind, job)

        if kind == JobKind.GROUP:
            session = await db.get(GroupSessionModel, job.session_id) if job.session_id else None
            prompt = prompts.group_prompt(
                context, vision, session.prompt if session else None, job.group_context, len(urls)
            )
        else:
            prompt = prompts.analysis_prompt(context, vision, job.user_context)

        request = ProviderRequest(
            provider=self.settings.AI_PROVIDER,
            model=self.settings.AI_MODEL,
            prompt=prompt,
            image_urls=urls,
            system_prompt=prompts.SYSTEM_PROMPT,
            max_tokens=4096,
        )
        result = await self.gateway.invoke(request)
        metadata: Dict[str, Any] = {"providers": [result.to_metadata()]}
        try:
            result.raise_for_error()
        except DesignReviewError as e:
            raise StageFailedError(
                Stage.AI.value, f"AI analysis failed: {result.error}", {**metadata, "error_code": e.code}
            ) from e

        norm = normalize_group(result.response) if kind == JobKind.GROUP else normalize_analysis(result.response)
        metadata["warnings"] = norm.warnings
        if not norm.ok:
            raise StageFailedError(Stage.AI.value, "AI analysis returned no usable output", metadata)
        return StageResult(output=norm.data, metadata=metadata)

    async def _run_synthesis(self, db: AsyncSession, kind: JobKind, job) -> StageResult:
        context = await event_log.stage_output(db, kind=kind, job_id=job.id, stage=Stage.CONTEXT)
        vision = await event_log.stage_output(db, kind=kind, job_id=job.id, stage=Stage.VISION)
        ai = await event_log.stage_output(db, kind=kind, job_id=job.id, stage=Stage.AI)
        provider_status: Dict[str, bool] = vision.get("providerStatus") or {}

        score = quality.score(quality.StageOutcomes(
            stages={
                Stage.CONTEXT.value: bool(context),
                Stage.VISION.value: any(provider_status.values()),
                Stage.AI.value: bool(ai),
            },
            vision_providers=list(provider_status.values()),
            confidences={
                Stage.CONTEXT.value: context.get("confidence"),
                Stage.AI.value: ai.get("confidence"),
            },
        ))

        if kind == JobKind.GROUP:
            result_id = await self._store_group_result(db, job, context, vision, ai, score)
            output: Dict[str, Any] = {"resultId": result_id, **score.as_metadata()}
        else:
            stored = await versioning.store(db, versioning.StoreRequest(
                subject_id=job.subject_id,
                user_context=job.user_context,
                summary=ai.get("summary") or {},
                suggestions=ai.get("suggestions") or [],
                visual_annotations=ai.get("visualAnnotations") or [],
                metadata={"jobId": job.id, "attempt": job.attempt, "context": context, "visionProviders": provider_status},
                quality_score=score.overall_quality,
                is_partial_result=score.is_partial_result,
                within_hours=self.settings.DEDUP_WINDOW_HOURS,
            ), commit=False)
            result_id = stored.id
            output = {"resultId": stored.id, "version": stored.version, "isNew": stored.is_new, **score.as_metadata()}

        return StageResult(
            output=output,
            job_values={
                "result_id": result_id,
                "quality_score": score.overall_quality,
                "is_partial_result": score.is_partial_result,
            },
        )

    @staticmethod
    def _per_image(ai: Dict[str, Any], vision: Dict[str, Any], count: int) -> List[Dict[str, Any]]:
        ai_images = ai.get("perImage") or []
        vision_results = vision.get("results") or []
        per_image = []
        for i in range(count):
            entry = dict(ai_images[i]) if i < len(ai_images) else {}
            if not entry.get("elements"):
                elements: List[str] = []
                for provider_result in vision_results:
                    images = provider_result.get("images") or []
                    if i < len(images):
                        elements.extend(images[i].get("elements") or [])
                entry["elements"] = elements
            per_image.append(entry)
        return per_image

    async def _store_group_result(
        self,
        db: AsyncSession,
        job,
        context: Dict[str, Any],
        vision: Dict[str, Any],
        ai: Dict[str, Any],
        score: quality.QualityScore,
    ) -> str:
        """Flush the group result and mark its session completed; the stage completion commits both."""
        job_id, group_id, session_id = job.id, job.group_id, job.session_id
        existing = await self._group_result_for(db, job_id)
        if existing is not None:
            return existing.id

        session = await db.get(GroupSessionModel, session_id) if session_id else None
        aggregate = group_aggregator.aggregate(
            self._per_image(ai, vision, len(job.subject_urls or [])), ai, job.group_context
        )
        row = GroupAnalysisResultModel(
            id=str(uuid.uuid4()),
            group_id=group_id,
            session_id=session_id,
            group_job_id=job_id,
            parent_session_id=session.parent_session_id if session else None,
            prompt=session.prompt if session else None,
            summary=aggregate.summary,
            insights=aggregate.insights,
            recommendations=aggregate.recommendations,
            patterns=aggregate.patterns,
            result_metadata={
                **score.as_metadata(),
                "context": context,
                "visionProviders": vision.get("providerStatus") or {},
                "subjectIds": list(job.subject_ids or []),
            },
            quality_score=score.overall_quality,
            is_partial_result=score.is_partial_result,
        )
        row_id = row.id
        try:
            await versioning.insert_row(db, row, commit=False)
        except ConstraintConflict:
            winner = await self._group_result_for(db, job_id)
            if winner is None:
                raise
            logger.warning(
                "Group result written concurrently, using existing row",
                extra={"job_id": job_id, "analysis_id": winner.id},
            )
            row_id = winner.id

        if session_id:
            await db.execute(
                update(GroupSessionModel)
                .where(GroupSessionModel.id == session_id)
                .values(status="completed")
                .execution_options(synchronize_session=False)
            )
        logger.info(
            "Stored group analysis",
            extra={"job_id": job_id, "group_id": group_id, "analysis_id": row_id, "session_id": session_id},
        )
        return row_id

    @staticmethod
    async def _group_result_for(db: AsyncSession, group_job_id: str):
        return (
            await db.execute(
                select(GroupAnalysisResultModel).where(GroupAnalysisResultModel.group_job_id == group_job_id)
            )
        ).scalar_one_or_none()

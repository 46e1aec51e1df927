from __future__ import annotations

import argparse
import asyncio

from design_review.config import settings
from design_review.logger import logger
from design_review.pipeline.dispatch import StageDispatcher
from design_review.pipeline.registry import build_pipeline


async def resume(*, stale_after_seconds: int, dry_run: bool) -> None:
    pipeline = build_pipeline(dispatcher=_NullDispatcher() if dry_run else None)
    resumed = await pipeline.resume_abandoned(stale_after_seconds, release_claims=not dry_run)
    logger.warning(
        "Resume sweep finished",
        extra={
            "dry_run": dry_run,
            "stale_after_seconds": stale_after_seconds,
            "jobs": [{"kind": kind.value, "job_id": job_id, "stage": stage.value} for kind, job_id, stage in resumed],
        },
    )


class _NullDispatcher(StageDispatcher):
    """Selects stalled stages without dispatching them."""

    def dispatch(self, kind, job_id, stage) -> None:
        return None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Re-dispatch pipeline stages that started but never finished.",
    )
    parser.add_argument(
        "--stale-after",
        type=int,
        default=settings.STALE_STAGE_SECONDS,
        help="Seconds since the stage started before it counts as abandoned.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List abandoned stages without dispatching them.",
    )
    return parser


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    asyncio.run(resume(stale_after_seconds=args.stale_after, dry_run=bool(args.dry_run)))


if __name__ == "__main__":
    main()

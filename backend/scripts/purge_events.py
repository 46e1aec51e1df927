from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import func, select

from design_review.config import settings
from design_review.db import AsyncSessionLocal
from design_review.logger import logger
from design_review.models import Event as EventModel
from design_review.models import utcnow
from design_review.pipeline.event_log import purge_events


@dataclass(frozen=True)
class EventCounts:
    total: int
    expired: int


async def _get_counts(retention_days: int) -> EventCounts:
    cutoff = utcnow() - timedelta(days=retention_days)
    async with AsyncSessionLocal() as db:
        total = (await db.execute(select(func.count()).select_from(EventModel))).scalar_one()
        expired = (
            await db.execute(select(func.count()).select_from(EventModel).where(EventModel.created_at < cutoff))
        ).scalar_one()
        return EventCounts(total=int(total), expired=int(expired))


async def run_purge(*, retention_days: int, yes: bool) -> int:
    before = await _get_counts(retention_days)
    logger.warning(
        "Event purge requested",
        extra={"retention_days": retention_days, "before": {"total": before.total, "expired": before.expired}},
    )

    if not yes:
        raise SystemExit(
            "Refusing to run without --yes. "
            f"This will DELETE {before.expired} analysis events older than {retention_days} days."
        )

    async with AsyncSessionLocal() as db:
        deleted = await purge_events(db, retention_days=retention_days)

    after = await _get_counts(retention_days)
    logger.warning(
        "Event purge completed",
        extra={"deleted": deleted, "after": {"total": after.total, "expired": after.expired}},
    )
    return deleted


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Delete analysis events older than the retention window.",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=settings.EVENT_RETENTION_DAYS,
        help=f"Keep events newer than this many days (default {settings.EVENT_RETENTION_DAYS}).",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm destructive action (required).",
    )
    return parser


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    asyncio.run(run_purge(retention_days=args.retention_days, yes=bool(args.yes)))


if __name__ == "__main__":
    main()

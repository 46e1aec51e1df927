from __future__ import annotations

import itertools
import statistics
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import SessionNotFoundError
from ..logger import logger
from ..models import GroupSession as GroupSessionModel


@dataclass
class GroupAggregate:
    summary: Dict[str, Optional[float]] = field(default_factory=dict)
    insights: List[Any] = field(default_factory=list)
    recommendations: List[Any] = field(default_factory=list)
    patterns: Dict[str, List[str]] = field(default_factory=dict)


def _dedupe(values: Iterable[Any]) -> List[str]:
    seen = set()
    out: List[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        text = value.strip()
        key = text.lower()
        if not text or key in seen:
            continue
        seen.add(key)
        out.append(text)
    return out


def _items(value: Any) -> List[Any]:
    if isinstance(value, str):
        return [value]
    return list(value) if isinstance(value, (list, tuple)) else []


def _element_set(image: Mapping[str, Any]) -> set:
    return {e.strip().lower() for e in image.get("elements") or [] if isinstance(e, str) and e.strip()}


def _pick(ai_summary: Mapping[str, Any], key: str) -> Optional[float]:
    value = ai_summary.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def consistency_score(per_image: Sequence[Mapping[str, Any]]) -> Optional[int]:
    """
    100 minus twice the mean standard deviation of each category across images.

    Categories scored on fewer than two images are ignored; with none left the
    images' overall scores are used instead.
    """
    by_category: Dict[str, List[float]] = {}
    for image in per_image:
        for category, value in (image.get("categoryScores") or {}).items():
            by_category.setdefault(category, []).append(float(value))
    deviations = [statistics.pstdev(v) for v in by_category.values() if len(v) >= 2]

    if not deviations:
        overall = [float(i["overallScore"]) for i in per_image if i.get("overallScore") is not None]
        if len(overall) < 2:
            return None
        deviations = [statistics.pstdev(overall)]

    mean_std = sum(deviations) / len(deviations)
    return int(max(0, min(100, round(100 - 2 * mean_std))))


def thematic_coherence(per_image: Sequence[Mapping[str, Any]]) -> Optional[int]:
    """Mean pairwise Jaccard overlap of the images' element sets, as a percentage."""
    sets = [_element_set(image) for image in per_image]
    sets = [s for s in sets if s]
    if len(sets) < 2:
        return None
    overlaps = [len(a & b) / len(a | b) for a, b in itertools.combinations(sets, 2)]
    return int(round(100 * sum(overlaps) / len(overlaps)))


def flow_continuity(per_image: Sequence[Mapping[str, Any]]) -> Optional[int]:
    """Share of consecutive image transitions whose target reports no journey gap."""
    if len(per_image) < 2:
        return None
    transitions = len(per_image) - 1
    clean = sum(1 for image in per_image[1:] if not image.get("journeyGaps"))
    return int(round(100 * clean / transitions))


def aggregate(
    per_image: Sequence[Mapping[str, Any]],
    ai_output: Optional[Mapping[str, Any]] = None,
    group_context: Optional[str] = None,
) -> GroupAggregate:
    """
    Fold per-image results and the ai stage's cross-image output into one group result.

    Cross-image figures from the ai stage win over the ones derived here;
    pattern lists are merged and de-duplicated in first-seen order.
    """
    ai_output = ai_output or {}
    ai_summary = ai_output.get("summary") or {}
    ai_patterns = ai_output.get("patterns") if isinstance(ai_output.get("patterns"), dict) else {}

    scores = [float(i["overallScore"]) for i in per_image if i.get("overallScore") is not None]
    overall = round(sum(scores) / len(scores), 1) if scores else _pick(ai_summary, "overallScore")

    consistency = consistency_score(per_image)
    if consistency is None:
        consistency = _pick(ai_summary, "consistency")

    coherence = _pick(ai_summary, "thematicCoherence")
    if coherence is None:
        coherence = thematic_coherence(per_image)

    continuity = _pick(ai_summary, "userFlowContinuity")
    if continuity is None:
        continuity = flow_continuity(per_image)

    element_sets = [_element_set(image) for image in per_image if _element_set(image)]
    shared = set.intersection(*element_sets) if element_sets else set()
    ordered_shared = [
        e for e in itertools.chain.from_iterable(image.get("elements") or [] for image in per_image)
        if isinstance(e, str) and e.strip().lower() in shared
    ]

    patterns = {
        "commonElements": _dedupe(itertools.chain(ordered_shared, _items(ai_patterns.get("commonElements")))),
        "designInconsistencies": _dedupe(itertools.chain(
            itertools.chain.from_iterable(image.get("inconsistencies") or [] for image in per_image),
            _items(ai_patterns.get("designInconsistencies")),
        )),
        "userJourneyGaps": _dedupe(itertools.chain(
            itertools.chain.from_iterable(image.get("journeyGaps") or [] for image in per_image),
            _items(ai_patterns.get("userJourneyGaps")),
        )),
    }

    logger.debug(
        "Aggregated group result",
        extra={"image_count": len(per_image), "has_group_context": bool(group_context)},
    )
    return GroupAggregate(
        summary={
            "overallScore": overall,
            "consistency": consistency,
            "thematicCoherence": coherence,
            "userFlowContinuity": continuity,
        },
        insights=list(ai_output.get("insights") or []),
        recommendations=list(ai_output.get("recommendations") or []),
        patterns=patterns,
    )


async def create_session(
    db: AsyncSession,
    *,
    group_id: str,
    prompt: str,
    subject_ids: Sequence[str],
    subject_urls: Sequence[str],
    is_custom: bool = False,
    parent_session_id: Optional[str] = None,
) -> GroupSessionModel:
    session = GroupSessionModel(
        id=str(uuid.uuid4()),
        group_id=group_id,
        prompt=prompt,
        is_custom=is_custom,
        status="pending",
        parent_session_id=parent_session_id,
        subject_ids=list(subject_ids),
        subject_urls=list(subject_urls),
    )
    db.add(session)
    await db.commit()
    return session


async def fork(db: AsyncSession, source_session_id: str, new_prompt: str) -> GroupSessionModel:
    """New child session over the same subjects; the source session is left untouched."""
    source = await db.get(GroupSessionModel, source_session_id)
    if source is None:
        raise SessionNotFoundError(source_session_id)
    child = await create_session(
        db,
        group_id=source.group_id,
        prompt=new_prompt,
        subject_ids=source.subject_ids or [],
        subject_urls=source.subject_urls or [],
        is_custom=True,
        parent_session_id=source.id,
    )
    logger.info(
        "Forked group session",
        extra={"group_id": source.group_id, "session_id": child.id, "parent_session_id": source.id},
    )
    return child

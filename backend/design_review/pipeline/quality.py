from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence

VISION_DROPOUT_PENALTY = 40
LOW_CONFIDENCE_PENALTY = 10
CONFIDENCE_THRESHOLDS: Dict[str, float] = {
    "context": 0.7,
    "ai": 0.6,
}


@dataclass
class StageOutcomes:
    """What the quality score looks at, collected by the orchestrator at synthesis."""

    stages: Mapping[str, bool] = field(default_factory=dict)
    vision_providers: Sequence[bool] = field(default_factory=list)
    confidences: Mapping[str, Optional[float]] = field(default_factory=dict)


@dataclass(frozen=True)
class QualityScore:
    overall_quality: int
    is_partial_result: bool

    def as_metadata(self) -> Dict[str, object]:
        return {"qualityScore": self.overall_quality, "isPartialResult": self.is_partial_result}


def score(outcomes: StageOutcomes) -> QualityScore:
    """
    Advisory 0-100 score for a result.

    Starts from the share of stages that succeeded, then subtracts a penalty
    proportional to the share of vision providers that failed and a fixed
    penalty for each confidence below its stage threshold. Partial means any
    stage or provider did not fully succeed; low confidence alone is not partial.
    """
    total_stages = len(outcomes.stages)
    successful = sum(1 for ok in outcomes.stages.values() if ok)
    base = 100.0 * successful / total_stages if total_stages else 0.0

    providers = list(outcomes.vision_providers)
    failed_providers = sum(1 for ok in providers if not ok)
    dropout = VISION_DROPOUT_PENALTY * failed_providers / len(providers) if providers else 0.0

    low_confidence = 0
    for stage, confidence in outcomes.confidences.items():
        threshold = CONFIDENCE_THRESHOLDS.get(stage)
        if threshold is not None and confidence is not None and confidence < threshold:
            low_confidence += 1

    overall = base - dropout - LOW_CONFIDENCE_PENALTY * low_confidence
    overall = int(round(max(0.0, min(100.0, overall))))
    partial = successful < total_stages or failed_providers > 0
    return QualityScore(overall_quality=overall, is_partial_result=partial)

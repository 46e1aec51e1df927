"""
Normalisation of raw provider output into the pipeline's internal shapes.

Every model reply passes through here exactly once. Functions never invent
scores: a missing or non-numeric value is dropped and a warning is recorded
so the stage event can carry it for audit.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .json_guard import extract_json, try_parse_json

CONTEXT_PRIMARY_TYPES = (
    "dashboard", "landing", "app", "form", "ecommerce", "content", "portfolio", "saas", "mobile",
)

# keyword -> (primary type, domain); first hit wins
_INTERFACE_HINTS: Tuple[Tuple[Tuple[str, ...], str, str], ...] = (
    (("dashboard", "metric", "chart", "kpi"), "dashboard", "technology"),
    (("landing", "hero", "cta"), "landing", "general"),
    (("form", "input", "submit"), "form", "general"),
    (("checkout", "cart", "product", "price"), "ecommerce", "retail"),
    (("mobile", "touch", "tab bar"), "mobile", "technology"),
)


@dataclass
class Normalized:
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def _coerce_object(raw: Any, warnings: List[str]) -> Optional[Dict[str, Any]]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        warnings.append("Provider output was neither text nor an object")
        return None
    direct = try_parse_json(raw)
    if isinstance(direct, dict):
        return direct
    sub = extract_json(raw)
    parsed = try_parse_json(sub) if sub else None
    if isinstance(parsed, dict):
        warnings.append("Parsed JSON from unstructured text")
        return parsed
    warnings.append("Could not parse JSON from text content")
    return None


def _unwrap(obj: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    for key in keys:
        inner = obj.get(key)
        if isinstance(inner, dict):
            return inner
    return obj


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def _clamp(n: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, n))


def _list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _str_list(value: Any) -> List[str]:
    out = []
    for item in _list(value):
        if isinstance(item, str) and item.strip():
            out.append(item.strip())
        elif isinstance(item, dict):
            label = item.get("name") or item.get("description") or item.get("label")
            if isinstance(label, str) and label.strip():
                out.append(label.strip())
    return out


def _category_scores(value: Any, warnings: List[str], prefix: str) -> Dict[str, float]:
    scores: Dict[str, float] = {}
    if not isinstance(value, dict):
        return scores
    for k, v in value.items():
        n = _number(v)
        if n is None:
            warnings.append(f"{prefix}.{k} was not numeric")
            continue
        scores[str(k)] = _clamp(n, 0, 100)
    return scores


def _confidence(value: Any, warnings: List[str]) -> Optional[float]:
    if value is None:
        return None
    n = _number(value)
    if n is None:
        warnings.append("confidence was not numeric")
        return None
    # Some models answer in percent.
    if n > 1:
        n = n / 100.0
    return _clamp(n, 0.0, 1.0)


def _infer_interface(obj: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    text = json.dumps(obj, default=str).lower()
    for words, primary_type, domain in _INTERFACE_HINTS:
        if any(w in text for w in words):
            return primary_type, domain
    return None, None


def normalize_context(raw: Any) -> Normalized:
    """
    Context detection output.

    When the model omits the interface type or domain they are inferred from
    keywords in the reply, and the confidence is lowered to reflect the guess.
    """
    warnings: List[str] = []
    obj = _coerce_object(raw, warnings)
    if obj is None:
        return Normalized(ok=False, warnings=warnings)
    obj = _unwrap(obj, "data", "result", "context")

    primary_type = obj.get("primaryType") or obj.get("interface_type") or obj.get("type")
    domain = obj.get("domain") or obj.get("industry")
    inferred = False
    if not isinstance(primary_type, str) or not primary_type or primary_type == "unknown":
        guessed_type, guessed_domain = _infer_interface(obj)
        primary_type = guessed_type or "app"
        domain = domain or guessed_domain
        inferred = True
        warnings.append(f"primaryType missing, inferred '{primary_type}'")
    if not isinstance(domain, str) or not domain:
        domain = "general"
        warnings.append("domain missing, defaulted to 'general'")

    confidence = _confidence(obj.get("confidence"), warnings)
    if confidence is None:
        confidence = 0.5
        if not inferred:
            confidence += 0.2
        if domain != "general":
            confidence += 0.15
    elif inferred:
        confidence = max(0.0, confidence - 0.2)

    data = {
        "primaryType": primary_type,
        "subTypes": _str_list(obj.get("subTypes") or obj.get("sub_types")),
        "domain": domain,
        "complexity": obj.get("complexity") or "moderate",
        "userIntent": _str_list(obj.get("userIntent") or obj.get("user_intent")),
        "platform": obj.get("platform") or ("mobile" if primary_type == "mobile" else "web"),
        "targetAudience": obj.get("targetAudience") or obj.get("target_audience"),
        "confidence": round(_clamp(confidence, 0.0, 1.0), 3),
    }
    return Normalized(ok=True, data=data, warnings=warnings)


def normalize_vision(provider: str, raw: Any, image_count: int) -> Normalized:
    """
    Per-image element/text lists from one vision provider.

    Google replies with raw annotations; language models are asked for
    ``{"images": [{"elements": [...], "text": [...]}]}``.
    """
    warnings: List[str] = []
    obj = _coerce_object(raw, warnings)
    if obj is None:
        return Normalized(ok=False, warnings=warnings)

    images: List[Dict[str, Any]] = []
    if isinstance(obj.get("annotations"), list):
        for ann in obj["annotations"]:
            ann = ann if isinstance(ann, dict) else {}
            texts = _str_list(ann.get("textAnnotations"))
            images.append({
                "elements": _str_list(ann.get("labelAnnotations")) + _str_list(ann.get("localizedObjectAnnotations")),
                "text": texts[:1],
            })
    else:
        entries = obj.get("images")
        if not isinstance(entries, list):
            entries = [obj]
        for entry in entries:
            entry = entry if isinstance(entry, dict) else {}
            images.append({
                "elements": _str_list(entry.get("elements") or entry.get("components")),
                "text": _str_list(entry.get("text")),
            })

    if len(images) != image_count:
        warnings.append(f"{provider} described {len(images)} images, expected {image_count}")
    images = (images + [{"elements": [], "text": []}] * image_count)[:image_count]
    ok = any(img["elements"] or img["text"] for img in images)
    return Normalized(ok=ok, data={"provider": provider, "images": images}, warnings=warnings)


def normalize_analysis(raw: Any) -> Normalized:
    """Single-image critique from the ai stage."""
    warnings: List[str] = []
    obj = _coerce_object(raw, warnings)
    if obj is None:
        return Normalized(ok=False, warnings=warnings)
    obj = _unwrap(obj, "analysis", "data", "result")

    summary = dict(obj.get("summary")) if isinstance(obj.get("summary"), dict) else {}
    if "overallScore" in summary:
        n = _number(summary["overallScore"])
        if n is None:
            warnings.append("summary.overallScore was not numeric")
            del summary["overallScore"]
        else:
            summary["overallScore"] = _clamp(n, 0, 100)
    if "categoryScores" in summary:
        summary["categoryScores"] = _category_scores(summary["categoryScores"], warnings, "categoryScores")

    suggestions = _list(obj.get("suggestions"))
    annotations = _list(obj.get("visualAnnotations") or obj.get("annotations"))
    data = {
        "summary": summary,
        "suggestions": suggestions,
        "visualAnnotations": annotations,
        "confidence": _confidence(obj.get("confidence"), warnings),
    }
    ok = bool(summary or suggestions or annotations)
    if not ok:
        warnings.append("Analysis contained no summary, suggestions or annotations")
    return Normalized(ok=ok, data=data, warnings=warnings)


PATTERN_KEYS = ("commonElements", "designInconsistencies", "userJourneyGaps")


def normalize_group(raw: Any) -> Normalized:
    """Cross-image group critique; accepts the payload bare or under analysis/data/result."""
    warnings: List[str] = []
    obj = _coerce_object(raw, warnings)
    if obj is None:
        return Normalized(ok=False, warnings=warnings)
    candidate = _unwrap(obj, "analysis", "data", "result")

    summary = dict(candidate.get("summary")) if isinstance(candidate.get("summary"), dict) else {}
    for key in ("overallScore", "consistency", "thematicCoherence", "userFlowContinuity"):
        if key not in summary:
            continue
        n = _number(summary[key])
        if n is None:
            warnings.append(f"summary.{key} was not numeric")
            del summary[key]
        else:
            summary[key] = _clamp(n, 0, 100)
    if "categoryScores" in summary:
        summary["categoryScores"] = _category_scores(summary["categoryScores"], warnings, "categoryScores")

    insights = _list(candidate.get("insights"))
    recommendations = _list(candidate.get("recommendations"))
    raw_patterns = candidate.get("patterns") if isinstance(candidate.get("patterns"), dict) else {}
    patterns: Dict[str, List[str]] = {}
    for key in PATTERN_KEYS:
        value = raw_patterns.get(key)
        if value is None:
            continue
        if not isinstance(value, (list, tuple)):
            warnings.append(f"patterns.{key} was not a list")
            value = [value]
        patterns[key] = _str_list(value)

    per_image = []
    for entry in _list(candidate.get("perImage") or candidate.get("images")):
        if not isinstance(entry, dict):
            continue
        item: Dict[str, Any] = {
            "categoryScores": _category_scores(entry.get("categoryScores"), warnings, "perImage.categoryScores"),
            "elements": _str_list(entry.get("elements")),
            "journeyGaps": _str_list(entry.get("journeyGaps")),
            "inconsistencies": _str_list(entry.get("inconsistencies")),
        }
        score = _number(entry.get("overallScore"))
        if score is not None:
            item["overallScore"] = _clamp(score, 0, 100)
        per_image.append(item)

    data = {
        "summary": summary,
        "insights": insights,
        "recommendations": recommendations,
        "patterns": patterns,
        "perImage": per_image,
        "confidence": _confidence(candidate.get("confidence"), warnings),
    }
    ok = bool(summary or insights or recommendations or patterns)
    return Normalized(ok=ok, data=data, warnings=warnings)

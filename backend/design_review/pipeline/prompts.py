from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

SYSTEM_PROMPT = (
    "You are a senior UX reviewer. Answer with a single JSON object and nothing else."
)

CONTEXT_PROMPT = """Analyze this UI/UX interface image and identify its context.
Return JSON:
{
  "primaryType": "dashboard|landing|app|form|ecommerce|content|portfolio|saas|mobile",
  "subTypes": ["..."],
  "domain": "finance|healthcare|education|retail|technology|general",
  "complexity": "simple|moderate|complex",
  "userIntent": ["..."],
  "platform": "web|mobile|desktop",
  "targetAudience": "...",
  "confidence": 0.0-1.0
}"""

VISION_PROMPT = """List the visible interface elements and text of each image, in the order given.
Return JSON: {"images": [{"elements": ["button", "nav bar", ...], "text": ["..."]}]}"""


def _context_block(context: Dict[str, Any], user_context: Optional[str]) -> str:
    lines = [f"Detected context: {json.dumps(context, sort_keys=True)}"]
    if user_context:
        lines.append(f"Reviewer notes: {user_context}")
    return "\n".join(lines)


def analysis_prompt(context: Dict[str, Any], vision: List[Dict[str, Any]], user_context: Optional[str]) -> str:
    return "\n\n".join([
        "Critique this interface for usability, accessibility, visual hierarchy and consistency.",
        _context_block(context, user_context),
        f"Vision findings (may be empty): {json.dumps(vision, sort_keys=True)}",
        """Return JSON:
{
  "summary": {"overallScore": 0-100, "categoryScores": {"usability": 0-100, "accessibility": 0-100,
              "visual": 0-100, "content": 0-100}, "keyIssues": ["..."], "strengths": ["..."]},
  "suggestions": [{"title": "...", "description": "...", "impact": "high|medium|low", "category": "..."}],
  "visualAnnotations": [{"x": 0-1, "y": 0-1, "title": "...", "severity": "critical|suggestion|positive"}],
  "confidence": 0.0-1.0
}""",
    ])


def group_prompt(
    context: Dict[str, Any],
    vision: List[Dict[str, Any]],
    prompt: Optional[str],
    group_context: Optional[str],
    image_count: int,
) -> str:
    return "\n\n".join([
        f"Review these {image_count} screens as one product flow, in the order given.",
        f"Question: {prompt}" if prompt else "Assess consistency and flow across the screens.",
        _context_block(context, group_context),
        f"Vision findings (may be empty): {json.dumps(vision, sort_keys=True)}",
        """Return JSON:
{
  "summary": {"overallScore": 0-100, "consistency": 0-100, "thematicCoherence": 0-100, "userFlowContinuity": 0-100},
  "insights": ["..."],
  "recommendations": ["..."],
  "patterns": {"commonElements": ["..."], "designInconsistencies": ["..."], "userJourneyGaps": ["..."]},
  "perImage": [{"overallScore": 0-100, "categoryScores": {}, "elements": [], "journeyGaps": [], "inconsistencies": []}],
  "confidence": 0.0-1.0
}""",
    ])

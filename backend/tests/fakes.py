"""
Scripted stand-ins for model providers and canned replies used across tests
"""
import json
from typing import Any, Callable, List, Union

from design_review.inference.base import ModelProvider, ProviderError, ProviderErrorKind, ProviderRequest

Reply = Union[str, Exception, Callable[[ProviderRequest], str]]

CONTEXT_REPLY = json.dumps({
    "primaryType": "dashboard",
    "domain": "finance",
    "userIntent": ["monitor revenue"],
    "confidence": 0.5,
})

VISION_REPLY = json.dumps({
    "images": [{"elements": ["chart", "sidebar", "filter bar"], "text": ["Revenue"]}],
})

AI_REPLY = json.dumps({
    "summary": {
        "overallScore": 78,
        "categoryScores": {"usability": 80, "accessibility": 70, "visual": 82, "content": 75},
        "keyIssues": ["Low contrast on secondary labels"],
        "strengths": ["Clear hierarchy"],
    },
    "suggestions": [{"title": "Increase label contrast", "impact": "high", "category": "accessibility"}],
    "visualAnnotations": [{"x": 0.2, "y": 0.4, "title": "Faint label", "severity": "critical"}],
    "confidence": 0.8,
})

GROUP_VISION_REPLY = json.dumps({
    "images": [
        {"elements": ["header", "search", "product grid"], "text": ["Shop"]},
        {"elements": ["header", "search", "cart summary"], "text": ["Cart"]},
    ],
})

GROUP_AI_REPLY = json.dumps({
    "analysis": {
        "summary": {"overallScore": 74},
        "insights": ["Navigation stays consistent between screens"],
        "recommendations": ["Keep the cart badge visible on the product grid"],
        "patterns": {
            "commonElements": ["Header", "brand colours"],
            "designInconsistencies": ["Button radius differs"],
            "userJourneyGaps": [],
        },
        "perImage": [
            {"overallScore": 80, "categoryScores": {"usability": 80, "visual": 70},
             "elements": ["header", "search", "product grid"]},
            {"overallScore": 68, "categoryScores": {"usability": 60, "visual": 70},
             "elements": ["header", "search", "cart summary"], "journeyGaps": ["No way back to results"]},
        ],
        "confidence": 0.75,
    }
})


def transient(message: str = "upstream timed out") -> ProviderError:
    return ProviderError(ProviderErrorKind.TRANSIENT, message)


def fatal_config(message: str = "OPENAI_API_KEY is not configured for openai") -> ProviderError:
    return ProviderError(ProviderErrorKind.FATAL_CONFIG, message)


class FakeProvider(ModelProvider):
    """
    Replays `replies` in order; the last reply repeats once the script runs out.

    A reply may be text, an exception to raise, or a callable taking the request.
    """

    def __init__(self, name: str, *replies: Reply):
        self.name = name
        self.replies: List[Reply] = list(replies) or [""]
        self.calls: List[ProviderRequest] = []

    def call(self, request: ProviderRequest, *, timeout: float) -> str:
        self.calls.append(request)
        reply: Any = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return reply

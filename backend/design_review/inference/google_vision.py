from __future__ import annotations

import json

from ..config import settings
from .base import ModelProvider, ProviderError, ProviderErrorKind, ProviderRequest, post_json, require_key

ANNOTATE_URL = "https://vision.googleapis.com/v1/images:annotate"

FEATURES = [
    {"type": "LABEL_DETECTION", "maxResults": 20},
    {"type": "TEXT_DETECTION"},
    {"type": "OBJECT_LOCALIZATION", "maxResults": 30},
    {"type": "IMAGE_PROPERTIES"},
]


class GoogleVisionProvider(ModelProvider):
    """
    Cloud Vision `images:annotate`.

    Not a language model: the prompt is ignored and the reply is the raw
    annotation JSON, one entry per image in request order.
    """

    name = "google"

    def __init__(self, api_key: str | None = None):
        self.api_key = settings.GOOGLE_VISION_API_KEY if api_key is None else api_key

    def call(self, request: ProviderRequest, *, timeout: float) -> str:
        key = require_key(self.api_key, provider=self.name, setting="GOOGLE_VISION_API_KEY")
        if not request.image_urls:
            raise ProviderError(ProviderErrorKind.INVALID_REQUEST, "google vision needs at least one image")

        payload = {
            "requests": [
                {"image": {"source": {"imageUri": url}}, "features": FEATURES}
                for url in request.image_urls
            ]
        }
        data = post_json(
            f"{ANNOTATE_URL}?key={key}",
            payload=payload,
            headers={},
            timeout=timeout,
            provider=self.name,
        )
        responses = data.get("responses")
        if not isinstance(responses, list):
            raise ProviderError(ProviderErrorKind.INVALID_RESPONSE, "google vision reply has no responses")
        errors = [r["error"] for r in responses if isinstance(r, dict) and r.get("error")]
        if errors and len(errors) == len(responses):
            raise ProviderError(ProviderErrorKind.INVALID_RESPONSE, f"google vision failed every image: {errors[0]}")
        return json.dumps({"annotations": responses})

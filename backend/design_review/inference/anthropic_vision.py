from __future__ import annotations

from typing import Any, Dict, List

from ..config import settings
from .base import ModelProvider, ProviderError, ProviderErrorKind, ProviderRequest, post_json, require_key

MESSAGES_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"


class AnthropicProvider(ModelProvider):
    name = "anthropic"

    def __init__(self, api_key: str | None = None):
        self.api_key = settings.ANTHROPIC_API_KEY if api_key is None else api_key

    def call(self, request: ProviderRequest, *, timeout: float) -> str:
        key = require_key(self.api_key, provider=self.name, setting="ANTHROPIC_API_KEY")
        content: List[Dict[str, Any]] = [
            {"type": "image", "source": {"type": "url", "url": url}} for url in request.image_urls
        ]
        content.append({"type": "text", "text": request.prompt})
        payload: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": [{"role": "user", "content": content}],
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt

        data = post_json(
            MESSAGES_URL,
            payload=payload,
            headers={"x-api-key": key, "anthropic-version": API_VERSION},
            timeout=timeout,
            provider=self.name,
        )
        texts = [
            block.get("text", "")
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        text = "".join(texts).strip()
        if not text:
            raise ProviderError(ProviderErrorKind.INVALID_RESPONSE, "anthropic returned no text blocks")
        return text

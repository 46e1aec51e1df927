from __future__ import annotations

from typing import Any, Dict, List

from ..config import settings
from .base import ModelProvider, ProviderError, ProviderErrorKind, ProviderRequest, post_json, require_key


class OpenAIProvider(ModelProvider):
    """Chat completions endpoint; images are passed as `image_url` content parts."""

    name = "openai"

    def __init__(self, api_key: str | None = None, base_url: str | None = None):
        self.api_key = settings.OPENAI_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")

    def _messages(self, request: ProviderRequest) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        content: List[Dict[str, Any]] = [{"type": "text", "text": request.prompt}]
        for url in request.image_urls:
            content.append({"type": "image_url", "image_url": {"url": url, "detail": "high"}})
        messages.append({"role": "user", "content": content})
        return messages

    def call(self, request: ProviderRequest, *, timeout: float) -> str:
        key = require_key(self.api_key, provider=self.name, setting="OPENAI_API_KEY")
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": self._messages(request),
            "max_tokens": request.max_tokens,
        }
        if request.json_response:
            payload["response_format"] = {"type": "json_object"}

        data = post_json(
            f"{self.base_url}/chat/completions",
            payload=payload,
            headers={"Authorization": f"Bearer {key}"},
            timeout=timeout,
            provider=self.name,
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(ProviderErrorKind.INVALID_RESPONSE, "openai reply has no message content") from e
        if not content:
            raise ProviderError(ProviderErrorKind.INVALID_RESPONSE, "openai returned empty content")
        return content

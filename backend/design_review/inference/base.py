from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from ..logger import logger


class ProviderErrorKind(str, Enum):
    TRANSIENT = "transient"
    FATAL_CONFIG = "fatal_config"
    INVALID_REQUEST = "invalid_request"
    INVALID_RESPONSE = "invalid_response"


class ProviderError(Exception):
    """Failure raised by a provider adapter. Retry decisions read `kind`, never the message."""

    def __init__(self, kind: ProviderErrorKind, message: str, status_code: Optional[int] = None):
        self.kind = ProviderErrorKind(kind)
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind == ProviderErrorKind.TRANSIENT


@dataclass
class ProviderRequest:
    provider: str
    model: str
    prompt: str
    image_urls: List[str] = field(default_factory=list)
    system_prompt: Optional[str] = None
    max_tokens: int = 2048
    json_response: bool = True

    @property
    def operation_key(self) -> str:
        return f"{self.provider}:{self.model}"


class ModelProvider:
    """An external model endpoint. `call` returns the raw text the model produced."""

    name = "provider"

    def call(self, request: ProviderRequest, *, timeout: float) -> str:
        raise NotImplementedError


def classify_status(status_code: int) -> ProviderErrorKind:
    if status_code in (401, 403, 404):
        return ProviderErrorKind.FATAL_CONFIG
    if status_code == 429 or status_code >= 500:
        return ProviderErrorKind.TRANSIENT
    if 400 <= status_code < 500:
        return ProviderErrorKind.INVALID_REQUEST
    return ProviderErrorKind.INVALID_RESPONSE


def post_json(
    url: str,
    *,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    timeout: float,
    provider: str,
) -> Dict[str, Any]:
    """POST a JSON body and return the decoded JSON reply, mapping every failure to a ProviderError."""
    try:
        r = requests.post(url, json=payload, headers=headers, timeout=timeout)
    except (requests.Timeout, requests.ConnectionError) as e:
        raise ProviderError(ProviderErrorKind.TRANSIENT, f"{provider} unreachable: {e}") from e
    except requests.RequestException as e:
        raise ProviderError(ProviderErrorKind.INVALID_REQUEST, f"{provider} request failed: {e}") from e

    if r.status_code >= 400:
        kind = classify_status(r.status_code)
        logger.warning(
            f"{provider} returned HTTP {r.status_code}",
            extra={"provider": provider, "http_status_code": r.status_code, "error_kind": kind.value},
        )
        raise ProviderError(kind, f"{provider} HTTP {r.status_code}: {r.text[:500]}", status_code=r.status_code)

    try:
        return r.json()
    except ValueError as e:
        raise ProviderError(ProviderErrorKind.INVALID_RESPONSE, f"{provider} returned non-JSON body") from e


def require_key(value: str, *, provider: str, setting: str) -> str:
    if not value:
        raise ProviderError(ProviderErrorKind.FATAL_CONFIG, f"{setting} is not configured for {provider}")
    return value

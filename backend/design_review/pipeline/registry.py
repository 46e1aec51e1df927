from __future__ import annotations

from functools import lru_cache
from typing import Dict, Mapping, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import Settings, settings as default_settings
from ..inference.anthropic_vision import AnthropicProvider
from ..inference.base import ModelProvider
from ..inference.google_vision import GoogleVisionProvider
from ..inference.openai_vision import OpenAIProvider
from .dispatch import CeleryStageDispatcher, StageDispatcher
from .gateway import CircuitBreakerRegistry, ProviderGateway
from .orchestrator import PipelineContext, StageOrchestrator


@lru_cache(maxsize=1)
def get_breaker_registry() -> CircuitBreakerRegistry:
    """Breaker state shared by every pipeline built in this process."""
    return CircuitBreakerRegistry(
        failure_threshold=default_settings.CIRCUIT_FAILURE_THRESHOLD,
        cooldown_seconds=default_settings.CIRCUIT_COOLDOWN_SECONDS,
    )


def build_providers(cfg: Settings) -> Dict[str, ModelProvider]:
    return {
        "openai": OpenAIProvider(api_key=cfg.OPENAI_API_KEY, base_url=cfg.OPENAI_BASE_URL),
        "google": GoogleVisionProvider(api_key=cfg.GOOGLE_VISION_API_KEY),
        "anthropic": AnthropicProvider(api_key=cfg.ANTHROPIC_API_KEY),
    }


def build_pipeline(
    *,
    session_factory: Optional[async_sessionmaker] = None,
    dispatcher: Optional[StageDispatcher] = None,
    providers: Optional[Mapping[str, ModelProvider]] = None,
    breakers: Optional[CircuitBreakerRegistry] = None,
    cfg: Optional[Settings] = None,
) -> StageOrchestrator:
    cfg = cfg or default_settings
    if session_factory is None:
        from ..db import AsyncSessionLocal

        session_factory = AsyncSessionLocal

    gateway = ProviderGateway(
        providers if providers is not None else build_providers(cfg),
        breakers or get_breaker_registry(),
        max_attempts=cfg.PROVIDER_MAX_ATTEMPTS,
        backoff_base_seconds=cfg.PROVIDER_BACKOFF_BASE_SECONDS,
        backoff_max_seconds=cfg.PROVIDER_BACKOFF_MAX_SECONDS,
        timeout_seconds=cfg.PROVIDER_TIMEOUT_SECONDS,
    )
    return StageOrchestrator(PipelineContext(
        session_factory=session_factory,
        gateway=gateway,
        dispatcher=dispatcher or CeleryStageDispatcher(cfg.PIPELINE_QUEUE),
        settings=cfg,
    ))


@lru_cache(maxsize=1)
def get_pipeline() -> StageOrchestrator:
    """FastAPI dependency; tests replace it through `app.dependency_overrides`."""
    return build_pipeline()

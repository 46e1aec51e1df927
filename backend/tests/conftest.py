import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from dataclasses import dataclass, field
from typing import Dict

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from design_review.config import Settings
from design_review.models import Base
from design_review.pipeline.dispatch import LocalQueueDispatcher
from design_review.pipeline.gateway import CircuitBreakerRegistry
from design_review.pipeline.orchestrator import StageOrchestrator
from design_review.pipeline.registry import build_pipeline

from fakes import AI_REPLY, CONTEXT_REPLY, VISION_REPLY, FakeProvider, transient


def make_settings(**overrides) -> Settings:
    values = dict(
        CONTEXT_PROVIDER="ctx",
        CONTEXT_MODEL="ctx-model",
        AI_PROVIDER="ai",
        AI_MODEL="ai-model",
        VISION_PROVIDERS=["vision-a", "vision-b"],
        PROVIDER_MAX_ATTEMPTS=3,
        PROVIDER_BACKOFF_BASE_SECONDS=0.0,
        PROVIDER_BACKOFF_MAX_SECONDS=0.0,
        PROVIDER_TIMEOUT_SECONDS=5.0,
        REQUIRE_VISION_RESULTS=False,
    )
    values.update(overrides)
    return Settings(**values)


@dataclass
class Harness:
    orchestrator: StageOrchestrator
    dispatcher: LocalQueueDispatcher
    providers: Dict[str, FakeProvider] = field(default_factory=dict)

    async def run_all(self) -> int:
        return await self.dispatcher.drain(self.orchestrator)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def default_providers():
    """Context and ai succeed; vision-a succeeds, vision-b always times out."""
    return {
        "ctx": FakeProvider("ctx", CONTEXT_REPLY),
        "vision-a": FakeProvider("vision-a", VISION_REPLY),
        "vision-b": FakeProvider("vision-b", transient()),
        "ai": FakeProvider("ai", AI_REPLY),
    }


@pytest.fixture
def make_harness(session_factory, default_providers):
    def _make(providers=None, **settings_overrides) -> Harness:
        merged = dict(default_providers)
        merged.update(providers or {})
        dispatcher = LocalQueueDispatcher()
        orchestrator = build_pipeline(
            session_factory=session_factory,
            dispatcher=dispatcher,
            providers=merged,
            breakers=CircuitBreakerRegistry(failure_threshold=50),
            cfg=make_settings(**settings_overrides),
        )
        return Harness(orchestrator=orchestrator, dispatcher=dispatcher, providers=merged)

    return _make


@pytest.fixture
def harness(make_harness) -> Harness:
    return make_harness()

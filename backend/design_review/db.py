from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from .config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=False, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, class_=AsyncSession)

# Celery tasks each run in a fresh event loop; pooled connections cannot cross loops.
task_engine = create_async_engine(settings.DATABASE_URL, echo=False, poolclass=NullPool)
TaskSessionLocal = async_sessionmaker(bind=task_engine, autoflush=False, expire_on_commit=False, class_=AsyncSession)

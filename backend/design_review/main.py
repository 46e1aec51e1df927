from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
import time
from .db import engine
from .models import Base
from .logger import logger
from .exceptions import (
    DesignReviewError,
    design_review_exception_handler,
    http_exception_handler,
    generic_exception_handler,
)
from .routes.analyses import router as analyses_router
from .routes.group_jobs import router as group_jobs_router
from .routes.jobs import router as jobs_router
from .schemas import HealthResponse, VersionResponse

API_VERSION = "1.0.0"

app = FastAPI(
    title="Design Review Pipeline API",
    version=API_VERSION,
    description="Multi-stage UX analysis of single screens and screen groups"
)

app.add_exception_handler(DesignReviewError, design_review_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        f"Request: {request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
        }
    )

    response = await call_next(request)

    duration = time.time() - start_time
    logger.info(
        f"Response: {response.status_code}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
    )

    return response

app.include_router(jobs_router)
app.include_router(group_jobs_router)
app.include_router(analyses_router)

@app.on_event("startup")
async def startup():
    logger.info("Starting Design Review Pipeline API")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

@app.on_event("shutdown")
async def shutdown():
    logger.info("Shutting down Design Review Pipeline API")

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return {"status": "ok"}

@app.get("/version", response_model=VersionResponse)
async def version():
    return {"version": API_VERSION}

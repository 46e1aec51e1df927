from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from typing import Optional
import traceback
from .logger import logger


class DesignReviewError(Exception):
    """Base exception for the analysis pipeline"""
    def __init__(self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(self.message)


class TransientProviderError(DesignReviewError):
    """Network, timeout or 5xx-equivalent failure from a model provider; retryable"""
    def __init__(self, message: str = "Provider temporarily unavailable", operation_key: Optional[str] = None):
        self.operation_key = operation_key
        super().__init__(message, "TRANSIENT_PROVIDER_ERROR", 503)


class CircuitOpenError(TransientProviderError):
    """Raised instead of calling a provider whose breaker is open"""
    def __init__(self, operation_key: str, retry_in_seconds: float = 0.0):
        self.retry_in_seconds = retry_in_seconds
        super().__init__(f"Circuit open for {operation_key}", operation_key=operation_key)
        self.code = "CIRCUIT_OPEN"


class FatalConfigError(DesignReviewError):
    """Missing credentials or unavailable model; never retried"""
    def __init__(self, message: str = "Provider is not configured"):
        super().__init__(message, "FATAL_CONFIG_ERROR", 500)


class AnalysisValidationError(DesignReviewError):
    """Malformed request, rejected before any stage runs"""
    def __init__(self, message: str = "Invalid analysis request"):
        super().__init__(message, "VALIDATION_ERROR", 400)


class ConstraintConflict(DesignReviewError):
    """Version or uniqueness race; recovered locally by re-reading the winning row"""
    def __init__(self, message: str = "Concurrent write conflict"):
        super().__init__(message, "CONSTRAINT_CONFLICT", 409)


class StageFailedError(DesignReviewError):
    """Raised by a stage handler when its own output cannot be produced"""
    def __init__(self, stage: str, message: str, metadata: Optional[dict] = None):
        self.stage = stage
        self.metadata = metadata or {}
        super().__init__(message, "STAGE_FAILED", 502)


class JobNotFoundError(DesignReviewError):
    """Raised when job is not found"""
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", "JOB_NOT_FOUND", 404)


class SessionNotFoundError(DesignReviewError):
    """Raised when a group session is not found"""
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found", "SESSION_NOT_FOUND", 404)


class InvalidJobStateError(DesignReviewError):
    """Raised when job is in invalid state for operation"""
    def __init__(self, job_id: str, current_state: str, expected_state: str):
        super().__init__(
            f"Job {job_id} is in state '{current_state}', expected '{expected_state}'",
            "INVALID_JOB_STATE",
            400,
        )


async def design_review_exception_handler(request: Request, exc: DesignReviewError):
    """Handle custom application exceptions"""
    logger.error(
        f"Application exception: {exc.code} - {exc.message}",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "request_path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "status_code": exc.status_code,
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    logger.warning(
        f"HTTP {exc.status_code}: {exc.detail}",
        extra={
            "http_status_code": exc.status_code,
            "http_detail": exc.detail,
            "request_path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": exc.detail,
            "status_code": exc.status_code,
        }
    )


async def generic_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__} - {str(exc)}",
        extra={
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
            "request_path": request.url.path,
            "exc_traceback": traceback.format_exc(),
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_SERVER_ERROR",
            "message": "An internal error occurred. Please try again later.",
        }
    )

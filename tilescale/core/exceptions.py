"""
Global Exception Handling

Provides the pipeline error taxonomy, structured error responses and a
circuit breaker for the remote enhancement service.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tilescale.core.logging import get_logger, job_id_var

logger = get_logger(__name__)

GENERIC_SERVER_ERROR = "Failed to enhance image"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Custom Exceptions
# =============================================================================

class TilescaleError(Exception):
    """Base exception for the upscaling pipeline."""
    
    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)
    
    @property
    def is_client_error(self) -> bool:
        return self.code < 500


class InvalidSettingsError(TilescaleError):
    """Raised when tile size, overlap, upscale factor or limits are invalid."""
    
    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, stage="validation", **kwargs)


class TooManyTilesError(TilescaleError):
    """Raised when the tile grid exceeds the safe ceiling."""
    
    def __init__(self, tile_count: int, max_tiles: int, **kwargs):
        super().__init__(
            f"Tile count too large ({tile_count} > {max_tiles}). "
            f"Please increase tile size or reduce overlap.",
            code=400,
            stage="tiling",
            **kwargs
        )
        self.details["tile_count"] = tile_count
        self.details["max_tiles"] = max_tiles


class UnsupportedImageError(TilescaleError):
    """Raised when the uploaded image is missing, unreadable, too large or of a disallowed format."""
    
    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, stage="validation", **kwargs)


class RemoteEnhancementError(TilescaleError):
    """Raised when the remote enhancer keeps failing after all retries."""
    
    def __init__(
        self,
        message: str,
        attempts: int = 0,
        cause: Optional[BaseException] = None,
        http_status: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault("stage", "enhancement")
        super().__init__(message, code=502, **kwargs)
        self.attempts = attempts
        self.cause = cause
        self.details["attempts"] = attempts
        self.details["http_status"] = http_status
        if cause is not None:
            self.details["cause"] = f"{type(cause).__name__}: {cause}"


class MergeError(TilescaleError):
    """Raised when the merged canvas has pixels not covered by any tile."""
    
    def __init__(self, message: str, uncovered_pixels: int = 0, **kwargs):
        super().__init__(message, code=500, stage="merging", **kwargs)
        self.details["uncovered_pixels"] = uncovered_pixels


class PipelineTimeoutError(TilescaleError):
    """Raised when a pipeline run exceeds its overall deadline."""
    
    def __init__(self, timeout_seconds: float, **kwargs):
        super().__init__(
            f"Pipeline run exceeded its deadline of {timeout_seconds:g}s",
            code=504,
            **kwargs
        )
        self.details["timeout_seconds"] = timeout_seconds


class PipelineCancelledError(TilescaleError):
    """Raised when a pipeline run is cancelled from outside."""
    
    def __init__(self, message: str = "Pipeline run was cancelled", **kwargs):
        super().__init__(message, code=499, **kwargs)


class InternalError(TilescaleError):
    """Raised for anything unexpected inside the pipeline."""
    
    def __init__(self, message: str = "Internal server error", **kwargs):
        super().__init__(message, code=500, **kwargs)


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for the remote enhancement service.
    
    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests fail fast
    - HALF_OPEN: Testing if service is recovered
    
    A failure is one enhancement call that exhausted its retries, not a
    single attempt.
    """
    
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 3
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        
        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = "CLOSED"
        self._half_open_calls = 0
        self._half_open_successes = 0
    
    @property
    def state(self) -> str:
        """Get current circuit breaker state."""
        if self._state == "OPEN":
            if self._last_failure_time:
                elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
                if elapsed >= self.recovery_timeout:
                    self._state = "HALF_OPEN"
                    self._half_open_calls = 0
                    self._half_open_successes = 0
        return self._state
    
    def can_execute(self) -> bool:
        """Check if request can proceed."""
        state = self.state
        
        if state == "CLOSED":
            return True
        elif state == "OPEN":
            return False
        elif state == "HALF_OPEN":
            # Counted on admission, not on success
            if self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False
        
        return False
    
    def record_success(self):
        """Record a successful call."""
        if self._state == "HALF_OPEN":
            self._half_open_successes += 1
            if self._half_open_successes >= self.half_open_max_calls:
                self._state = "CLOSED"
                self._failure_count = 0
                logger.info(
                    "circuit_breaker_closed",
                    circuit=self.name,
                    message="Service recovered"
                )
        elif self._state == "CLOSED":
            self._failure_count = 0
    
    def record_failure(self, error: Optional[BaseException] = None):
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = datetime.now(timezone.utc)
        
        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_reopened",
                circuit=self.name,
                error=str(error) if error else None
            )
        elif self._failure_count >= self.failure_threshold:
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._failure_count,
                error=str(error) if error else None
            )
    
    def reset(self):
        """Reset the circuit breaker."""
        self._state = "CLOSED"
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0
        self._half_open_successes = 0


# =============================================================================
# Exception Handlers
# =============================================================================

def build_error_response(exc: TilescaleError) -> Dict[str, Any]:
    """Render an error for the caller, hiding internal detail on server errors."""
    if exc.is_client_error:
        return {
            "error": exc.message,
            "job_id": exc.job_id,
            "code": exc.code,
            "stage": exc.stage,
            "details": exc.details,
            "timestamp": _utc_timestamp()
        }
    
    return {
        "error": GENERIC_SERVER_ERROR,
        "job_id": exc.job_id,
        "code": exc.code,
        "timestamp": _utc_timestamp()
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""
    
    @app.exception_handler(TilescaleError)
    async def tilescale_exception_handler(request: Request, exc: TilescaleError):
        log = logger.warning if exc.is_client_error else logger.error
        log(
            "tilescale_exception",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            stage=exc.stage,
            details=exc.details,
            path=str(request.url.path)
        )
        
        return JSONResponse(
            status_code=exc.code,
            content=build_error_response(exc)
        )
    
    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        job_id = job_id_var.get()
        
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )
        
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "job_id": job_id,
                "code": 500,
                "timestamp": _utc_timestamp()
            }
        )

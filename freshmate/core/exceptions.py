"""
Global Exception Handling

Provides the detection error hierarchy and the FastAPI handlers that turn
it into structured JSON responses.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from freshmate.core.logging import get_logger, request_id_var

logger = get_logger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Custom Exceptions
# =============================================================================

class FreshmateBaseException(Exception):
    """Base exception for the ripeness service."""

    kind = "internal_error"

    def __init__(
        self,
        message: str,
        code: int = 500,
        request_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.request_id = request_id or request_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "kind": self.kind,
            "message": self.message,
            "code": self.code,
            "request_id": self.request_id,
            "stage": self.stage,
            "details": self.details,
            "timestamp": _utc_now_iso(),
        }


class ValidationError(FreshmateBaseException):
    """Raised when an uploaded image fails validation."""

    kind = "validation_error"

    def __init__(self, message: str, messages: Optional[Dict[str, list]] = None, **kwargs):
        super().__init__(message, code=422, **kwargs)
        self.messages = messages or {}


class ServiceUnavailableError(FreshmateBaseException):
    """Raised when the inference service fails its health check."""

    kind = "service_unavailable"

    def __init__(self, message: str = "ML service is not available", **kwargs):
        kwargs.setdefault("stage", "health_check")
        super().__init__(message, code=503, **kwargs)


class StorageError(FreshmateBaseException):
    """Raised when storage operations fail."""

    kind = "storage_failure"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class InferenceError(FreshmateBaseException):
    """Raised when the inference service call fails or returns unusable data."""

    kind = "inference_failure"

    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        if http_status is not None:
            self.details["http_status"] = http_status


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc: ValidationError):
        logger.info(
            "upload_validation_failed",
            error=exc.message,
            messages=exc.messages,
            path=str(request.url.path)
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": "Validation failed",
                "messages": exc.messages,
            }
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        messages: Dict[str, list] = {}
        for error in exc.errors():
            field = str(error.get("loc", ("body",))[-1])
            messages.setdefault(field, []).append(error.get("msg", "Invalid value"))

        return JSONResponse(
            status_code=422,
            content={
                "error": "Validation failed",
                "messages": messages,
            }
        )

    @app.exception_handler(FreshmateBaseException)
    async def freshmate_exception_handler(request: Request, exc: FreshmateBaseException):
        logger.error(
            "request_failed",
            error=exc.message,
            kind=exc.kind,
            code=exc.code,
            stage=exc.stage,
            details=exc.details,
            path=str(request.url.path)
        )

        return JSONResponse(status_code=exc.code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
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
                "error": True,
                "kind": FreshmateBaseException.kind,
                "message": "Internal server error",
                "code": 500,
                "request_id": request_id_var.get(),
                "timestamp": _utc_now_iso(),
            }
        )

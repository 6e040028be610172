# app/core/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.logging_config import logger


class ServiceError(Exception):
    """Base for errors that map 1:1 onto an HTTP response."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, extra: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.extra = extra or {}
        super().__init__(self.message)


class NotFound(ServiceError):
    status_code = 404
    default_message = "Not found"


class Forbidden(ServiceError):
    status_code = 403
    default_message = "Access denied"


class Gone(ServiceError):
    status_code = 410
    default_message = "Session expired"


class Conflict(ServiceError):
    status_code = 409
    default_message = "Conflict"


class ValidationError(ServiceError):
    status_code = 400
    default_message = "Invalid request"


class StorageError(ServiceError):
    status_code = 500
    default_message = "Failed to store image"


class ExtractionError(ServiceError):
    # Alleen synchroon zichtbaar bij /api/ai/extract; in de worker wordt
    # de melding op de PendingUpload opgeslagen.
    status_code = 502
    default_message = "Failed to process image"


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "service_error",
            path=str(request.url.path),
            error_type=type(exc).__name__,
            error=exc.message,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, **exc.extra},
    )

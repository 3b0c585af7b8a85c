"""API error helpers and exception handlers."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..errors import IngestionError, MalformedMultipart, SessionTooLarge, Unauthorized


class APIError(Exception):
    """Application-level API error with status/code mapping."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


_STATUS_BY_ERROR = (
    (Unauthorized, 403),
    (SessionTooLarge, 413),
    (MalformedMultipart, 400),
)


def api_error_from_ingestion(exc: IngestionError) -> APIError:
    """Translate a session-level ingestion failure into the API contract."""
    status_code = next((status for kind, status in _STATUS_BY_ERROR if isinstance(exc, kind)), 400)
    return APIError(status_code, exc.code, exc.message, exc.details)


async def api_error_handler(_: Request, exc: APIError) -> JSONResponse:
    """Render contract-compliant error response."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def ingestion_error_handler(_: Request, exc: IngestionError) -> JSONResponse:
    err = api_error_from_ingestion(exc)
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    """Normalize FastAPI validation errors to API contract shape."""
    return JSONResponse(
        status_code=400,
        content={
            "error": {
                "code": "BAD_REQUEST",
                "message": "Invalid request payload",
                "details": {"errors": exc.errors()},
            }
        },
    )

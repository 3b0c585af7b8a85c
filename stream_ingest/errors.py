"""Ingestion error taxonomy."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .contracts import ReasonCode


class IngestionError(Exception):
    """Base class for failures raised by the ingestion core."""

    code: ReasonCode = "MALFORMED_MULTIPART"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class MalformedMultipart(IngestionError):
    """Boundary missing or unterminated, or a header block cannot be parsed."""

    code: ReasonCode = "MALFORMED_MULTIPART"


class Unauthorized(IngestionError):
    """Antiforgery gate did not pass."""

    code: ReasonCode = "UNAUTHORIZED"


class SessionTooLarge(IngestionError):
    """Declared body length exceeds the hard ceiling."""

    code: ReasonCode = "SESSION_TOO_LARGE"


class SizeLimitExceeded(IngestionError):
    """A read would cross the per-section limit or the session budget."""

    code: ReasonCode = "SIZE_LIMIT_EXCEEDED"

    def __init__(self, message: str, scope: str, limit: int) -> None:
        super().__init__(message, {"scope": scope, "limit": limit})
        self.scope = scope
        self.limit = limit

    @property
    def session_wide(self) -> bool:
        return self.scope == "session"


class ScanError(IngestionError):
    """Scan-verdict provider could not produce a verdict."""

    code: ReasonCode = "SCAN_ERROR"


class StorageError(IngestionError):
    """Storage backend failed to persist content."""

    code: ReasonCode = "STORAGE_ERROR"

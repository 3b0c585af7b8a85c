"""Streaming upload API."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.requests import ClientDisconnect

from .....errors import IngestionError
from .....session import IngestionRequest
from ....errors import APIError, api_error_from_ingestion
from ....runtime import IngestionRuntime
from ..deps import antiforgery_verified, get_runtime

router = APIRouter(prefix="/uploads", tags=["uploads"])
logger = logging.getLogger("stream_ingest.web.api")


class ManifestEntryModel(BaseModel):
    field_name: str
    sanitized_name: Optional[str] = None
    disposition: str
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    storage_locator: Optional[str] = None
    byte_count: Optional[int] = None
    checksum: Optional[str] = None


class ManifestResponse(BaseModel):
    session_id: str
    entries: List[ManifestEntryModel]
    form_values: Dict[str, List[str]]
    bytes_read: int
    truncated: bool


class PolicyResponse(BaseModel):
    max_body_size: int
    max_section_size: int
    permitted_extensions: List[str]
    signature_extensions: List[str]
    scan_timeout: float
    allow_empty_files: bool
    value_length_limit: int
    value_count_limit: int


def _declared_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise APIError(400, "BAD_REQUEST", "Invalid Content-Length header") from exc
    if value < 0:
        raise APIError(400, "BAD_REQUEST", "Invalid Content-Length header")
    return value


@router.post("", response_model=ManifestResponse)
async def upload(
    request: Request,
    runtime: IngestionRuntime = Depends(get_runtime),
    verified: bool = Depends(antiforgery_verified),
) -> ManifestResponse:
    session = runtime.new_session()
    request.state.ingest_session_id = session.session_id
    ingest_request = IngestionRequest(
        content_type=request.headers.get("content-type"),
        body=request.stream(),
        declared_length=_declared_length(request),
        antiforgery_verified=verified,
    )
    timeout = runtime.settings.session_timeout_seconds
    try:
        manifest = await asyncio.wait_for(session.run(ingest_request), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise APIError(
            408,
            "REQUEST_TIMEOUT",
            "Upload did not complete in time",
            {"timeout_seconds": timeout},
        ) from exc
    except ClientDisconnect as exc:
        logger.info("client disconnected during upload session_id=%s", session.session_id)
        raise APIError(400, "CLIENT_DISCONNECTED", "Client disconnected before the upload finished") from exc
    except IngestionError as exc:
        raise api_error_from_ingestion(exc) from exc

    return ManifestResponse(**manifest.to_dict())


@router.get("/policy", response_model=PolicyResponse)
async def get_policy(runtime: IngestionRuntime = Depends(get_runtime)) -> PolicyResponse:
    return PolicyResponse(**runtime.policy.to_public_dict())

"""Top-level v1 API router."""

from __future__ import annotations

from fastapi import APIRouter

from .endpoints.uploads import router as uploads_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(uploads_router)

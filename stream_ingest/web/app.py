"""FastAPI app entrypoint for the streaming ingestion service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from ..errors import IngestionError
from ..observability import configure_logging
from .api.v1.router import api_v1_router
from .errors import APIError, api_error_handler, ingestion_error_handler, validation_error_handler
from .runtime import IngestionRuntime
from .settings import IngestSettings

logger = logging.getLogger("stream_ingest.web.api")


def create_app(
    settings: Optional[IngestSettings] = None,
    runtime: Optional[IngestionRuntime] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    if runtime is None:
        runtime = IngestionRuntime(settings or IngestSettings.from_env())
    configure_logging(runtime.settings.log_level)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title="Stream Ingest API", version="0.1.0", lifespan=lifespan)
    app.state.ingestion_runtime = runtime
    app.include_router(api_v1_router)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        start = perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (perf_counter() - start) * 1000
            logger.info(
                "api_request method=%s path=%s status=%s duration_ms=%.2f session_id=%s",
                request.method,
                request.url.path,
                500,
                duration_ms,
                getattr(request.state, "ingest_session_id", "-"),
            )
            raise

        duration_ms = (perf_counter() - start) * 1000
        logger.info(
            "api_request method=%s path=%s status=%s duration_ms=%.2f session_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            getattr(request.state, "ingest_session_id", "-"),
        )
        return response

    @app.get("/healthz", tags=["system"])
    async def healthz() -> dict:
        return {
            "status": "ok",
            "storage": runtime.settings.storage_backend,
            "scan": runtime.settings.scan_mode,
        }

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(IngestionError, ingestion_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    return app


def main() -> None:
    """Run development API server."""
    import uvicorn

    uvicorn.run("stream_ingest.web.app:create_app", factory=True, host="127.0.0.1", port=8000)

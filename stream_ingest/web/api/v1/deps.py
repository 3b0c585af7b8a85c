"""Dependency providers for v1 API."""

from __future__ import annotations

from hmac import compare_digest

from fastapi import Request

from ...runtime import IngestionRuntime


def get_runtime(request: Request) -> IngestionRuntime:
    """Access shared ingestion runtime from app state."""
    return request.app.state.ingestion_runtime


def antiforgery_verified(request: Request) -> bool:
    """Double-submit check: the header token must equal the cookie token.

    Token issuance belongs to the page that renders the form; this only
    compares the two values.
    """
    settings = get_runtime(request).settings
    if settings.antiforgery_mode == "off":
        return True
    cookie_token = request.cookies.get(settings.antiforgery_cookie, "")
    header_token = request.headers.get(settings.antiforgery_header, "")
    if not cookie_token or not header_token:
        return False
    return compare_digest(cookie_token.encode("utf-8"), header_token.encode("utf-8"))

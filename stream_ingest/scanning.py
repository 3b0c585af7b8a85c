"""Scan-verdict provider contract and implementations."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx

from .contracts import ScanVerdict
from .errors import ScanError
from .retry import RetryConfig, TransientError, retry_with_backoff

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeldContent:
    """A sealed holding-area file awaiting a verdict."""

    token: str
    path: Path
    size: int
    sha256: str


class ScanVerdictProvider(ABC):
    """External malware scanner; only the verdict matters to the core."""

    @abstractmethod
    async def submit(self, held: HeldContent) -> ScanVerdict:
        """Return "clean", "dirty" or "error"; may raise ScanError."""

    async def aclose(self) -> None:
        """Release provider resources."""


class StubScanProvider(ScanVerdictProvider):
    """Deterministic provider for local development: everything is clean."""

    def __init__(self, verdict: ScanVerdict = "clean", delay_seconds: float = 0.0) -> None:
        self.verdict = verdict
        self.delay_seconds = delay_seconds

    async def submit(self, held: HeldContent) -> ScanVerdict:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        logger.debug("stub scan token=%s verdict=%s", held.token, self.verdict)
        return self.verdict


async def _iter_file(path: Path, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
    handle = await asyncio.to_thread(open, path, "rb")
    try:
        while True:
            chunk = await asyncio.to_thread(handle.read, chunk_size)
            if not chunk:
                return
            yield chunk
    finally:
        await asyncio.to_thread(handle.close)


class HttpScanProvider(ScanVerdictProvider):
    """Streams held content to a scanning service over HTTP.

    The service answers ``{"verdict": "clean" | "dirty"}``. Connection errors,
    timeouts and 5xx/429 responses are retried with exponential backoff.
    """

    def __init__(
        self,
        scan_url: str,
        client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
        api_key: str = "",
    ) -> None:
        self.scan_url = scan_url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=60.0)
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self.api_key = api_key

    async def submit(self, held: HeldContent) -> ScanVerdict:
        try:
            return await retry_with_backoff(self._submit_once, self.retry_config, held)
        except ScanError:
            raise
        except Exception as exc:
            raise ScanError(f"Scan service request failed: {exc}") from exc

    async def _submit_once(self, held: HeldContent) -> ScanVerdict:
        headers = {
            "Content-Type": "application/octet-stream",
            "X-Upload-Token": held.token,
            "X-Content-Sha256": held.sha256,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = await self.client.post(self.scan_url, content=_iter_file(held.path), headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientError(str(exc)) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"Scan service returned {response.status_code}")
        if response.status_code >= 400:
            raise ScanError(f"Scan service rejected the request with {response.status_code}")

        try:
            verdict = str(response.json().get("verdict", "")).strip().lower()
        except ValueError as exc:
            raise ScanError("Scan service returned a non-JSON response") from exc
        if verdict not in ("clean", "dirty"):
            raise ScanError(f"Scan service returned unknown verdict {verdict!r}")
        return verdict  # type: ignore[return-value]

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

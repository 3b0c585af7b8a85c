"""Global pytest fixtures for deterministic test environment."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from stream_ingest.errors import ScanError, StorageError
from stream_ingest.multipart import iter_chunks
from stream_ingest.policy import Policy
from stream_ingest.quarantine import HoldingArea, QuarantineCoordinator
from stream_ingest.records import StorageMetadata, StorageReceipt
from stream_ingest.scanning import HeldContent, ScanVerdictProvider
from stream_ingest.session import IngestionRequest, IngestionSession
from stream_ingest.storage import LocalFileStorageAdapter, StorageAdapter

BOUNDARY = "----stream-ingest-test-boundary"
CONTENT_TYPE = f"multipart/form-data; boundary={BOUNDARY}"

# name, filename (None for plain fields), body, optional content type
Part = Tuple[str, Optional[str], bytes, Optional[str]]


@pytest.fixture(autouse=True)
def _isolate_runtime_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Clear local runtime env that can leak into tests on developer machines."""
    for key in (
        "STREAM_INGEST_POLICY_FILE",
        "STREAM_INGEST_MAX_BODY_BYTES",
        "STREAM_INGEST_MAX_SECTION_BYTES",
        "STREAM_INGEST_PERMITTED_EXTENSIONS",
        "STREAM_INGEST_SCAN_TIMEOUT_SECONDS",
        "STREAM_INGEST_SCAN_MODE",
        "STREAM_INGEST_SCAN_URL",
        "STREAM_INGEST_SCAN_API_KEY",
        "STREAM_INGEST_STORAGE_BACKEND",
        "STREAM_INGEST_ANTIFORGERY_MODE",
        "STREAM_INGEST_HOLDING_ROOT",
        "STREAM_INGEST_STORAGE_ROOT",
        "STREAM_INGEST_SQLITE_PATH",
        "STREAM_INGEST_SESSION_TIMEOUT_SECONDS",
        "STREAM_INGEST_LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)


def encode_part(name: str, filename: Optional[str], body: bytes, content_type: Optional[str] = None) -> bytes:
    disposition = f'Content-Disposition: form-data; name="{name}"'
    if filename is not None:
        disposition += f'; filename="{filename}"'
    lines = [disposition]
    if content_type:
        lines.append(f"Content-Type: {content_type}")
    head = "\r\n".join(lines).encode("utf-8")
    return b"--" + BOUNDARY.encode() + b"\r\n" + head + b"\r\n\r\n" + body + b"\r\n"


def encode_body(parts: Sequence[Part]) -> bytes:
    return b"".join(encode_part(*part) for part in parts) + b"--" + BOUNDARY.encode() + b"--\r\n"


@pytest.fixture
def multipart_body() -> Callable[..., bytes]:
    """Build a well-formed multipart body from ``(name, filename, body[, content_type])`` tuples."""

    def _build(*parts: tuple) -> bytes:
        normalized = [part if len(part) == 4 else (*part, None) for part in parts]
        return encode_body(normalized)

    return _build


def section_index(held: HeldContent) -> int:
    """Holding tokens are ``<session>_<index>_<random>``."""
    return int(held.token.split("_")[-2])


class ScriptedScanProvider(ScanVerdictProvider):
    """Returns verdicts and delays keyed by section index; "raise" raises ScanError."""

    def __init__(self, verdicts: Optional[Dict[int, str]] = None, delays: Optional[Dict[int, float]] = None) -> None:
        self.verdicts = verdicts or {}
        self.delays = delays or {}
        self.submitted: List[int] = []

    async def submit(self, held: HeldContent):
        index = section_index(held)
        self.submitted.append(index)
        delay = self.delays.get(index, 0.0)
        if delay:
            await asyncio.sleep(delay)
        verdict = self.verdicts.get(index, "clean")
        if verdict == "raise":
            raise ScanError("scanner unavailable")
        return verdict


class NameTrackingStorage(StorageAdapter):
    """Wraps a storage adapter and records which names were persisted."""

    def __init__(self, inner: StorageAdapter, fail_names: Sequence[str] = ()) -> None:
        self.inner = inner
        self.fail_names = set(fail_names)
        self.persisted: List[StorageMetadata] = []

    async def persist(self, source, metadata: StorageMetadata) -> StorageReceipt:
        if metadata.sanitized_name in self.fail_names:
            raise StorageError("disk full")
        receipt = await self.inner.persist(source, metadata)
        self.persisted.append(metadata)
        return receipt


@pytest.fixture
def ingest_env(tmp_path: Path):
    """Factory for sessions wired to temp holding and storage directories."""

    def _make(
        policy: Optional[Policy] = None,
        scan_provider: Optional[ScanVerdictProvider] = None,
        fail_names: Sequence[str] = (),
    ):
        holding = HoldingArea(tmp_path / "holding")
        storage = NameTrackingStorage(LocalFileStorageAdapter(tmp_path / "stored"), fail_names=fail_names)
        coordinator = QuarantineCoordinator(holding, storage, scan_provider)
        session = IngestionSession(policy or Policy(), coordinator)
        return session, holding, storage

    return _make


def make_request(body: bytes, chunk_size: int = 7, verified: bool = True, **kwargs) -> IngestionRequest:
    return IngestionRequest(
        content_type=kwargs.pop("content_type", CONTENT_TYPE),
        body=iter_chunks(body, chunk_size),
        antiforgery_verified=verified,
        **kwargs,
    )


@pytest.fixture
def request_factory():
    return make_request

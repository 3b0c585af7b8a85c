"""Bounded single-pass readers over multipart section bodies."""

from __future__ import annotations

from typing import AsyncIterator

from .contracts import DEFAULT_READ_CHUNK_SIZE
from .errors import SizeLimitExceeded
from .multipart import BoundaryScanner, Section


class ByteBudget:
    """Session-wide byte allowance; private to one ingestion session."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.used = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def consume(self, size: int) -> None:
        if self.used + size > self.limit:
            raise SizeLimitExceeded(
                f"Request body exceeds the session limit of {self.limit} bytes",
                scope="session",
                limit=self.limit,
            )
        self.used += size


class SectionReader:
    """Forward-only view of one section body.

    Every chunk is checked against the per-section limit and the session budget
    before it is returned, so an oversized section fails without the excess
    ever being handed to the caller.
    """

    def __init__(
        self,
        scanner: BoundaryScanner,
        section: Section,
        budget: ByteBudget,
        max_section_size: int,
        chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
    ) -> None:
        self._scanner = scanner
        self.section = section
        self._budget = budget
        self._max_section_size = max_section_size
        self._chunk_size = chunk_size
        self.bytes_read = 0
        self.exhausted = False

    async def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes (one chunk when negative); b"" at the boundary."""
        if self.exhausted:
            return b""
        want = self._chunk_size if size < 0 else size
        chunk = await self._scanner.read_body(want)
        if not chunk:
            self._finish()
            return b""
        # Charged to the session even when the section limit rejects it.
        self._budget.consume(len(chunk))
        if self.bytes_read + len(chunk) > self._max_section_size:
            raise SizeLimitExceeded(
                f"Section exceeds the limit of {self._max_section_size} bytes",
                scope="section",
                limit=self._max_section_size,
            )
        self.bytes_read += len(chunk)
        return chunk

    async def read_prefix(self, size: int) -> bytes:
        """Read exactly ``size`` bytes, or fewer only when the section ends first."""
        parts = []
        collected = 0
        while collected < size:
            chunk = await self.read(size - collected)
            if not chunk:
                break
            parts.append(chunk)
            collected += len(chunk)
        return b"".join(parts)

    async def drain(self) -> int:
        """Skip the rest of the body; skipped bytes still count against the session budget."""
        skipped = 0
        while not self.exhausted:
            chunk = await self._scanner.read_body(self._chunk_size)
            if not chunk:
                self._finish()
                break
            self._budget.consume(len(chunk))
            skipped += len(chunk)
        return skipped

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_chunks()

    async def _iter_chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.read()
            if not chunk:
                return
            yield chunk

    def _finish(self) -> None:
        self.exhausted = True
        self.section.byte_length = self.bytes_read

"""Tests for bounded section readers and the session byte budget."""

from __future__ import annotations

import pytest

from stream_ingest.errors import SizeLimitExceeded
from stream_ingest.multipart import BoundaryScanner, iter_chunks
from stream_ingest.section_reader import ByteBudget, SectionReader

from conftest import BOUNDARY, encode_body


async def _first_reader(body: bytes, budget: ByteBudget, max_section_size: int, chunk_size: int = 4):
    scanner = BoundaryScanner(iter_chunks(body, 3), BOUNDARY.encode())
    section = await scanner.next_section()
    return scanner, SectionReader(scanner, section, budget, max_section_size, chunk_size=chunk_size)


def test_budget_tracks_usage():
    budget = ByteBudget(10)
    budget.consume(4)
    assert budget.used == 4
    assert budget.remaining == 6
    with pytest.raises(SizeLimitExceeded) as exc_info:
        budget.consume(7)
    assert exc_info.value.session_wide
    assert budget.used == 4


@pytest.mark.asyncio
async def test_reads_whole_section_and_records_length():
    body = encode_body([("f", "a.txt", b"0123456789", None)])
    _, reader = await _first_reader(body, ByteBudget(1000), max_section_size=100)
    data = b"".join([chunk async for chunk in reader])
    assert data == b"0123456789"
    assert reader.exhausted
    assert reader.section.byte_length == 10


@pytest.mark.asyncio
async def test_section_limit_stops_read():
    body = encode_body([("f", "a.txt", b"x" * 50, None)])
    _, reader = await _first_reader(body, ByteBudget(1000), max_section_size=20)
    received = []
    with pytest.raises(SizeLimitExceeded) as exc_info:
        async for chunk in reader:
            received.append(chunk)
    assert exc_info.value.scope == "section"
    assert exc_info.value.limit == 20
    assert sum(len(c) for c in received) <= 20


@pytest.mark.asyncio
async def test_exact_section_limit_is_allowed():
    body = encode_body([("f", "a.txt", b"x" * 20, None)])
    _, reader = await _first_reader(body, ByteBudget(1000), max_section_size=20)
    assert len(b"".join([chunk async for chunk in reader])) == 20


@pytest.mark.asyncio
async def test_session_budget_stops_read():
    body = encode_body([("f", "a.txt", b"x" * 50, None)])
    _, reader = await _first_reader(body, ByteBudget(12), max_section_size=100)
    with pytest.raises(SizeLimitExceeded) as exc_info:
        async for _ in reader:
            pass
    assert exc_info.value.session_wide


@pytest.mark.asyncio
async def test_read_prefix_returns_short_prefix_for_small_sections():
    body = encode_body([("f", "a.gif", b"GIF", None)])
    _, reader = await _first_reader(body, ByteBudget(1000), max_section_size=100)
    assert await reader.read_prefix(8) == b"GIF"
    assert reader.exhausted


@pytest.mark.asyncio
async def test_drain_charges_budget_and_allows_next_section():
    body = encode_body([("a", "a.exe", b"y" * 30, None), ("b", None, b"next", None)])
    budget = ByteBudget(1000)
    scanner, reader = await _first_reader(body, budget, max_section_size=100)
    skipped = await reader.drain()
    assert skipped == 30
    assert budget.used == 30
    following = await scanner.next_section()
    assert following.field_name == "b"


@pytest.mark.asyncio
async def test_drain_respects_session_budget():
    body = encode_body([("a", "a.exe", b"y" * 30, None)])
    _, reader = await _first_reader(body, ByteBudget(10), max_section_size=100)
    with pytest.raises(SizeLimitExceeded):
        await reader.drain()

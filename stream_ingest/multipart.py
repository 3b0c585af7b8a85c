"""Incremental multipart/form-data boundary scanning.

The scanner pulls chunks from an async byte source and exposes the body one
section at a time. Only the current header block and a lookahead window (the
unconsumed part of the last source chunk plus one delimiter length) are ever
buffered; body bytes are handed out through ``read_body`` as soon as they are
known not to belong to the next delimiter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, Dict, List, Optional, Tuple
from urllib.parse import unquote

from .contracts import (
    DEFAULT_BOUNDARY_LENGTH_LIMIT,
    DEFAULT_HEADERS_COUNT_LIMIT,
    DEFAULT_HEADERS_LENGTH_LIMIT,
)
from .errors import MalformedMultipart

CRLF = b"\r\n"
_BOUNDARY_RE = re.compile(r"^[0-9A-Za-z'()+_,\-./:=? ]*[0-9A-Za-z'()+_,\-./:=?]$")
_HEADER_NAME_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_QUOTED_PAIR_RE = re.compile(r'\\(["\\])')
_TRANSPORT_PADDING = b" \t"


@dataclass
class Section:
    """One part of a multipart body; name and type fields are client-supplied."""

    index: int
    field_name: str
    filename: Optional[str]
    content_type: Optional[str]
    headers: Dict[str, str]
    raw_headers: bytes
    byte_length: Optional[int] = None

    @property
    def is_file(self) -> bool:
        return self.filename is not None


def _split_params(value: str) -> List[str]:
    parts: List[str] = []
    buf: List[str] = []
    in_quotes = False
    escaped = False
    for ch in value:
        if escaped:
            buf.append(ch)
            escaped = False
            continue
        if in_quotes and ch == "\\":
            buf.append(ch)
            escaped = True
            continue
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == ";" and not in_quotes:
            parts.append("".join(buf))
            buf = []
            continue
        buf.append(ch)
    if in_quotes:
        raise MalformedMultipart("Unterminated quoted string in header parameters")
    parts.append("".join(buf))
    return parts


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        # Only \" and \\ are unescaped; browsers send raw backslashes in Windows paths.
        return _QUOTED_PAIR_RE.sub(r"\1", value[1:-1])
    return value


def _decode_ext_value(value: str) -> str:
    """Decode an RFC 5987 ``charset'lang'pct-encoded`` parameter value."""
    try:
        charset, _lang, encoded = value.split("'", 2)
    except ValueError as exc:
        raise MalformedMultipart("Invalid extended header parameter") from exc
    try:
        return unquote(encoded, encoding=charset or "utf-8", errors="strict")
    except (LookupError, UnicodeDecodeError) as exc:
        raise MalformedMultipart("Extended header parameter cannot be decoded") from exc


def parse_options_header(value: str) -> Tuple[str, Dict[str, str]]:
    """Split a header like ``form-data; name="a"`` into its value and parameters."""
    parts = _split_params(value)
    main = parts[0].strip().lower()
    params: Dict[str, str] = {}
    for raw in parts[1:]:
        if not raw.strip():
            continue
        if "=" not in raw:
            raise MalformedMultipart(f"Header parameter without value: {raw.strip()!r}")
        key, _, val = raw.partition("=")
        key = key.strip().lower()
        if key.endswith("*"):
            params[key[:-1]] = _decode_ext_value(val.strip())
            params[key] = params[key[:-1]]
        elif f"{key}*" not in params:
            params[key] = _unquote(val)
    return main, params


def parse_boundary(content_type: Optional[str], limit: int = DEFAULT_BOUNDARY_LENGTH_LIMIT) -> bytes:
    """Extract and validate the boundary token from a request content-type."""
    if not content_type:
        raise MalformedMultipart("Missing content-type header")
    mime, params = parse_options_header(content_type)
    if mime != "multipart/form-data":
        raise MalformedMultipart(f"Expected multipart/form-data, got {mime!r}")
    boundary = params.get("boundary", "")
    if not boundary:
        raise MalformedMultipart("Missing content-type boundary")
    if len(boundary) > limit:
        raise MalformedMultipart(f"Multipart boundary length limit {limit} exceeded")
    if not _BOUNDARY_RE.match(boundary):
        raise MalformedMultipart("Multipart boundary contains invalid characters")
    return boundary.encode("ascii")


class BoundaryScanner:
    """Lazy, forward-only section iterator over a multipart byte stream."""

    def __init__(
        self,
        source: AsyncIterable[bytes],
        boundary: bytes,
        *,
        headers_length_limit: int = DEFAULT_HEADERS_LENGTH_LIMIT,
        headers_count_limit: int = DEFAULT_HEADERS_COUNT_LIMIT,
    ) -> None:
        self._source: AsyncIterator[bytes] = source.__aiter__()
        self._delimiter = CRLF + b"--" + boundary
        # Seeded with CRLF so an opening delimiter at byte 0 matches like any other.
        self._buffer = bytearray(CRLF)
        self._eof = False
        self._state = "preamble"
        self._index = 0
        self._safe = 0
        self._search_from = 0
        self._headers_length_limit = headers_length_limit
        self._headers_count_limit = headers_count_limit
        self.bytes_received = 0

    @property
    def finished(self) -> bool:
        return self._state == "done"

    def __aiter__(self) -> "BoundaryScanner":
        return self

    async def __anext__(self) -> Section:
        section = await self.next_section()
        if section is None:
            raise StopAsyncIteration
        return section

    async def next_section(self) -> Optional[Section]:
        """Advance to the next section header, or return None at the closing delimiter."""
        if self._state == "done":
            return None
        if self._state == "body":
            raise RuntimeError("Current section body must be consumed before advancing")
        if self._state == "preamble":
            await self._skip_preamble()

        if await self._at_close_delimiter():
            self._state = "done"
            return None

        await self._consume_line_end()
        raw_headers = await self._read_header_block()
        section = self._build_section(raw_headers)
        self._state = "body"
        self._safe = 0
        self._search_from = 0
        self._index += 1
        return section

    async def read_body(self, max_bytes: int) -> bytes:
        """Return up to ``max_bytes`` of the current body; b"" once the boundary is reached."""
        if self._state != "body" or max_bytes <= 0:
            return b""
        while self._safe == 0:
            idx = self._buffer.find(self._delimiter, self._search_from)
            if idx == 0:
                del self._buffer[: len(self._delimiter)]
                self._state = "delimiter"
                return b""
            if idx > 0:
                self._safe = idx
                self._search_from = idx
                break
            safe = len(self._buffer) - len(self._delimiter) + 1
            if safe > 0:
                self._safe = safe
                self._search_from = safe
                break
            if not await self._fill():
                raise MalformedMultipart("Multipart body ended inside a section")

        size = min(self._safe, max_bytes)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        self._safe -= size
        self._search_from = max(0, self._search_from - size)
        return data

    async def _fill(self) -> bool:
        if self._eof:
            return False
        while True:
            try:
                chunk = await self._source.__anext__()
            except StopAsyncIteration:
                self._eof = True
                return False
            if chunk:
                break
        self.bytes_received += len(chunk)
        self._buffer.extend(chunk)
        return True

    async def _ensure(self, size: int) -> bool:
        while len(self._buffer) < size:
            if not await self._fill():
                return False
        return True

    async def _skip_preamble(self) -> None:
        discarded = 0
        keep = len(self._delimiter) - 1
        while True:
            idx = self._buffer.find(self._delimiter)
            if idx != -1:
                del self._buffer[: idx + len(self._delimiter)]
                self._state = "delimiter"
                return
            if len(self._buffer) > keep:
                drop = len(self._buffer) - keep
                del self._buffer[:drop]
                discarded += drop
            if discarded > self._headers_length_limit:
                raise MalformedMultipart("Multipart boundary not found")
            if not await self._fill():
                raise MalformedMultipart("Multipart boundary not found")

    async def _at_close_delimiter(self) -> bool:
        if not await self._ensure(2):
            raise MalformedMultipart("Multipart body ended after a boundary")
        if self._buffer[:2] == b"--":
            del self._buffer[:2]
            return True
        return False

    async def _consume_line_end(self) -> None:
        padding = 0
        while True:
            if not await self._ensure(1):
                raise MalformedMultipart("Multipart body ended after a boundary")
            if self._buffer[0] in _TRANSPORT_PADDING:
                del self._buffer[:1]
                padding += 1
                if padding > self._headers_length_limit:
                    raise MalformedMultipart("Boundary line is too long")
                continue
            break
        if not await self._ensure(2):
            raise MalformedMultipart("Multipart body ended after a boundary")
        if self._buffer[:2] != CRLF:
            raise MalformedMultipart("Boundary is not followed by a line break")
        del self._buffer[:2]

    async def _read_header_block(self) -> bytes:
        if not await self._ensure(2):
            raise MalformedMultipart("Multipart body ended inside section headers")
        if self._buffer[:2] == CRLF:
            del self._buffer[:2]
            return b""

        searched = 0
        while True:
            end = self._buffer.find(CRLF + CRLF, max(0, searched - 3))
            if end != -1:
                if end > self._headers_length_limit:
                    break
                block = bytes(self._buffer[:end])
                del self._buffer[: end + 4]
                return block
            searched = len(self._buffer)
            if searched > self._headers_length_limit:
                break
            if not await self._fill():
                raise MalformedMultipart("Multipart body ended inside section headers")
        raise MalformedMultipart(f"Multipart headers length limit {self._headers_length_limit} exceeded")

    def _build_section(self, raw_headers: bytes) -> Section:
        headers: Dict[str, str] = {}
        lines = raw_headers.split(CRLF) if raw_headers else []
        if len(lines) > self._headers_count_limit:
            raise MalformedMultipart(f"Multipart headers count limit {self._headers_count_limit} exceeded")
        for line in lines:
            text = line.decode("utf-8", errors="replace")
            name, sep, value = text.partition(":")
            name = name.strip()
            if not sep or not _HEADER_NAME_RE.match(name):
                raise MalformedMultipart(f"Invalid section header line: {text[:80]!r}")
            headers[name.lower()] = value.strip()

        disposition = headers.get("content-disposition")
        if disposition is None:
            raise MalformedMultipart("Section is missing a Content-Disposition header")
        kind, params = parse_options_header(disposition)
        if kind != "form-data":
            raise MalformedMultipart(f"Unsupported content disposition {kind!r}")
        if "name" not in params:
            raise MalformedMultipart("Content-Disposition has no name parameter")

        return Section(
            index=self._index,
            field_name=params["name"],
            filename=params.get("filename"),
            content_type=headers.get("content-type"),
            headers=headers,
            raw_headers=raw_headers,
        )


async def iter_chunks(data: bytes, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
    """Expose an in-memory payload as an async chunk source."""
    for start in range(0, len(data), chunk_size):
        yield data[start : start + chunk_size]

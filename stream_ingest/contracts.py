"""Shared constants/types for ingestion outcomes and quarantine state."""

from __future__ import annotations

from typing import Final, Literal, TypeAlias

Disposition: TypeAlias = Literal[
    "accepted",
    "rejected",
    "quarantine_pending",
    "quarantine_failed",
    "stored",
    "discarded",
]
CheckKind: TypeAlias = Literal["name", "extension", "signature", "size"]
QuarantineState: TypeAlias = Literal[
    "validated",
    "written_to_holding",
    "scan_pending",
    "scan_clean",
    "scan_dirty",
    "scan_timeout",
    "scan_error",
    "promote_pending",
    "stored",
    "discarded",
    "failed",
]
ScanVerdict: TypeAlias = Literal["clean", "dirty", "error"]
ReasonCode: TypeAlias = Literal[
    "MALFORMED_MULTIPART",
    "UNAUTHORIZED",
    "SESSION_TOO_LARGE",
    "SIZE_LIMIT_EXCEEDED",
    "EXTENSION_NOT_PERMITTED",
    "SIGNATURE_MISMATCH",
    "EMPTY_FILE",
    "SCAN_TIMEOUT",
    "SCAN_DIRTY",
    "SCAN_ERROR",
    "STORAGE_ERROR",
]

TERMINAL_DISPOSITIONS: Final[set[Disposition]] = {
    "accepted",
    "rejected",
    "quarantine_failed",
    "stored",
    "discarded",
}
QUARANTINE_TRANSITIONS: Final[dict[QuarantineState, set[QuarantineState]]] = {
    "validated": {"written_to_holding", "discarded"},
    "written_to_holding": {"scan_pending", "promote_pending", "discarded"},
    "scan_pending": {"scan_clean", "scan_dirty", "scan_timeout", "scan_error", "discarded"},
    "scan_clean": {"promote_pending", "discarded"},
    "scan_dirty": {"discarded"},
    "scan_timeout": {"discarded"},
    "scan_error": {"discarded"},
    "promote_pending": {"stored", "failed", "discarded"},
    "stored": set(),
    "discarded": set(),
    "failed": set(),
}
SCAN_FAILURE_CODES: Final[dict[QuarantineState, ReasonCode]] = {
    "scan_dirty": "SCAN_DIRTY",
    "scan_timeout": "SCAN_TIMEOUT",
    "scan_error": "SCAN_ERROR",
}

# RFC 2046 caps boundaries at 70 characters.
DEFAULT_BOUNDARY_LENGTH_LIMIT: Final[int] = 70
DEFAULT_HEADERS_LENGTH_LIMIT: Final[int] = 16 * 1024
DEFAULT_HEADERS_COUNT_LIMIT: Final[int] = 16
DEFAULT_MAX_BODY_SIZE: Final[int] = 30_000_000
DEFAULT_MAX_SECTION_SIZE: Final[int] = 2 * 1024 * 1024
DEFAULT_VALUE_LENGTH_LIMIT: Final[int] = 4 * 1024 * 1024
DEFAULT_VALUE_COUNT_LIMIT: Final[int] = 1024
DEFAULT_MAX_FILENAME_LENGTH: Final[int] = 255
DEFAULT_SCAN_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_READ_CHUNK_SIZE: Final[int] = 64 * 1024
DEFAULT_PERMITTED_EXTENSIONS: Final[tuple[str, ...]] = (
    ".txt",
    ".csv",
    ".pdf",
    ".png",
    ".gif",
    ".jpg",
    ".jpeg",
    ".zip",
    ".docx",
    ".xlsx",
    ".pptx",
)
_ZIP_SIGNATURES: Final[tuple[bytes, ...]] = (
    b"PK\x03\x04",
    b"PK\x05\x06",
    b"PK\x07\x08",
)
DEFAULT_SIGNATURE_TABLE: Final[dict[str, tuple[bytes, ...]]] = {
    ".gif": (b"GIF8",),
    ".png": (b"\x89PNG\r\n\x1a\n",),
    ".jpeg": (b"\xff\xd8\xff\xe0", b"\xff\xd8\xff\xe2", b"\xff\xd8\xff\xe3"),
    ".jpg": (b"\xff\xd8\xff\xe0", b"\xff\xd8\xff\xe1", b"\xff\xd8\xff\xe8"),
    ".pdf": (b"%PDF-",),
    ".zip": _ZIP_SIGNATURES + (b"PKLITE", b"PKSpX", b"WinZip"),
    # Office Open XML documents are zip containers.
    ".docx": (b"PK\x03\x04",),
    ".xlsx": (b"PK\x03\x04",),
    ".pptx": (b"PK\x03\x04",),
}

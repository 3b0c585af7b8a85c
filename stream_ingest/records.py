"""Request-scoped records for ingestion sessions and their outcomes."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .contracts import TERMINAL_DISPOSITIONS, Disposition, QuarantineState, ReasonCode
from .validation import ValidationVerdict

_AFTER_PENDING: set[Disposition] = {"stored", "discarded", "quarantine_failed"}


def utc_now_iso() -> str:
    """Return current UTC time in ISO-8601 format."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def make_id(prefix: str) -> str:
    """Create opaque id matching the documented prefix style."""
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


@dataclass
class StorageMetadata:
    """Descriptive metadata handed to a storage adapter with the content."""

    token: str
    session_id: str
    field_name: str
    sanitized_name: str
    content_type: Optional[str]
    size: int
    sha256: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "session_id": self.session_id,
            "field_name": self.field_name,
            "sanitized_name": self.sanitized_name,
            "content_type": self.content_type,
            "size": self.size,
            "sha256": self.sha256,
        }


@dataclass(frozen=True)
class StorageReceipt:
    """Proof of persistence returned by a storage adapter."""

    locator: str
    byte_count: int
    checksum: str


@dataclass
class SectionOutcome:
    """Verdicts and disposition for one section; dispositions only move forward."""

    index: int
    field_name: str
    is_file: bool
    sanitized_name: Optional[str] = None
    verdicts: List[ValidationVerdict] = field(default_factory=list)
    disposition: Optional[Disposition] = None
    reason_code: Optional[ReasonCode] = None
    reason: Optional[str] = None
    receipt: Optional[StorageReceipt] = None
    holding_token: Optional[str] = None
    quarantine_states: List[QuarantineState] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.disposition in TERMINAL_DISPOSITIONS

    def settle(
        self,
        disposition: Disposition,
        code: Optional[ReasonCode] = None,
        reason: Optional[str] = None,
    ) -> None:
        if self.is_terminal:
            raise RuntimeError(
                f"Section {self.index} is already {self.disposition}; cannot move to {disposition}"
            )
        if self.disposition == "quarantine_pending" and disposition not in _AFTER_PENDING:
            raise RuntimeError(f"Section {self.index} cannot move from quarantine_pending to {disposition}")
        self.disposition = disposition
        if code is not None:
            self.reason_code = code
        if reason is not None:
            self.reason = reason


@dataclass
class UploadSession:
    """State for one incoming request; discarded once the manifest is built."""

    session_id: str
    body_limit: int
    antiforgery_verified: bool
    created_at: str = field(default_factory=utc_now_iso)
    outcomes: List[SectionOutcome] = field(default_factory=list)
    form_values: Dict[str, List[str]] = field(default_factory=dict)
    bytes_read: int = 0
    truncated: bool = False


@dataclass(frozen=True)
class ManifestEntry:
    field_name: str
    sanitized_name: Optional[str]
    disposition: Disposition
    reason_code: Optional[ReasonCode] = None
    reason: Optional[str] = None
    storage_locator: Optional[str] = None
    byte_count: Optional[int] = None
    checksum: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_name": self.field_name,
            "sanitized_name": self.sanitized_name,
            "disposition": self.disposition,
            "reason_code": self.reason_code,
            "reason": self.reason,
            "storage_locator": self.storage_locator,
            "byte_count": self.byte_count,
            "checksum": self.checksum,
        }


@dataclass(frozen=True)
class IngestionManifest:
    """Ordered outcomes handed back to the caller once every section is terminal."""

    session_id: str
    entries: List[ManifestEntry]
    form_values: Dict[str, List[str]]
    bytes_read: int
    truncated: bool = False

    @property
    def stored(self) -> List[ManifestEntry]:
        return [entry for entry in self.entries if entry.disposition == "stored"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "entries": [entry.to_dict() for entry in self.entries],
            "form_values": {key: list(values) for key, values in self.form_values.items()},
            "bytes_read": self.bytes_read,
            "truncated": self.truncated,
        }


def build_manifest(session: UploadSession) -> IngestionManifest:
    entries: List[ManifestEntry] = []
    for outcome in sorted(session.outcomes, key=lambda item: item.index):
        if not outcome.is_terminal or outcome.disposition is None:
            raise RuntimeError(f"Section {outcome.index} has not reached a terminal disposition")
        receipt = outcome.receipt
        entries.append(
            ManifestEntry(
                field_name=outcome.field_name,
                sanitized_name=outcome.sanitized_name,
                disposition=outcome.disposition,
                reason_code=outcome.reason_code,
                reason=outcome.reason,
                storage_locator=receipt.locator if receipt else None,
                byte_count=receipt.byte_count if receipt else None,
                checksum=receipt.checksum if receipt else None,
            )
        )
    return IngestionManifest(
        session_id=session.session_id,
        entries=entries,
        form_values=session.form_values,
        bytes_read=session.bytes_read,
        truncated=session.truncated,
    )

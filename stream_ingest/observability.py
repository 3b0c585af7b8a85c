"""Observability for ingestion sessions: structured events plus logging."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .redaction import redact_for_log


@dataclass
class IngestionEvent:
    """A single event in one ingestion session."""

    timestamp: datetime
    event_type: str  # "section_start", "verdict", "quarantine", "error", "session_end"
    data: Dict[str, Any]
    duration_ms: Optional[float] = None


class IngestionObserver:
    """
    Records what happened to each section of one request.

    Events are kept in memory for the lifetime of the session and mirrored to
    the ``stream_ingest.session`` logger.
    """

    def __init__(self, session_id: Optional[str] = None):
        self.events: List[IngestionEvent] = []
        self.logger = logging.getLogger("stream_ingest.session")
        self.session_id = session_id

    def _prefix(self) -> str:
        return f"[{self.session_id}] " if self.session_id else ""

    def log_section_start(self, index: int, field_name: str, filename: Optional[str]):
        event = IngestionEvent(
            timestamp=datetime.now(),
            event_type="section_start",
            data=redact_for_log({"index": index, "field_name": field_name, "filename": filename}),
        )
        self.events.append(event)
        self.logger.info(
            "%ssection %d started field=%s filename=%s",
            self._prefix(),
            index,
            event.data["field_name"],
            event.data["filename"],
        )

    def log_verdicts(self, index: int, verdicts: Sequence[Any]):
        """
        Log the verdicts produced for a section.

        Args:
            index: Section position in the request body
            verdicts: ValidationVerdict objects in check order
        """
        data = [
            {"kind": v.kind, "passed": v.passed, "code": v.code, "reason": redact_for_log(v.reason)}
            for v in verdicts
        ]
        self.events.append(IngestionEvent(timestamp=datetime.now(), event_type="verdict", data={"index": index, "verdicts": data}))
        failed = [item for item in data if not item["passed"]]
        if failed:
            self.logger.info(
                "%ssection %d rejected by %s check: %s",
                self._prefix(),
                index,
                failed[0]["kind"],
                failed[0]["reason"],
            )
        else:
            self.logger.debug("%ssection %d passed %d checks", self._prefix(), index, len(data))

    def log_quarantine_transition(self, index: int, token: str, state: str):
        self.events.append(
            IngestionEvent(
                timestamp=datetime.now(),
                event_type="quarantine",
                data={"index": index, "token": token, "state": state},
            )
        )
        self.logger.debug("%ssection %d quarantine %s token=%s", self._prefix(), index, state, token)

    def log_error(self, error_type: str, message: str, context: Optional[Dict[str, Any]] = None):
        """
        Log an error event.

        Args:
            error_type: Reason code (e.g., "MALFORMED_MULTIPART")
            message: Error message
            context: Additional context about the error
        """
        event = IngestionEvent(
            timestamp=datetime.now(),
            event_type="error",
            data={"error_type": error_type, "message": message, "context": redact_for_log(context or {})},
        )
        self.events.append(event)
        self.logger.warning("%sError (%s): %s", self._prefix(), error_type, message)

    def log_session_end(self, manifest_entries: Sequence[Any], bytes_read: int, duration_ms: float):
        counts: Dict[str, int] = {}
        for entry in manifest_entries:
            counts[entry.disposition] = counts.get(entry.disposition, 0) + 1
        self.events.append(
            IngestionEvent(
                timestamp=datetime.now(),
                event_type="session_end",
                data={"dispositions": counts, "bytes_read": bytes_read},
                duration_ms=duration_ms,
            )
        )
        self.logger.info(
            "%ssession finished sections=%d bytes_read=%d dispositions=%s (%.2fms)",
            self._prefix(),
            len(manifest_entries),
            bytes_read,
            counts,
            duration_ms,
        )

    def get_session_stats(self) -> Dict[str, Any]:
        """Aggregate counters for the recorded events."""
        sections = [e for e in self.events if e.event_type == "section_start"]
        errors = [e for e in self.events if e.event_type == "error"]
        rejected = [
            e for e in self.events
            if e.event_type == "verdict" and any(not v["passed"] for v in e.data["verdicts"])
        ]
        return {
            "event_count": len(self.events),
            "sections": len(sections),
            "rejected_by_checks": len(rejected),
            "errors": len(errors),
        }


def configure_logging(level: str = "INFO") -> None:
    """Attach a console handler to the package logger if none is configured."""
    package_logger = logging.getLogger("stream_ingest")
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

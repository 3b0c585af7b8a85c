"""Log redaction helpers for untrusted, client-supplied values."""

from __future__ import annotations

import re
from typing import Any

CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")


def redact_text(value: str, max_length: int = 120) -> str:
    # File names may carry CR/LF.
    redacted = CONTROL_RE.sub("?", value or "")
    redacted = EMAIL_RE.sub("[REDACTED_EMAIL]", redacted)
    if len(redacted) > max_length:
        return f"{redacted[:max_length]}..."
    return redacted


def redact_for_log(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {str(k): redact_for_log(v) for k, v in value.items()}
    if isinstance(value, list):
        return [redact_for_log(item) for item in value]
    if isinstance(value, tuple):
        return tuple(redact_for_log(item) for item in value)
    return value

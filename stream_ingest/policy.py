"""Ingestion policy value and loader for YAML policy files."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .contracts import (
    DEFAULT_BOUNDARY_LENGTH_LIMIT,
    DEFAULT_HEADERS_COUNT_LIMIT,
    DEFAULT_HEADERS_LENGTH_LIMIT,
    DEFAULT_MAX_BODY_SIZE,
    DEFAULT_MAX_FILENAME_LENGTH,
    DEFAULT_MAX_SECTION_SIZE,
    DEFAULT_PERMITTED_EXTENSIONS,
    DEFAULT_SCAN_TIMEOUT_SECONDS,
    DEFAULT_SIGNATURE_TABLE,
    DEFAULT_VALUE_COUNT_LIMIT,
    DEFAULT_VALUE_LENGTH_LIMIT,
)


def normalize_extension(value: str) -> str:
    """Lower-case an extension and make sure it carries a leading dot."""
    ext = value.strip().lower()
    if ext and not ext.startswith("."):
        ext = f".{ext}"
    return ext


@dataclass(frozen=True)
class Policy:
    """Limits and allow-lists applied to one ingestion session."""

    max_body_size: int = DEFAULT_MAX_BODY_SIZE
    max_section_size: int = DEFAULT_MAX_SECTION_SIZE
    permitted_extensions: FrozenSet[str] = frozenset(DEFAULT_PERMITTED_EXTENSIONS)
    signature_table: Mapping[str, Tuple[bytes, ...]] = field(
        default_factory=lambda: dict(DEFAULT_SIGNATURE_TABLE)
    )
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT_SECONDS
    hard_body_ceiling: Optional[int] = None
    allow_empty_files: bool = False
    boundary_length_limit: int = DEFAULT_BOUNDARY_LENGTH_LIMIT
    headers_length_limit: int = DEFAULT_HEADERS_LENGTH_LIMIT
    headers_count_limit: int = DEFAULT_HEADERS_COUNT_LIMIT
    value_length_limit: int = DEFAULT_VALUE_LENGTH_LIMIT
    value_count_limit: int = DEFAULT_VALUE_COUNT_LIMIT
    max_filename_length: int = DEFAULT_MAX_FILENAME_LENGTH

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "permitted_extensions",
            frozenset(normalize_extension(ext) for ext in self.permitted_extensions if ext.strip()),
        )
        object.__setattr__(
            self,
            "signature_table",
            {
                normalize_extension(ext): tuple(bytes(sig) for sig in signatures)
                for ext, signatures in self.signature_table.items()
            },
        )

    @property
    def body_ceiling(self) -> int:
        if self.hard_body_ceiling is None:
            return self.max_body_size
        return self.hard_body_ceiling

    def signatures_for(self, extension: str) -> Tuple[bytes, ...]:
        return tuple(self.signature_table.get(normalize_extension(extension), ()))

    def signature_length(self, extension: str) -> int:
        """Number of leading bytes the signature check needs for ``extension``."""
        signatures = self.signatures_for(extension)
        return max((len(sig) for sig in signatures), default=0)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "max_body_size": self.max_body_size,
            "max_section_size": self.max_section_size,
            "permitted_extensions": sorted(self.permitted_extensions),
            "signature_extensions": sorted(self.signature_table),
            "scan_timeout": self.scan_timeout,
            "allow_empty_files": self.allow_empty_files,
            "value_length_limit": self.value_length_limit,
            "value_count_limit": self.value_count_limit,
        }


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class PolicyIssue:
    """A single policy configuration issue."""

    field: str
    message: str
    severity: Severity


_POSITIVE_INT_FIELDS = (
    "max_body_size",
    "max_section_size",
    "boundary_length_limit",
    "headers_length_limit",
    "headers_count_limit",
    "value_length_limit",
    "value_count_limit",
    "max_filename_length",
)


def validate_policy(raw: Dict[str, Any]) -> List[PolicyIssue]:
    """Validate a raw policy mapping and return a list of issues (empty = valid)."""
    issues: List[PolicyIssue] = []

    for name in _POSITIVE_INT_FIELDS:
        if name not in raw:
            continue
        value = raw[name]
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            issues.append(PolicyIssue(
                field=name,
                message=f"{name} must be a positive integer, got {value!r}",
                severity=Severity.ERROR,
            ))

    scan_timeout = raw.get("scan_timeout", DEFAULT_SCAN_TIMEOUT_SECONDS)
    if isinstance(scan_timeout, bool) or not isinstance(scan_timeout, (int, float)) or scan_timeout <= 0:
        issues.append(PolicyIssue(
            field="scan_timeout",
            message=f"scan_timeout must be a positive number of seconds, got {scan_timeout!r}",
            severity=Severity.ERROR,
        ))

    max_body = raw.get("max_body_size", DEFAULT_MAX_BODY_SIZE)
    max_section = raw.get("max_section_size", DEFAULT_MAX_SECTION_SIZE)
    if isinstance(max_body, int) and isinstance(max_section, int) and max_section > max_body:
        issues.append(PolicyIssue(
            field="max_section_size",
            message="max_section_size is larger than max_body_size; the body limit will apply first",
            severity=Severity.WARNING,
        ))

    ceiling = raw.get("hard_body_ceiling")
    if ceiling is not None and isinstance(max_body, int) and isinstance(ceiling, int) and ceiling < max_body:
        issues.append(PolicyIssue(
            field="hard_body_ceiling",
            message="hard_body_ceiling must not be smaller than max_body_size",
            severity=Severity.ERROR,
        ))

    extensions = raw.get("permitted_extensions", list(DEFAULT_PERMITTED_EXTENSIONS))
    if not isinstance(extensions, (list, tuple, set)) or not all(isinstance(e, str) for e in extensions):
        issues.append(PolicyIssue(
            field="permitted_extensions",
            message="permitted_extensions must be a list of strings",
            severity=Severity.ERROR,
        ))
    elif not extensions:
        issues.append(PolicyIssue(
            field="permitted_extensions",
            message="permitted_extensions is empty; every file upload will be rejected",
            severity=Severity.WARNING,
        ))

    table = raw.get("signature_table", {})
    if not isinstance(table, dict):
        issues.append(PolicyIssue(
            field="signature_table",
            message="signature_table must map extensions to lists of hex byte prefixes",
            severity=Severity.ERROR,
        ))
    else:
        for ext, signatures in table.items():
            try:
                _decode_signatures(signatures)
            except ValueError as exc:
                issues.append(PolicyIssue(
                    field=f"signature_table.{ext}",
                    message=str(exc),
                    severity=Severity.ERROR,
                ))

    return issues


def has_errors(issues: List[PolicyIssue]) -> bool:
    """Check if any issues are errors (not just warnings)."""
    return any(issue.severity == Severity.ERROR for issue in issues)


def _decode_signatures(value: Any) -> Tuple[bytes, ...]:
    items = [value] if isinstance(value, str) else value
    if not isinstance(items, (list, tuple)) or not items:
        raise ValueError("signatures must be a hex string or a non-empty list of hex strings")
    decoded = []
    for item in items:
        if not isinstance(item, str):
            raise ValueError(f"signature {item!r} is not a hex string")
        try:
            raw = bytes.fromhex(item.replace(" ", ""))
        except ValueError as exc:
            raise ValueError(f"signature {item!r} is not valid hex") from exc
        if not raw:
            raise ValueError("signatures cannot be empty")
        decoded.append(raw)
    return tuple(decoded)


def policy_from_dict(raw: Dict[str, Any]) -> Policy:
    """Build a Policy from a validated mapping; unknown keys are ignored."""
    issues = validate_policy(raw)
    if has_errors(issues):
        summary = "; ".join(f"{i.field}: {i.message}" for i in issues if i.severity == Severity.ERROR)
        raise ValueError(f"Invalid ingestion policy: {summary}")

    kwargs: Dict[str, Any] = {}
    for name in _POSITIVE_INT_FIELDS + ("hard_body_ceiling",):
        if raw.get(name) is not None:
            kwargs[name] = int(raw[name])
    if "scan_timeout" in raw:
        kwargs["scan_timeout"] = float(raw["scan_timeout"])
    if "allow_empty_files" in raw:
        kwargs["allow_empty_files"] = bool(raw["allow_empty_files"])
    if "permitted_extensions" in raw:
        kwargs["permitted_extensions"] = frozenset(raw["permitted_extensions"])
    if "signature_table" in raw:
        table = dict(DEFAULT_SIGNATURE_TABLE) if raw.get("extend_default_signatures", True) else {}
        for ext, signatures in raw["signature_table"].items():
            table[normalize_extension(ext)] = _decode_signatures(signatures)
        kwargs["signature_table"] = table
    return Policy(**kwargs)


def load_policy(policy_path: str) -> Policy:
    """Load an ingestion policy from a YAML file."""
    import yaml

    path = Path(policy_path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {policy_path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Policy file must contain a mapping: {policy_path}")
    return policy_from_dict(data)

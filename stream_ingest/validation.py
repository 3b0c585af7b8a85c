"""Ordered, short-circuiting validation checks for uploaded sections."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable, List, Optional, Sequence

from .contracts import DEFAULT_MAX_FILENAME_LENGTH, CheckKind, ReasonCode
from .policy import Policy

_PATH_SEPARATORS_RE = re.compile(r"[\\/]")
_DISALLOWED_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9._\- ]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class SectionProbe:
    """What is known about a section at one point of the read.

    ``head`` stays None until the leading bytes have been buffered and
    ``byte_length`` until the body has been read to the boundary.
    """

    declared_name: Optional[str]
    head: Optional[bytes] = None
    byte_length: Optional[int] = None


@dataclass(frozen=True)
class ValidationVerdict:
    """Result of one check."""

    kind: CheckKind
    passed: bool
    reason: str
    code: Optional[ReasonCode] = None


CheckFn = Callable[[SectionProbe, Policy], ValidationVerdict]
ReadyFn = Callable[[SectionProbe], bool]


@dataclass(frozen=True)
class Check:
    kind: CheckKind
    run: CheckFn
    ready: ReadyFn


def sanitize_filename(declared: Optional[str], max_length: int = DEFAULT_MAX_FILENAME_LENGTH) -> str:
    """Reduce an untrusted file name to a display-safe name.

    Path components are dropped, the name is folded to ASCII and anything
    outside ``[A-Za-z0-9._- ]`` is removed. Leading and trailing dots and
    spaces are trimmed. The result is metadata only and never a storage path.
    """
    if not declared:
        return ""
    name = _PATH_SEPARATORS_RE.split(declared)[-1]
    name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    name = _DISALLOWED_NAME_CHARS_RE.sub("", name)
    name = _WHITESPACE_RE.sub(" ", name).strip(" .")
    if len(name) > max_length:
        suffix = PurePosixPath(name).suffix
        if len(suffix) >= max_length:
            suffix = ""
        name = name[: max_length - len(suffix)].rstrip(" .") + suffix
    return name


def file_extension(sanitized_name: str) -> str:
    return PurePosixPath(sanitized_name).suffix.lower() if sanitized_name else ""


def check_name(probe: SectionProbe, policy: Policy) -> ValidationVerdict:
    sanitized = sanitize_filename(probe.declared_name, policy.max_filename_length)
    if sanitized == (probe.declared_name or ""):
        return ValidationVerdict(kind="name", passed=True, reason="File name is already safe")
    return ValidationVerdict(kind="name", passed=True, reason=f"File name sanitized to {sanitized!r}")


def check_extension(probe: SectionProbe, policy: Policy) -> ValidationVerdict:
    ext = file_extension(sanitize_filename(probe.declared_name, policy.max_filename_length))
    if not ext:
        return ValidationVerdict(
            kind="extension",
            passed=False,
            reason="The file has no extension",
            code="EXTENSION_NOT_PERMITTED",
        )
    if ext not in policy.permitted_extensions:
        return ValidationVerdict(
            kind="extension",
            passed=False,
            reason=f"The file type {ext} isn't permitted",
            code="EXTENSION_NOT_PERMITTED",
        )
    return ValidationVerdict(kind="extension", passed=True, reason=f"Extension {ext} is permitted")


def check_signature(probe: SectionProbe, policy: Policy) -> ValidationVerdict:
    ext = file_extension(sanitize_filename(probe.declared_name, policy.max_filename_length))
    signatures = policy.signatures_for(ext)
    if not signatures:
        return ValidationVerdict(kind="signature", passed=True, reason=f"No signature required for {ext}")
    head = probe.head or b""
    if any(head.startswith(sig) for sig in signatures):
        return ValidationVerdict(kind="signature", passed=True, reason="File signature matches its extension")
    return ValidationVerdict(
        kind="signature",
        passed=False,
        reason=f"The file's signature doesn't match the {ext} extension",
        code="SIGNATURE_MISMATCH",
    )


def check_size(probe: SectionProbe, policy: Policy) -> ValidationVerdict:
    length = probe.byte_length or 0
    if length == 0 and not policy.allow_empty_files:
        return ValidationVerdict(kind="size", passed=False, reason="The file is empty", code="EMPTY_FILE")
    if length > policy.max_section_size:
        return ValidationVerdict(
            kind="size",
            passed=False,
            reason=f"The file exceeds {policy.max_section_size} bytes",
            code="SIZE_LIMIT_EXCEEDED",
        )
    return ValidationVerdict(kind="size", passed=True, reason=f"File size {length} bytes is within limits")


DEFAULT_CHECKS: tuple[Check, ...] = (
    Check(kind="name", run=check_name, ready=lambda probe: True),
    Check(kind="extension", run=check_extension, ready=lambda probe: True),
    Check(kind="signature", run=check_signature, ready=lambda probe: probe.head is not None),
    Check(kind="size", run=check_size, ready=lambda probe: probe.byte_length is not None),
)


class ValidationPipeline:
    """Runs checks in order, stopping at the first failure or missing input.

    Checks are pure, so evaluating a more complete probe later repeats the
    earlier verdicts unchanged and continues where the previous call stopped.
    """

    def __init__(self, checks: Sequence[Check] = DEFAULT_CHECKS) -> None:
        self.checks = tuple(checks)

    def evaluate(self, probe: SectionProbe, policy: Policy) -> List[ValidationVerdict]:
        verdicts: List[ValidationVerdict] = []
        for check in self.checks:
            if not check.ready(probe):
                break
            verdict = check.run(probe, policy)
            verdicts.append(verdict)
            if not verdict.passed:
                break
        return verdicts

    def is_complete(self, verdicts: Sequence[ValidationVerdict]) -> bool:
        return len(verdicts) == len(self.checks) and all(v.passed for v in verdicts)


def first_failure(verdicts: Sequence[ValidationVerdict]) -> Optional[ValidationVerdict]:
    for verdict in verdicts:
        if not verdict.passed:
            return verdict
    return None

"""Environment-driven settings for the ingestion web service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List

from ..policy import Policy, load_policy

_ENV_PREFIX = "STREAM_INGEST_"


def _env(name: str, default: str = "") -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default).strip()


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class IngestSettings:
    """Deployment settings; the ingestion policy itself lives in ``policy``."""

    holding_root: Path = Path("workspace/holding")
    storage_root: Path = Path("workspace/uploads")
    storage_backend: str = "filesystem"
    sqlite_path: Path = Path("workspace/ingest.db")
    scan_mode: str = "off"
    scan_url: str = ""
    scan_api_key: str = ""
    antiforgery_mode: str = "off"
    antiforgery_cookie: str = "csrftoken"
    antiforgery_header: str = "X-CSRF-Token"
    session_timeout_seconds: float = 300.0
    log_level: str = "INFO"
    policy: Policy = field(default_factory=Policy)

    @classmethod
    def from_env(cls) -> "IngestSettings":
        policy_file = _env("POLICY_FILE")
        policy = load_policy(policy_file) if policy_file else Policy()

        overrides = {}
        max_body = _env("MAX_BODY_BYTES")
        if max_body:
            overrides["max_body_size"] = int(max_body)
        max_section = _env("MAX_SECTION_BYTES")
        if max_section:
            overrides["max_section_size"] = int(max_section)
        extensions = _env("PERMITTED_EXTENSIONS")
        if extensions:
            overrides["permitted_extensions"] = frozenset(_split_csv(extensions))
        scan_timeout = _env("SCAN_TIMEOUT_SECONDS")
        if scan_timeout:
            overrides["scan_timeout"] = float(scan_timeout)
        if overrides:
            policy = replace(policy, **overrides)

        return cls(
            holding_root=Path(_env("HOLDING_ROOT", "workspace/holding")).resolve(),
            storage_root=Path(_env("STORAGE_ROOT", "workspace/uploads")).resolve(),
            storage_backend=_env("STORAGE_BACKEND", "filesystem").lower(),
            sqlite_path=Path(_env("SQLITE_PATH", "workspace/ingest.db")).resolve(),
            scan_mode=_env("SCAN_MODE", "off").lower(),
            scan_url=_env("SCAN_URL"),
            scan_api_key=_env("SCAN_API_KEY"),
            antiforgery_mode=_env("ANTIFORGERY_MODE", "off").lower(),
            session_timeout_seconds=max(float(_env("SESSION_TIMEOUT_SECONDS", "300")), 1.0),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            policy=policy,
        )

    def problems(self) -> List[str]:
        """Settings combinations that cannot start."""
        issues: List[str] = []
        if self.storage_backend not in ("filesystem", "sqlite"):
            issues.append(f"Unknown storage backend {self.storage_backend!r}")
        if self.scan_mode not in ("off", "stub", "http"):
            issues.append(f"Unknown scan mode {self.scan_mode!r}")
        if self.scan_mode == "http" and not self.scan_url:
            issues.append("STREAM_INGEST_SCAN_URL is required when scan mode is http")
        if self.antiforgery_mode not in ("off", "double_submit"):
            issues.append(f"Unknown antiforgery mode {self.antiforgery_mode!r}")
        return issues

"""HTTP contract tests for the upload API."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from stream_ingest.policy import Policy
from stream_ingest.scanning import StubScanProvider
from stream_ingest.web.app import create_app
from stream_ingest.web.runtime import IngestionRuntime
from stream_ingest.web.settings import IngestSettings


def _settings(tmp_path: Path, **overrides) -> IngestSettings:
    settings = IngestSettings(
        holding_root=tmp_path / "holding",
        storage_root=tmp_path / "uploads",
        sqlite_path=tmp_path / "ingest.db",
        scan_mode="stub",
    )
    return replace(settings, **overrides)


def test_healthz(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "storage": "filesystem", "scan": "stub"}


def test_upload_returns_manifest(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.post(
            "/api/v1/uploads",
            data={"title": "Q3 numbers"},
            files=[
                ("file", ("report.txt", b"revenue,up\n", "text/plain")),
                ("file", ("payload.exe", b"MZ\x90\x00", "application/octet-stream")),
            ],
        )
        assert response.status_code == 200
        body = response.json()
        assert body["session_id"].startswith("upl_")
        assert body["form_values"] == {"title": ["Q3 numbers"]}
        assert not body["truncated"]

        files = [entry for entry in body["entries"] if entry["sanitized_name"]]
        assert [(e["sanitized_name"], e["disposition"]) for e in files] == [
            ("report.txt", "stored"),
            ("payload.exe", "rejected"),
        ]
        assert files[1]["reason_code"] == "EXTENSION_NOT_PERMITTED"
        stored_path = Path(files[0]["storage_locator"].removeprefix("file://"))
        assert stored_path.read_bytes() == b"revenue,up\n"
    assert list((tmp_path / "holding").glob("*.hold")) == []


def test_upload_with_sqlite_backend(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path, storage_backend="sqlite"))) as client:
        response = client.post("/api/v1/uploads", files={"file": ("a.gif", b"GIF89a" + b"\x00" * 10, "image/gif")})
        assert response.status_code == 200
        entry = response.json()["entries"][0]
        assert entry["disposition"] == "stored"
        assert entry["storage_locator"].startswith("sqlite://uploads/")
        assert entry["byte_count"] == 16


def test_declared_length_over_limit_is_413(tmp_path: Path) -> None:
    settings = _settings(tmp_path, policy=Policy(max_body_size=256))
    with TestClient(create_app(settings)) as client:
        response = client.post("/api/v1/uploads", files={"file": ("big.txt", b"x" * 1024, "text/plain")})
        assert response.status_code == 413
        assert response.json()["error"]["code"] == "SESSION_TOO_LARGE"


def test_malformed_body_is_400(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.post(
            "/api/v1/uploads",
            content=b"this is not multipart",
            headers={"Content-Type": "multipart/form-data; boundary=abc"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MALFORMED_MULTIPART"


def test_wrong_content_type_is_400(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.post("/api/v1/uploads", json={"file": "nope"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MALFORMED_MULTIPART"


def test_slow_session_is_408_and_leaves_no_holding_files(tmp_path: Path) -> None:
    runtime = IngestionRuntime(
        _settings(tmp_path, session_timeout_seconds=0.05),
        scan_provider=StubScanProvider(delay_seconds=5.0),
    )
    with TestClient(create_app(runtime=runtime)) as client:
        response = client.post("/api/v1/uploads", files={"file": ("a.txt", b"hello", "text/plain")})
        assert response.status_code == 408
        assert response.json()["error"]["code"] == "REQUEST_TIMEOUT"
    assert list((tmp_path / "holding").glob("*.hold")) == []


class TestAntiforgery:
    def _client(self, tmp_path: Path) -> TestClient:
        return TestClient(create_app(_settings(tmp_path, antiforgery_mode="double_submit")))

    def test_missing_token_is_403(self, tmp_path: Path) -> None:
        with self._client(tmp_path) as client:
            response = client.post("/api/v1/uploads", files={"file": ("a.txt", b"hi", "text/plain")})
            assert response.status_code == 403
            assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_mismatched_token_is_403(self, tmp_path: Path) -> None:
        with self._client(tmp_path) as client:
            client.cookies.set("csrftoken", "cookie-value")
            response = client.post(
                "/api/v1/uploads",
                files={"file": ("a.txt", b"hi", "text/plain")},
                headers={"X-CSRF-Token": "other-value"},
            )
            assert response.status_code == 403

    def test_matching_token_is_accepted(self, tmp_path: Path) -> None:
        with self._client(tmp_path) as client:
            client.cookies.set("csrftoken", "same-value")
            response = client.post(
                "/api/v1/uploads",
                files={"file": ("a.txt", b"hi", "text/plain")},
                headers={"X-CSRF-Token": "same-value"},
            )
            assert response.status_code == 200
            assert response.json()["entries"][0]["disposition"] == "stored"


def test_policy_endpoint(tmp_path: Path) -> None:
    policy = Policy(max_section_size=1000, permitted_extensions=frozenset({".txt"}))
    with TestClient(create_app(_settings(tmp_path, policy=policy))) as client:
        response = client.get("/api/v1/uploads/policy")
        assert response.status_code == 200
        body = response.json()
        assert body["max_section_size"] == 1000
        assert body["permitted_extensions"] == [".txt"]


def test_runtime_rejects_invalid_settings(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="scan mode"):
        IngestionRuntime(_settings(tmp_path, scan_mode="sometimes"))


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.yaml"
    policy_file.write_text("max_section_size: 4096\npermitted_extensions: [.csv]\n")
    monkeypatch.setenv("STREAM_INGEST_POLICY_FILE", str(policy_file))
    monkeypatch.setenv("STREAM_INGEST_MAX_BODY_BYTES", "8192")
    monkeypatch.setenv("STREAM_INGEST_SCAN_MODE", "STUB")
    monkeypatch.setenv("STREAM_INGEST_HOLDING_ROOT", str(tmp_path / "h"))

    settings = IngestSettings.from_env()
    assert settings.scan_mode == "stub"
    assert settings.holding_root == (tmp_path / "h").resolve()
    assert settings.policy.max_body_size == 8192
    assert settings.policy.max_section_size == 4096
    assert settings.policy.permitted_extensions == frozenset({".csv"})
    assert settings.problems() == []

"""Tests for file name sanitization and the ordered check chain."""

from __future__ import annotations

import pytest

from stream_ingest.policy import Policy
from stream_ingest.validation import (
    Check,
    SectionProbe,
    ValidationPipeline,
    ValidationVerdict,
    check_extension,
    check_signature,
    check_size,
    file_extension,
    first_failure,
    sanitize_filename,
)


class TestSanitizeFilename:
    @pytest.mark.parametrize(
        "declared, expected",
        [
            ("report.pdf", "report.pdf"),
            ("../../etc/passwd", "passwd"),
            ("C:\\Users\\me\\photo.png", "photo.png"),
            ("résumé.docx", "resume.docx"),
            ("<script>alert(1)<script>.txt", "scriptalert1script.txt"),
            ("<b>x</b>.txt", "b.txt"),
            ("  ..hidden.txt. ", "hidden.txt"),
            ("a\x00b\r\nc.txt", "abc.txt"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_sanitizes(self, declared, expected):
        assert sanitize_filename(declared) == expected

    def test_idempotent(self):
        for name in ("../x/ÿ weird  name!.tar.gz", "ok.txt", "..."):
            once = sanitize_filename(name)
            assert sanitize_filename(once) == once

    def test_truncates_but_keeps_extension(self):
        result = sanitize_filename("a" * 300 + ".pdf", max_length=20)
        assert len(result) == 20
        assert result.endswith(".pdf")

    def test_file_extension_is_lowercase(self):
        assert file_extension("Photo.PNG") == ".png"
        assert file_extension("noext") == ""
        assert file_extension("") == ""


class TestChecks:
    def setup_method(self):
        self.policy = Policy(max_section_size=100)

    def test_extension_not_permitted(self):
        verdict = check_extension(SectionProbe("evil.exe"), self.policy)
        assert not verdict.passed
        assert verdict.code == "EXTENSION_NOT_PERMITTED"

    def test_missing_extension(self):
        verdict = check_extension(SectionProbe("README"), self.policy)
        assert verdict.code == "EXTENSION_NOT_PERMITTED"

    def test_extension_is_case_insensitive(self):
        assert check_extension(SectionProbe("IMAGE.PNG"), self.policy).passed

    def test_signature_mismatch(self):
        verdict = check_signature(SectionProbe("report.docx", head=b"%PDF"), self.policy)
        assert not verdict.passed
        assert verdict.code == "SIGNATURE_MISMATCH"

    def test_signature_match(self):
        assert check_signature(SectionProbe("report.docx", head=b"PK\x03\x04"), self.policy).passed

    def test_signature_not_required(self):
        assert check_signature(SectionProbe("notes.txt", head=b""), self.policy).passed

    def test_short_head_fails_signature(self):
        verdict = check_signature(SectionProbe("image.png", head=b"\x89PN"), self.policy)
        assert verdict.code == "SIGNATURE_MISMATCH"

    def test_empty_file(self):
        assert check_size(SectionProbe("a.txt", byte_length=0), self.policy).code == "EMPTY_FILE"
        allowed = Policy(allow_empty_files=True)
        assert check_size(SectionProbe("a.txt", byte_length=0), allowed).passed

    def test_size_over_limit(self):
        verdict = check_size(SectionProbe("a.txt", byte_length=101), self.policy)
        assert verdict.code == "SIZE_LIMIT_EXCEEDED"

    def test_custom_extension_list(self):
        policy = Policy(permitted_extensions=frozenset({"exe"}))
        assert check_extension(SectionProbe("tool.exe"), policy).passed


class TestValidationPipeline:
    def setup_method(self):
        self.policy = Policy()
        self.pipeline = ValidationPipeline()

    def test_stops_when_input_missing(self):
        verdicts = self.pipeline.evaluate(SectionProbe("image.png"), self.policy)
        assert [v.kind for v in verdicts] == ["name", "extension"]
        assert not self.pipeline.is_complete(verdicts)

    def test_first_failure_short_circuits(self):
        verdicts = self.pipeline.evaluate(SectionProbe("evil.exe", head=b"MZ", byte_length=2), self.policy)
        assert [v.kind for v in verdicts] == ["name", "extension"]
        assert first_failure(verdicts).code == "EXTENSION_NOT_PERMITTED"

    def test_complete_pass(self):
        probe = SectionProbe("a.gif", head=b"GIF89a", byte_length=120)
        verdicts = self.pipeline.evaluate(probe, self.policy)
        assert [v.kind for v in verdicts] == ["name", "extension", "signature", "size"]
        assert self.pipeline.is_complete(verdicts)
        assert first_failure(verdicts) is None

    def test_evaluation_is_repeatable(self):
        probe = SectionProbe("a.gif", head=b"GIF89a", byte_length=120)
        assert self.pipeline.evaluate(probe, self.policy) == self.pipeline.evaluate(probe, self.policy)

    def test_custom_checks_run_in_order(self):
        seen = []

        def _record(kind):
            def _run(probe, policy):
                seen.append(kind)
                return ValidationVerdict(kind=kind, passed=kind != "size", reason=kind, code="EMPTY_FILE")

            return _run

        pipeline = ValidationPipeline(
            [
                Check(kind="size", run=_record("size"), ready=lambda probe: True),
                Check(kind="name", run=_record("name"), ready=lambda probe: True),
            ]
        )
        verdicts = pipeline.evaluate(SectionProbe("a.txt"), self.policy)
        assert seen == ["size"]
        assert len(verdicts) == 1

"""Unit tests for uploadguard/core/models.py."""

from __future__ import annotations

import dataclasses

import pytest

from uploadguard.core.models import (
    MediaKind,
    ScanResult,
    ScanState,
    ScanWarning,
    ThreatCategory,
    ThreatPattern,
    Violation,
    classify_media_kind,
    normalize_mime,
)


class TestMediaKind:
    @pytest.mark.parametrize(
        "mime, kind",
        [
            ("image/jpeg", MediaKind.IMAGE),
            ("image/svg+xml", MediaKind.IMAGE),
            ("application/pdf", MediaKind.DOCUMENT),
            ("text/plain; charset=utf-8", MediaKind.DOCUMENT),
            ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", MediaKind.DOCUMENT),
            ("video/mp4", MediaKind.VIDEO),
            ("application/zip", MediaKind.ARCHIVE),
            ("application/x-tar", MediaKind.ARCHIVE),
            ("application/octet-stream", MediaKind.OTHER),
            ("", MediaKind.OTHER),
        ],
    )
    def test_classify(self, mime, kind):
        assert classify_media_kind(mime) is kind

    def test_normalize_mime(self):
        assert normalize_mime(" Image/JPEG ; q=1") == "image/jpeg"


class TestThreatPattern:
    def test_compile_regex(self):
        pattern = ThreatPattern.compile("p", r"abc\d", "custom")
        assert pattern.category is ThreatCategory.CUSTOM
        assert pattern.regex.search(b"ABC1")
        assert pattern.source == r"abc\d"

    def test_compile_literal_bytes(self):
        pattern = ThreatPattern.compile("p", b"(x)", ThreatCategory.CUSTOM)
        assert pattern.regex.search(b"--(X)--")

    def test_dotall(self):
        pattern = ThreatPattern.compile("p", "a.b")
        assert pattern.regex.search(b"a\nb")


class TestResults:
    def test_violation_message(self):
        violation = Violation(filename="a.jpg", category=ThreatCategory.POLYGLOT, rule="embedded_zip")
        assert violation.message == "Potentially dangerous content detected in file: a.jpg"

    def test_results_are_frozen(self):
        result = ScanResult(state=ScanState.CLEAN, filename="a")
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.state = ScanState.VIOLATED  # type: ignore[misc]

    def test_state_helpers(self):
        assert ScanResult(state=ScanState.SKIPPED, filename="a").ok
        assert not ScanResult(state=ScanState.SKIPPED, filename="a").clean
        assert not ScanResult(state=ScanState.VIOLATED, filename="a").ok

    def test_finding_context_is_read_only(self):
        source = {"member": "a.php"}
        violation = Violation(filename="a.zip", category=ThreatCategory.ARCHIVE_THREAT, rule="x", context=source)
        source["member"] = "b.txt"
        assert violation.context == {"member": "a.php"}
        with pytest.raises(TypeError):
            violation.context["member"] = "c.txt"  # type: ignore[index]

    def test_warning_context_is_read_only(self):
        warning = ScanWarning(filename="a", category=ThreatCategory.CUSTOM, rule="note", context={"k": "v"})
        with pytest.raises(TypeError):
            warning.context["k"] = "w"  # type: ignore[index]

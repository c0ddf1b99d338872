"""Unit tests for uploadguard/core/literal_scanner.py."""

from __future__ import annotations

from uploadguard.core.literal_scanner import LiteralScanner
from uploadguard.core.models import ThreatCategory
from uploadguard.core.registry import PatternRegistry


class TestLiteralScanner:
    def test_empty_content_passes(self, registry: PatternRegistry):
        result = LiteralScanner().scan(b"", "empty.txt", registry.snapshot())
        assert not result.failed

    def test_benign_text_passes(self, registry: PatternRegistry):
        result = LiteralScanner().scan(b"Quarterly report, nothing to see.", "r.txt", registry.snapshot())
        assert not result.failed

    def test_case_insensitive_match(self, registry: PatternRegistry):
        result = LiteralScanner().scan(b"<?PHP SYSTEM($_GET['c']); ?>", "x.txt", registry.snapshot())
        assert result.violation is not None
        assert result.violation.rule == "php_open_tag"
        assert result.violation.category is ThreatCategory.PHP_INJECTION

    def test_first_match_follows_registration_order(self, registry: PatternRegistry):
        # script_tag appears first in the buffer but php_open_tag is registered first.
        content = b"<script>alert(1)</script> ... <?php echo 1; ?>"
        result = LiteralScanner().scan(content, "x.html", registry.snapshot())
        assert result.violation.rule == "php_open_tag"

    def test_match_inside_binary(self, registry: PatternRegistry):
        content = b"\x00\x01\x02\xfe" * 100 + b"<script>" + b"\xff\x00" * 100
        result = LiteralScanner().scan(content, "blob.bin", registry.snapshot())
        assert result.violation.rule == "script_tag"
        assert result.violation.category is ThreatCategory.SCRIPT_INJECTION

    def test_violation_does_not_expose_regex(self, registry: PatternRegistry):
        result = LiteralScanner().scan(b"eval ($x)", "x.txt", registry.snapshot())
        violation = result.violation
        assert violation.rule == "eval_call"
        assert violation.context == {"pattern_id": "eval_call"}
        assert "\\s" not in violation.message

    def test_custom_pattern(self):
        registry = PatternRegistry()
        registry.add("CUSTOMTOKEN", pattern_id="acme")
        result = LiteralScanner().scan(b"..customtoken..", "x.txt", registry.snapshot())
        assert result.violation.rule == "acme"
        assert result.violation.category is ThreatCategory.CUSTOM

    def test_scan_region_retags_category(self, registry: PatternRegistry):
        violation = LiteralScanner().scan_region(
            b"<?php echo 1;",
            "x.jpg",
            registry.snapshot(),
            ThreatCategory.POST_IMAGE_CONTENT,
            {"image_type": "JPEG"},
        )
        assert violation.category is ThreatCategory.POST_IMAGE_CONTENT
        assert violation.rule == "php_open_tag"
        assert violation.context == {
            "image_type": "JPEG",
            "pattern_id": "php_open_tag",
            "pattern_category": "php_injection",
        }

    def test_scan_region_miss_returns_none(self, registry: PatternRegistry):
        assert (
            LiteralScanner().scan_region(
                b"\x00\x00",
                "x.jpg",
                registry.snapshot(),
                ThreatCategory.POST_IMAGE_CONTENT,
                {},
            )
            is None
        )

"""Unit tests for uploadguard/core/disposition.py."""

from __future__ import annotations

from uploadguard.config import ScanConfiguration
from uploadguard.core.disposition import decide
from uploadguard.core.models import ScanResult, ScanState, ScanWarning, ThreatCategory, Violation


def _violated() -> ScanResult:
    return ScanResult(
        state=ScanState.VIOLATED,
        filename="evil.jpg",
        violation=Violation(
            filename="evil.jpg",
            category=ThreatCategory.POST_IMAGE_CONTENT,
            rule="php_after_image_end",
        ),
    )


class TestDecide:
    def test_violation_blocks(self):
        disposition = decide(_violated(), ScanConfiguration())
        assert disposition.action == "block"
        assert disposition.status == "rejected"
        assert disposition.reasons == ["post_image_content:php_after_image_end"]

    def test_violation_quarantined(self):
        disposition = decide(_violated(), ScanConfiguration(quarantine_on_violation=True))
        assert disposition.action == "quarantine"
        assert disposition.status == "rejected"

    def test_skipped_is_not_clean(self):
        result = ScanResult(state=ScanState.SKIPPED, filename="big.bin", skip_reason="max_scan_size_exceeded")
        disposition = decide(result, ScanConfiguration())
        assert disposition.action == "pass"
        assert disposition.status == "skipped"
        assert disposition.reasons == ["scan skipped: max_scan_size_exceeded"]

    def test_warnings_flag(self):
        warning = ScanWarning(
            filename="x.jpg",
            category=ThreatCategory.POST_IMAGE_CONTENT,
            rule="large_trailing_data",
        )
        result = ScanResult(state=ScanState.CLEAN, filename="x.jpg", warnings=(warning,))
        disposition = decide(result, ScanConfiguration())
        assert disposition.action == "pass"
        assert disposition.status == "flagged"
        assert disposition.reasons == ["post_image_content:large_trailing_data"]

    def test_clean(self):
        disposition = decide(ScanResult(state=ScanState.CLEAN, filename="x.txt"), ScanConfiguration())
        assert disposition.action == "pass"
        assert disposition.status == "clean"
        assert disposition.reasons == []

    def test_end_to_end(self, orchestrator, make_jpeg):
        config = ScanConfiguration(quarantine_on_violation=True)
        result = orchestrator.scan(make_jpeg() + b"<?php echo 1; ?>", "a.jpg", "image/jpeg", config)
        assert decide(result, config).action == "quarantine"

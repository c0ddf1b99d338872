"""Unit tests for uploadguard/config.py."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from uploadguard.config import DEFAULT_MAX_SCAN_SIZE, ScanConfiguration, Settings, get_settings


class TestScanConfiguration:
    def test_defaults(self):
        config = ScanConfiguration()
        assert config.max_scan_size == DEFAULT_MAX_SCAN_SIZE == 10 * 1024 * 1024
        assert config.scan_images is True
        assert config.scan_documents is True
        assert config.scan_videos is False
        assert config.scan_archives is True
        assert config.strict_mode is False
        assert config.allow_svg is False
        assert config.quarantine_on_violation is False
        assert config.fail_closed_on_oversize is False
        assert config.heuristic_threshold == 3
        assert config.base64_min_length == 32

    def test_frozen(self):
        config = ScanConfiguration()
        with pytest.raises(ValidationError):
            config.strict_mode = True  # type: ignore[misc]

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            ScanConfiguration(scan_everything=True)  # type: ignore[call-arg]

    def test_negative_size_rejected(self):
        with pytest.raises(ValidationError):
            ScanConfiguration(max_scan_size=-1)

    def test_zero_threshold_rejected(self):
        with pytest.raises(ValidationError):
            ScanConfiguration(heuristic_threshold=0)


class TestSettings:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("UPLOADGUARD_MAX_SCAN_SIZE", "2048")
        monkeypatch.setenv("UPLOADGUARD_ALLOW_SVG", "true")
        monkeypatch.setenv("UPLOADGUARD_HEURISTIC_THRESHOLD", "5")
        settings = get_settings()
        assert settings.max_scan_size == 2048
        assert settings.allow_svg is True

        config = settings.to_scan_configuration()
        assert config.max_scan_size == 2048
        assert config.allow_svg is True
        assert config.heuristic_threshold == 5

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    def test_cache_clear_rereads_environment(self, monkeypatch):
        assert get_settings().strict_mode is False
        monkeypatch.setenv("UPLOADGUARD_STRICT_MODE", "1")
        get_settings.cache_clear()
        assert get_settings().strict_mode is True

    def test_defaults_match_scan_configuration(self):
        assert Settings().to_scan_configuration() == ScanConfiguration()

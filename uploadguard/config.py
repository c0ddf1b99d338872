"""Scan policy and application configuration via Pydantic.

Two objects live here:

* :class:`ScanConfiguration` — the immutable per-policy scan settings handed
  to :meth:`~uploadguard.core.pipeline.ScanOrchestrator.scan`.  It is created
  once per caller context (e.g. per upload policy) and is never mutated while
  a scan is running.
* :class:`Settings` — environment-driven defaults for hosts that want to build
  a :class:`ScanConfiguration` from ``UPLOADGUARD_*`` variables.

Usage::

    from uploadguard.config import ScanConfiguration, get_settings

    policy = ScanConfiguration(strict_mode=True, allow_svg=False)
    policy = get_settings().to_scan_configuration()

The ``get_settings`` function is cached with ``functools.lru_cache``. To override
settings in tests, set the relevant environment variables and call
``get_settings.cache_clear()``.
"""
from __future__ import annotations

import functools

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 10 MiB, the reference upload policy.
DEFAULT_MAX_SCAN_SIZE = 10 * 1024 * 1024


class ScanConfiguration(BaseModel):
    """Read-only scan policy.

    Attempting to assign to a field after construction raises a
    ``ValidationError``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_scan_size: int = Field(
        default=DEFAULT_MAX_SCAN_SIZE,
        ge=0,
        description="Content larger than this many bytes is not scanned",
    )
    scan_images: bool = Field(default=True, description="Scan image uploads")
    scan_documents: bool = Field(default=True, description="Scan office/PDF/text documents")
    scan_videos: bool = Field(default=False, description="Scan video uploads")
    scan_archives: bool = Field(default=True, description="Inspect zip archive members")
    strict_mode: bool = Field(
        default=False,
        description="Treat ambiguous structural findings (e.g. SVG handlers) as fatal",
    )
    allow_svg: bool = Field(default=False, description="Accept SVG content at all")
    quarantine_on_violation: bool = Field(
        default=False,
        description="Disposition for violations is quarantine instead of block",
    )
    fail_closed_on_oversize: bool = Field(
        default=False,
        description="Reject content above max_scan_size instead of skipping the scan",
    )
    heuristic_threshold: int = Field(
        default=3,
        ge=1,
        description="Distinct web-shell indicator kinds required for a heuristic violation",
    )
    base64_min_length: int = Field(
        default=32,
        ge=8,
        description="Minimum run of base64 characters decoded by the deobfuscation pass",
    )
    trailing_warning_size: int = Field(
        default=100,
        ge=0,
        description="Pattern-free data after an image end marker above this size is a warning",
    )


class Settings(BaseSettings):
    """uploadguard environment settings.

    Environment variables are read case-insensitively with the
    ``UPLOADGUARD_`` prefix. A ``.env`` file in the working directory is loaded
    automatically when present.
    """

    model_config = SettingsConfigDict(
        env_prefix="UPLOADGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    max_scan_size: int = Field(default=DEFAULT_MAX_SCAN_SIZE, ge=0)
    scan_images: bool = True
    scan_documents: bool = True
    scan_videos: bool = False
    scan_archives: bool = True
    strict_mode: bool = False
    allow_svg: bool = False
    quarantine_on_violation: bool = False
    fail_closed_on_oversize: bool = False
    heuristic_threshold: int = Field(default=3, ge=1)
    base64_min_length: int = Field(default=32, ge=8)
    trailing_warning_size: int = Field(default=100, ge=0)

    custom_patterns_path: str | None = Field(
        default=None,
        description="JSON file of additional threat patterns merged into the registry",
    )

    def to_scan_configuration(self) -> ScanConfiguration:
        """Build the immutable scan policy from these settings."""
        return ScanConfiguration(
            max_scan_size=self.max_scan_size,
            scan_images=self.scan_images,
            scan_documents=self.scan_documents,
            scan_videos=self.scan_videos,
            scan_archives=self.scan_archives,
            strict_mode=self.strict_mode,
            allow_svg=self.allow_svg,
            quarantine_on_violation=self.quarantine_on_violation,
            fail_closed_on_oversize=self.fail_closed_on_oversize,
            heuristic_threshold=self.heuristic_threshold,
            base64_min_length=self.base64_min_length,
            trailing_warning_size=self.trailing_warning_size,
        )


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings singleton.

    The first call reads environment variables (and ``.env``). Subsequent calls
    return the cached instance. Clear the cache with ``get_settings.cache_clear()``
    between tests.
    """
    return Settings()

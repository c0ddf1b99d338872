"""Shared pytest configuration and fixtures for uploadguard tests.

Clears ``UPLOADGUARD_*`` environment variables and the settings cache around
every test so that ``uploadguard.config.get_settings()`` sees a predictable
environment, and provides builders for the synthetic media used across the
suite.
"""
from __future__ import annotations

import io
import os
import struct
import zipfile
from typing import Callable

import pytest

from uploadguard.config import ScanConfiguration, get_settings
from uploadguard.core.pipeline import ScanOrchestrator
from uploadguard.core.registry import PatternRegistry

# Bytes 0x80..0xFE: never a printable signature, never an 0xFF marker prefix.
_FILLER = bytes(range(0x80, 0xFF))

JPEG_HEADER = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00"
JPEG_END_MARKER = b"\xff\xd9"
PNG_HEADER = b"\x89PNG\r\n\x1a\n"
PNG_IEND = b"\x00\x00\x00\x00IEND\xaeB`\x82"


def _filler(size: int) -> bytes:
    return (_FILLER * (size // len(_FILLER) + 1))[:size]


@pytest.fixture(autouse=True)
def _clean_settings(monkeypatch):
    for key in list(os.environ):
        if key.startswith("UPLOADGUARD_"):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def config() -> ScanConfiguration:
    return ScanConfiguration()


@pytest.fixture
def registry() -> PatternRegistry:
    return PatternRegistry.with_builtin_patterns()


@pytest.fixture
def orchestrator(registry: PatternRegistry) -> ScanOrchestrator:
    return ScanOrchestrator(registry)


@pytest.fixture
def make_jpeg() -> Callable[[int], bytes]:
    """Return a builder for a structurally plausible JPEG of *body_size* bytes."""

    def _make(body_size: int = 1024) -> bytes:
        return JPEG_HEADER + _filler(body_size) + JPEG_END_MARKER

    return _make


@pytest.fixture
def make_png() -> Callable[[int], bytes]:
    def _make(body_size: int = 256) -> bytes:
        return PNG_HEADER + _filler(body_size) + PNG_IEND

    return _make


@pytest.fixture
def make_gif() -> Callable[[int], bytes]:
    def _make(body_size: int = 256) -> bytes:
        return b"GIF89a" + _filler(body_size) + b"\x00\x3b"

    return _make


@pytest.fixture
def make_zip() -> Callable[[dict[str, bytes]], bytes]:
    """Return a builder for an in-memory zip with the given members (stored)."""

    def _make(members: dict[str, bytes]) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_STORED) as archive:
            for name, data in members.items():
                archive.writestr(name, data)
        return buf.getvalue()

    return _make


@pytest.fixture
def pe_header() -> bytes:
    """A minimal DOS header whose ``e_lfanew`` points at a ``PE\\0\\0`` signature."""
    return b"MZ" + b"\x00" * 58 + struct.pack("<I", 64) + b"PE\x00\x00" + b"\x00" * 20

"""uploadguard — pre-ingestion content security scanner.

Usage::

    from uploadguard import ScanConfiguration, ScanOrchestrator

    orchestrator = ScanOrchestrator()
    result = orchestrator.scan(raw_bytes, "avatar.jpg", "image/jpeg", ScanConfiguration())
    result.raise_for_violation()
"""

from uploadguard.config import ScanConfiguration
from uploadguard.core.models import (
    ScanResult,
    ScanState,
    ScanWarning,
    SecurityViolationError,
    ThreatCategory,
    Violation,
)
from uploadguard.core.pipeline import ScanOrchestrator
from uploadguard.core.registry import PatternRegistry

__all__ = [
    "PatternRegistry",
    "ScanConfiguration",
    "ScanOrchestrator",
    "ScanResult",
    "ScanState",
    "ScanWarning",
    "SecurityViolationError",
    "ThreatCategory",
    "Violation",
]

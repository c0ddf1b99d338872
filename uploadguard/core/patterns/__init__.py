"""Threat pattern library for uploadguard.

Provides the built-in threat signature set and custom pattern loading.
"""

from uploadguard.core.patterns.threat_patterns import (
    get_builtin_patterns,
    load_patterns,
)

__all__ = [
    "get_builtin_patterns",
    "load_patterns",
]

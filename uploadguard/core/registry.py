"""PatternRegistry — the runtime-mutable set of threat signatures.

The registry is the only state shared between concurrent scans.  It uses
copy-on-write semantics: :meth:`PatternRegistry.add` and
:meth:`PatternRegistry.remove` build a new immutable tuple under a lock and
swap it in, while :meth:`PatternRegistry.snapshot` simply returns the current
tuple.  A scan that took a snapshot keeps iterating that tuple even if another
thread mutates the registry mid-scan.

Usage::

    from uploadguard.core.registry import PatternRegistry

    registry = PatternRegistry.with_builtin_patterns()
    pattern_id = registry.add("CUSTOMTOKEN")
    registry.remove(pattern_id)
"""

from __future__ import annotations

import itertools
import logging
import re
import threading
from pathlib import Path
from typing import Iterable

from uploadguard.core.models import ThreatCategory, ThreatPattern
from uploadguard.core.patterns.threat_patterns import load_patterns

logger = logging.getLogger(__name__)


class InvalidPatternError(ValueError):
    """Raised when a signature cannot be registered (bad regex, duplicate id)."""


class PatternRegistry:
    """Thread-safe, ordered mapping of pattern id to :class:`ThreatPattern`.

    Registration order is the first-match order used by the literal pass.

    Args:
        patterns: Initial patterns, in order.  Defaults to an empty registry;
            use :meth:`with_builtin_patterns` for the standard catalogue.
    """

    def __init__(self, patterns: Iterable[ThreatPattern] = ()) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._patterns: tuple[ThreatPattern, ...] = ()
        for pattern in patterns:
            self.add(pattern)

    @classmethod
    def with_builtin_patterns(
        cls,
        custom_patterns_path: str | Path | None = None,
    ) -> PatternRegistry:
        """Return a registry seeded with the built-in (and optional custom) patterns."""
        return cls(load_patterns(custom_patterns_path))

    def __len__(self) -> int:
        return len(self._patterns)

    def __contains__(self, pattern_id: object) -> bool:
        return any(p.pattern_id == pattern_id for p in self._patterns)

    def snapshot(self) -> tuple[ThreatPattern, ...]:
        """Return the current patterns as an immutable tuple."""
        return self._patterns

    def ids(self) -> list[str]:
        return [p.pattern_id for p in self._patterns]

    def add(
        self,
        signature: str | bytes | ThreatPattern,
        category: ThreatCategory | str = ThreatCategory.CUSTOM,
        pattern_id: str | None = None,
    ) -> str:
        """Register a signature and return its pattern id.

        Args:
            signature: A regex string, a literal ``bytes`` signature, or a
                prebuilt :class:`ThreatPattern` (whose own id and category are
                kept).
            category: Category reported when the signature matches.
            pattern_id: Explicit id.  When ``None`` an id of the form
                ``custom_<n>`` is generated.

        Raises:
            InvalidPatternError: If the regex does not compile, the category is
                unknown, or the id is already registered.
        """
        if isinstance(signature, ThreatPattern):
            pattern = signature
        else:
            try:
                pattern = ThreatPattern.compile(
                    pattern_id or f"custom_{next(self._counter)}",
                    signature,
                    category,
                )
            except (re.error, ValueError) as exc:
                raise InvalidPatternError(f"Cannot register signature {signature!r}: {exc}") from exc

        with self._lock:
            if any(p.pattern_id == pattern.pattern_id for p in self._patterns):
                raise InvalidPatternError(f"Pattern id {pattern.pattern_id!r} is already registered")
            self._patterns = self._patterns + (pattern,)

        logger.debug(
            "Threat pattern registered: id=%s category=%s",
            pattern.pattern_id,
            pattern.category.value,
        )
        return pattern.pattern_id

    def remove(self, pattern_or_id: str | bytes | ThreatPattern) -> bool:
        """Remove a pattern by id, by signature, or by instance.

        Every pattern whose id or signature equals *pattern_or_id* is removed.

        Returns:
            ``True`` if at least one pattern was removed.
        """
        if isinstance(pattern_or_id, ThreatPattern):
            pattern_or_id = pattern_or_id.pattern_id

        with self._lock:
            kept = tuple(
                p
                for p in self._patterns
                if p.pattern_id != pattern_or_id and p.signature != pattern_or_id
            )
            removed = len(self._patterns) - len(kept)
            self._patterns = kept

        if removed:
            logger.debug("Threat pattern removed: %r (%d entries)", pattern_or_id, removed)
        else:
            logger.debug("Threat pattern not registered: %r", pattern_or_id)
        return removed > 0

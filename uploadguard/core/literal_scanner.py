"""LiteralScanner — direct signature matching against raw bytes.

:class:`LiteralScanner` applies a registry snapshot to the entire buffer (never
line by line, since payloads are routinely embedded mid-binary) in
registration order.  The first matching pattern produces a
:class:`~uploadguard.core.models.Violation` whose ``rule`` is the pattern id;
the regex text itself is only written to the structured log so that
user-facing errors do not leak scanner internals.

The scanner is stateless; the same instance can be used concurrently from
multiple threads.
"""

from __future__ import annotations

import logging
from typing import Mapping, Sequence

from uploadguard.core.models import PASSED, PassResult, ThreatCategory, ThreatPattern, Violation

logger = logging.getLogger(__name__)


class LiteralScanner:
    """Stateless first-match signature scanner."""

    def find(
        self,
        content: bytes,
        patterns: Sequence[ThreatPattern],
    ) -> ThreatPattern | None:
        """Return the first pattern in *patterns* that matches *content*."""
        if not content:
            return None
        for pattern in patterns:
            if pattern.regex.search(content):
                return pattern
        return None

    def scan(
        self,
        content: bytes,
        filename: str,
        patterns: Sequence[ThreatPattern],
    ) -> PassResult:
        """Scan *content* against *patterns*.

        Args:
            content: Raw bytes of the upload.  An empty buffer always passes.
            filename: Upload name, carried into the violation.
            patterns: Registry snapshot, in registration order.

        Returns:
            A :class:`PassResult` with a violation for the first matching
            pattern, or an empty result.
        """
        pattern = self.find(content, patterns)
        if pattern is None:
            return PASSED

        logger.warning(
            "Literal threat signature matched: filename=%s pattern_id=%s category=%s",
            filename,
            pattern.pattern_id,
            pattern.category.value,
            extra={"pattern": pattern.source, "scan_filename": filename},
        )
        return PassResult(
            violation=Violation(
                filename=filename,
                category=pattern.category,
                rule=pattern.pattern_id,
                context={"pattern_id": pattern.pattern_id},
            )
        )

    def scan_region(
        self,
        region: bytes,
        filename: str,
        patterns: Sequence[ThreatPattern],
        category: ThreatCategory,
        context: Mapping[str, str],
    ) -> Violation | None:
        """Scan a sub-region of a buffer, re-tagging any hit with *category*.

        Used by structural checks that already know *where* the content sits
        (e.g. after an image end marker) and want that location reflected in
        the violation rather than the pattern's own category.  The pattern's
        own category is kept as ``context["pattern_category"]``.
        """
        pattern = self.find(region, patterns)
        if pattern is None:
            return None
        return Violation(
            filename=filename,
            category=category,
            rule=pattern.pattern_id,
            context={
                **context,
                "pattern_id": pattern.pattern_id,
                "pattern_category": pattern.category.value,
            },
        )

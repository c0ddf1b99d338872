"""Built-in threat signature catalogue for uploadguard.

This module provides the curated set of literal threat signatures that seed
every :class:`~uploadguard.core.registry.PatternRegistry`:

* PHP open, short and echo tags, ASP tags and ``<script`` elements
* ``eval``/``include``/``require`` code execution calls
* ``exec``/``system``/``shell_exec``/``passthru`` command execution calls
* file read/write functions
* raw socket functions
* markers of well-known web shells

Additional organisation-specific signatures can be supplied at startup via a
JSON config file (see :func:`load_patterns`).  Custom signatures are appended
after the built-in set.  No regex compilation occurs at scan time — all
patterns are compiled on load.

**JSON config format** (array of objects at the root):

.. code-block:: json

    [
        {
            "id": "internal_backdoor_marker",
            "pattern": "x-backdoor-token",
            "category": "webshell_indicator"
        }
    ]

``category`` is optional and defaults to ``"custom"``; when present it must
be a :class:`~uploadguard.core.models.ThreatCategory` value.

Usage::

    from uploadguard.core.patterns.threat_patterns import load_patterns

    patterns = load_patterns()                          # built-ins only
    patterns = load_patterns("/path/to/custom.json")    # built-ins + custom
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Optional

from uploadguard.core.models import ThreatCategory, ThreatPattern

logger = logging.getLogger(__name__)

_VALID_CATEGORIES: frozenset[str] = frozenset(c.value for c in ThreatCategory)

# ---------------------------------------------------------------------------
# Built-in raw pattern strings
# ---------------------------------------------------------------------------

# Two-byte openers occur by chance in compressed media, so the short PHP tag
# and the ASP/JSP tag must be followed by printable text.
_PHP_SHORT_TAG = r"<\?\s+[\x20-\x7e]{4}"
_ASP_TAG = r"<%(?:[=@#:\s]|--)[\x20-\x7e]{4}"

#: Ordered list of (id, raw_pattern, category) tuples.  Order is the
#: first-match order of the literal pass.
_BUILTIN_DEFINITIONS: list[tuple[str, str, ThreatCategory]] = [
    ("php_open_tag",          r"<\?php",                   ThreatCategory.PHP_INJECTION),
    ("php_short_tag",         _PHP_SHORT_TAG,              ThreatCategory.PHP_INJECTION),
    ("php_echo_tag",          r"<\?=",                     ThreatCategory.PHP_INJECTION),
    ("asp_tag",               _ASP_TAG,                    ThreatCategory.SCRIPT_INJECTION),
    ("script_tag",            r"<script",                  ThreatCategory.SCRIPT_INJECTION),
    ("eval_call",             r"eval\s*\(",                ThreatCategory.CODE_EXECUTION),
    ("exec_call",             r"exec\s*\(",                ThreatCategory.COMMAND_EXECUTION),
    ("system_call",           r"system\s*\(",              ThreatCategory.COMMAND_EXECUTION),
    ("shell_exec_call",       r"shell_exec\s*\(",          ThreatCategory.COMMAND_EXECUTION),
    ("passthru_call",         r"passthru\s*\(",            ThreatCategory.COMMAND_EXECUTION),
    ("file_get_contents_call", r"file_get_contents\s*\(",  ThreatCategory.FILESYSTEM_FUNCTION),
    ("file_put_contents_call", r"file_put_contents\s*\(",  ThreatCategory.FILESYSTEM_FUNCTION),
    ("fopen_call",            r"fopen\s*\(",               ThreatCategory.FILESYSTEM_FUNCTION),
    ("fwrite_call",           r"fwrite\s*\(",              ThreatCategory.FILESYSTEM_FUNCTION),
    ("include_call",          r"include\s*\(",             ThreatCategory.CODE_EXECUTION),
    ("require_call",          r"require\s*\(",             ThreatCategory.CODE_EXECUTION),
    ("socket_open_call",      r"p?fsockopen\s*\(",         ThreatCategory.NETWORK_FUNCTION),
    ("stream_socket_call",    r"stream_socket_client\s*\(", ThreatCategory.NETWORK_FUNCTION),
    ("known_webshell_marker", r"c99shell|r57shell|b374k|FilesMan", ThreatCategory.WEBSHELL_INDICATOR),
]

_BUILTIN_PATTERNS: list[ThreatPattern] = [
    ThreatPattern.compile(pattern_id, raw, category)
    for pattern_id, raw, category in _BUILTIN_DEFINITIONS
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_patterns(
    custom_config_path: Optional[str | Path] = None,
) -> list[ThreatPattern]:
    """Return a pre-compiled list of threat patterns.

    Always includes every built-in signature.  When *custom_config_path* is
    provided, additional patterns from that JSON file are appended **after**
    the built-ins.

    Malformed entries (missing keys, unknown category, un-compilable regex,
    duplicate id) are skipped with a warning so that the host can start with
    the valid patterns even when the config contains errors.

    Args:
        custom_config_path: Filesystem path to a JSON file containing an
            array of custom pattern objects with ``"id"``, ``"pattern"`` and
            optional ``"category"`` keys.  Pass ``None`` (the default) to use
            built-in patterns only.

    Returns:
        A :class:`list` of :class:`ThreatPattern` objects in stable order:
        built-in patterns first, then custom patterns in file order.

    Note:
        This function never raises.  All filesystem and JSON errors are
        surfaced only as log messages so that a missing or corrupt config
        file does not disable scanning.
    """
    patterns: list[ThreatPattern] = list(_BUILTIN_PATTERNS)

    if custom_config_path is None:
        return patterns

    path = Path(custom_config_path)

    if not path.exists():
        logger.warning(
            "Custom threat pattern config not found: %s; using built-in patterns only",
            path,
        )
        return patterns

    try:
        entries = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        logger.error(
            "Cannot read custom threat pattern config %s: %s; using built-in patterns only",
            path,
            exc,
        )
        return patterns
    except json.JSONDecodeError as exc:
        logger.error(
            "Invalid JSON in custom threat pattern config %s: %s; using built-in patterns only",
            path,
            exc,
        )
        return patterns

    if not isinstance(entries, list):
        logger.error(
            "Custom threat pattern config %s must contain a JSON array at the root "
            "(got %s); using built-in patterns only",
            path,
            type(entries).__name__,
        )
        return patterns

    seen_ids = {p.pattern_id for p in patterns}
    loaded = 0

    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning("Custom threat pattern entry at index %d is not a JSON object; skipping", i)
            continue

        pattern_id = entry.get("id")
        raw_pattern = entry.get("pattern")
        category = entry.get("category", ThreatCategory.CUSTOM.value)

        if not pattern_id or not isinstance(pattern_id, str):
            logger.warning("Custom threat pattern entry at index %d missing valid 'id'; skipping", i)
            continue

        if not raw_pattern or not isinstance(raw_pattern, str):
            logger.warning(
                "Custom threat pattern %r at index %d missing valid 'pattern'; skipping",
                pattern_id,
                i,
            )
            continue

        if category not in _VALID_CATEGORIES:
            logger.warning(
                "Custom threat pattern %r at index %d has unknown category %r; skipping",
                pattern_id,
                i,
                category,
            )
            continue

        if pattern_id in seen_ids:
            logger.warning(
                "Custom threat pattern id %r at index %d is already registered; skipping",
                pattern_id,
                i,
            )
            continue

        try:
            compiled = ThreatPattern.compile(pattern_id, raw_pattern, category)
        except re.error as exc:
            logger.error(
                "Custom threat pattern %r at index %d has invalid regex %r: %s; skipping",
                pattern_id,
                i,
                raw_pattern,
                exc,
            )
            continue

        patterns.append(compiled)
        seen_ids.add(pattern_id)
        loaded += 1

    logger.info(
        "Loaded %d custom threat pattern(s) from %s (total patterns: %d)",
        loaded,
        path,
        len(patterns),
    )
    return patterns


def get_builtin_patterns() -> list[ThreatPattern]:
    """Return the pre-compiled built-in patterns without loading any config."""
    return list(_BUILTIN_PATTERNS)

"""DeobfuscationScanner — re-examine a buffer through decoded views.

Attackers encode payloads precisely to dodge literal matching, so this pass
decodes and re-scans rather than merely flagging content that "looks
encoded".  It runs six independent sub-checks in a fixed order; the first one
to hit terminates the pass:

1. ``hex_encoded``       — hex text of fatal signatures (``3c3f706870`` is
   ``<?php``) stored as ASCII inside the file.
2. ``base64_encoded``    — long base64 runs are decoded and the decoded bytes
   are tested for executable-code indicators.
3. ``url_encoded``       — percent-encoded (and double-encoded) open tags.
4. ``suspicious_bytes``  — escaped byte sequences such as ``\\x3c\\x3f``.
5. ``concatenated``      — ``"p"."hp"`` style assembly of the word *php*.
6. ``obfuscated_eval``   — eval/assert/system reached through variable
   functions or callback-taking builtins.

Every violation carries ``category=obfuscation`` and
``context["technique"]`` set to the sub-check name so operators can tell the
detection technique apart from the detection hit.

Base64 decoding failures are swallowed: a failed decode is evidence that the
run is *not* an encoded payload.
"""

from __future__ import annotations

import base64
import binascii
import functools
import logging
import re

from uploadguard.core.models import PASSED, PassResult, ThreatCategory, Violation

logger = logging.getLogger(__name__)

_FLAGS = re.IGNORECASE

# (marker, compiled regex) pairs per technique.
_HEX_MARKERS: list[tuple[str, re.Pattern]] = [  # type: ignore[type-arg]
    ("php_open_tag", re.compile(rb"3c3f706870", _FLAGS)),
    ("php_echo_tag", re.compile(rb"3c3f3d", _FLAGS)),
    ("script_tag", re.compile(rb"3c736372697074", _FLAGS)),
    ("eval_call", re.compile(rb"6576616c28", _FLAGS)),
    ("system_call", re.compile(rb"73797374656d28", _FLAGS)),
]

_URL_MARKERS: list[tuple[str, re.Pattern]] = [  # type: ignore[type-arg]
    ("php_open_tag", re.compile(rb"%3C(?:%3F|\?)(?:php|=|%3D)", _FLAGS)),
    ("asp_tag", re.compile(rb"%3C%25", _FLAGS)),
    ("script_tag", re.compile(rb"%3Cscript", _FLAGS)),
    ("double_encoded_tag", re.compile(rb"%253C(?:%253F|%2525)", _FLAGS)),
]

_SUSPICIOUS_BYTE_MARKERS: list[tuple[str, re.Pattern]] = [  # type: ignore[type-arg]
    ("open_tag_hex_escape", re.compile(rb"\\x3c\\x3f", _FLAGS)),
    ("open_tag_octal_escape", re.compile(rb"\\74\\77")),
    ("php_hex_escape", re.compile(rb"\\x70\\x68\\x70", _FLAGS)),
    ("php_octal_escape", re.compile(rb"\\160\\150\\160")),
    ("eval_hex_escape", re.compile(rb"\\x65\\x76\\x61\\x6c", _FLAGS)),
    ("exec_hex_escape", re.compile(rb"\\x65\\x78\\x65\\x63", _FLAGS)),
    ("system_hex_escape", re.compile(rb"\\x73\\x79\\x73\\x74\\x65\\x6d", _FLAGS)),
]

_Q = rb"""["']"""
_CAT = rb"""["']\s*\.\s*["']"""

_CONCAT_MARKERS: list[tuple[str, re.Pattern]] = [  # type: ignore[type-arg]
    ("php_split", re.compile(_Q + rb"p" + _CAT + rb"hp" + _Q, _FLAGS)),
    ("php_split", re.compile(_Q + rb"ph" + _CAT + rb"p" + _Q, _FLAGS)),
    ("php_split", re.compile(_Q + rb"p" + _CAT + rb"h" + _CAT + rb"p" + _Q, _FLAGS)),
    ("open_tag_split", re.compile(rb"<\?" + _CAT + rb"php", _FLAGS)),
]

_DANGEROUS_NAMES = rb"(?:eval|assert|system|exec|shell_exec|passthru)"

_EVAL_MARKERS: list[tuple[str, re.Pattern]] = [  # type: ignore[type-arg]
    (
        "variable_function_name",
        re.compile(rb"\$\w+\s*=\s*" + _Q + _DANGEROUS_NAMES + _Q, _FLAGS),
    ),
    (
        "callback_builtin",
        re.compile(
            rb"(?:array_map|array_filter|array_walk|usort|call_user_func(?:_array)?"
            rb"|register_shutdown_function)\s*\(\s*" + _Q + _DANGEROUS_NAMES + _Q,
            _FLAGS,
        ),
    ),
    ("create_function", re.compile(rb"create_function\s*\(", _FLAGS)),
    (
        "variable_call_with_input",
        re.compile(rb"\$\w+\s*\(\s*\$_(?:GET|POST|REQUEST|COOKIE)", _FLAGS),
    ),
    (
        "superglobal_call",
        re.compile(rb"\$_(?:GET|POST|REQUEST|COOKIE)\s*\[[^\]]{1,64}\]\s*\(", _FLAGS),
    ),
]

# Reduced "contains executable code" check applied to decoded base64 runs.
_DECODED_CODE_INDICATOR = re.compile(
    rb"<\?php|<\?="
    rb"|\$_(?:GET|POST|REQUEST|COOKIE|SERVER|FILES)\b"
    rb"|\b(?:eval|assert|system|exec|shell_exec|passthru)\s*\(",
    _FLAGS,
)

#: (technique, rule, markers) in evaluation order, excluding base64 which is
#: handled separately because it needs decoding.
_REGEX_CHECKS_BEFORE_BASE64 = [
    ("hex_encoded", "hex_encoded_payload", _HEX_MARKERS),
]
_REGEX_CHECKS_AFTER_BASE64 = [
    ("url_encoded", "url_encoded_tag", _URL_MARKERS),
    ("suspicious_bytes", "suspicious_bytes", _SUSPICIOUS_BYTE_MARKERS),
    ("concatenated", "concatenated_php", _CONCAT_MARKERS),
    ("obfuscated_eval", "obfuscated_eval", _EVAL_MARKERS),
]


@functools.lru_cache(maxsize=8)
def _base64_run_regex(min_length: int) -> re.Pattern:  # type: ignore[type-arg]
    return re.compile(rb"[A-Za-z0-9+/]{%d,}={0,2}" % min_length)


def _decode_candidates(run: bytes) -> list[bytes]:
    """Decode *run* at each of the four possible alignments.

    A maximal run may start with unrelated alphanumerics, so the real
    payload can begin at any offset modulo 4.
    """
    body = run.rstrip(b"=")
    decoded: list[bytes] = []
    for offset in range(4):
        chunk = body[offset:]
        chunk = chunk[: len(chunk) - len(chunk) % 4]
        if not chunk:
            continue
        try:
            decoded.append(base64.b64decode(chunk, validate=True))
        except (binascii.Error, ValueError):
            continue
    return decoded


class DeobfuscationScanner:
    """Decode-and-rescan pass.

    Args:
        base64_min_length: Shortest base64 run worth decoding.  Shorter runs
            are too common in ordinary text and binary data.
    """

    def __init__(self, base64_min_length: int = 32) -> None:
        self.base64_min_length = base64_min_length

    def scan(self, content: bytes, filename: str, base64_min_length: int | None = None) -> PassResult:
        if not content:
            return PASSED

        for technique, rule, markers in _REGEX_CHECKS_BEFORE_BASE64:
            violation = self._match_markers(content, filename, technique, rule, markers)
            if violation is not None:
                return PassResult(violation=violation)

        violation = self.scan_base64(content, filename, base64_min_length or self.base64_min_length)
        if violation is not None:
            return PassResult(violation=violation)

        for technique, rule, markers in _REGEX_CHECKS_AFTER_BASE64:
            violation = self._match_markers(content, filename, technique, rule, markers)
            if violation is not None:
                return PassResult(violation=violation)

        return PASSED

    def scan_base64(self, content: bytes, filename: str, min_length: int) -> Violation | None:
        """Decode every long base64 run and test it for code indicators."""
        for match in _base64_run_regex(min_length).finditer(content):
            for decoded in _decode_candidates(match.group()):
                hit = _DECODED_CODE_INDICATOR.search(decoded)
                if hit is None:
                    continue
                logger.warning(
                    "Base64-encoded code payload detected: filename=%s offset=%d run_length=%d",
                    filename,
                    match.start(),
                    len(match.group()),
                )
                return Violation(
                    filename=filename,
                    category=ThreatCategory.OBFUSCATION,
                    rule="base64_encoded_php",
                    context={
                        "technique": "base64_encoded",
                        "offset": str(match.start()),
                        "run_length": str(len(match.group())),
                    },
                )
        return None

    @staticmethod
    def _match_markers(
        content: bytes,
        filename: str,
        technique: str,
        rule: str,
        markers: list[tuple[str, re.Pattern]],  # type: ignore[type-arg]
    ) -> Violation | None:
        for marker, regex in markers:
            hit = regex.search(content)
            if hit is None:
                continue
            logger.warning(
                "Obfuscated payload detected: filename=%s technique=%s marker=%s offset=%d",
                filename,
                technique,
                marker,
                hit.start(),
            )
            return Violation(
                filename=filename,
                category=ThreatCategory.OBFUSCATION,
                rule=rule,
                context={
                    "technique": technique,
                    "marker": marker,
                    "offset": str(hit.start()),
                },
            )
        return None

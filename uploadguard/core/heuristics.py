"""HeuristicAggregator — co-occurrence of individually weak indicators.

Sophisticated web shells avoid every single strong signature, but they still
need to read request input, decode a payload and act on it.  This pass counts
how many *distinct* indicator kinds appear anywhere in the buffer; reaching
the configured threshold (3 by default) is fatal even if no indicator alone
would be.
"""

from __future__ import annotations

import logging
import re

from uploadguard.core.models import PASSED, PassResult, ThreatCategory, Violation

logger = logging.getLogger(__name__)

_FLAGS = re.IGNORECASE

INDICATORS: dict[str, re.Pattern] = {  # type: ignore[type-arg]
    "superglobal": re.compile(rb"\$_(?:GET|POST|REQUEST|COOKIE|SERVER|FILES|ENV)\b", _FLAGS),
    "eval": re.compile(rb"\b(?:eval|assert)\b", _FLAGS),
    "base64_decode": re.compile(rb"\bbase64_decode\b", _FLAGS),
    "command_execution": re.compile(
        rb"\b(?:system|exec|shell_exec|passthru|popen|proc_open|pcntl_exec)\b", _FLAGS
    ),
    "file_io": re.compile(
        rb"\b(?:fopen|fwrite|fputs|fread|file_put_contents|file_get_contents|readfile)\b", _FLAGS
    ),
    "upload_move": re.compile(rb"\bmove_uploaded_file\b", _FLAGS),
}


class HeuristicAggregator:
    """Distinct-indicator counter.

    Args:
        threshold: Number of distinct indicator kinds that makes a buffer
            fatal.
    """

    def __init__(self, threshold: int = 3) -> None:
        self.threshold = threshold

    def indicators_present(self, content: bytes) -> list[str]:
        return [name for name, regex in INDICATORS.items() if regex.search(content)]

    def scan(self, content: bytes, filename: str, threshold: int | None = None) -> PassResult:
        threshold = threshold or self.threshold
        if not content:
            return PASSED

        present = self.indicators_present(content)
        if len(present) < threshold:
            if present:
                logger.debug(
                    "Heuristic indicators below threshold: filename=%s indicators=%s threshold=%d",
                    filename,
                    present,
                    threshold,
                )
            return PASSED

        logger.warning(
            "Multiple web-shell indicators: filename=%s count=%d indicators=%s",
            filename,
            len(present),
            ",".join(present),
        )
        return PassResult(
            violation=Violation(
                filename=filename,
                category=ThreatCategory.WEBSHELL_INDICATOR,
                rule="multiple_indicators",
                context={
                    "indicator_count": str(len(present)),
                    "indicators": ",".join(present),
                    "threshold": str(threshold),
                },
            )
        )

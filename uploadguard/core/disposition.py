"""Disposition — map a scan verdict onto the action the upload layer takes.

The engine itself only produces a :class:`~uploadguard.core.models.ScanResult`;
what happens to the bytes is decided here from the same
:class:`~uploadguard.config.ScanConfiguration` the scan ran under:

* ``violated`` → ``"block"``, or ``"quarantine"`` when
  ``quarantine_on_violation`` is set.
* ``clean`` with warnings → ``"pass"`` with status ``"flagged"``.
* ``clean`` → ``"pass"`` with status ``"clean"``.
* ``skipped`` → ``"pass"`` with status ``"skipped"`` so that callers can
  tell an unscanned upload apart from a clean one.

Usage::

    from uploadguard.core.disposition import decide

    result = orchestrator.scan(raw_bytes, name, mime, policy)
    disposition = decide(result, policy)
    print(disposition.action, disposition.status)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from uploadguard.config import ScanConfiguration
from uploadguard.core.models import ScanResult

logger = logging.getLogger(__name__)

Action = Literal["pass", "quarantine", "block"]
Status = Literal["clean", "flagged", "skipped", "rejected"]


@dataclass(frozen=True)
class DispositionResult:
    """Immutable result of a disposition decision.

    Attributes:
        action: ``"pass"``, ``"quarantine"`` or ``"block"``.
        status: ``"clean"``, ``"flagged"``, ``"skipped"`` or ``"rejected"``.
        reasons: Human-readable strings explaining the decision, suitable for
            audit logs.
    """

    action: Action
    status: Status
    reasons: list[str] = field(default_factory=list)


def decide(result: ScanResult, config: ScanConfiguration) -> DispositionResult:
    """Return the :class:`DispositionResult` for *result* under *config*."""
    if result.violation is not None:
        action: Action = "quarantine" if config.quarantine_on_violation else "block"
        reason = f"{result.violation.category.value}:{result.violation.rule}"
        logger.info(
            "Disposition decided: filename=%s action=%s reason=%s",
            result.filename,
            action,
            reason,
        )
        return DispositionResult(action=action, status="rejected", reasons=[reason])

    if result.skipped:
        return DispositionResult(
            action="pass",
            status="skipped",
            reasons=[f"scan skipped: {result.skip_reason}"],
        )

    if result.warnings:
        return DispositionResult(
            action="pass",
            status="flagged",
            reasons=[f"{w.category.value}:{w.rule}" for w in result.warnings],
        )

    return DispositionResult(action="pass", status="clean")

"""ScanOrchestrator — sequencing of the uploadguard scanning passes.

:class:`ScanOrchestrator` runs one scan request through the following state
machine::

    pending ─┬─> skipped                      (size check / kind disabled)
             └─> scanning ─┬─> clean
                           └─> violated

While *scanning*, the passes run in order and the first violation
short-circuits the rest:

1. **image_trailer** — data after the image end marker (images only)
2. **literal**       — registry signatures against the raw bytes
3. **deobfuscation** — hex/base64/URL/escaped/concatenated payloads
4. **polyglot**      — embedded ZIP/PDF/PE/ELF/class signatures
5. **structural**    — EXIF, SVG and archive member checks
6. **document**      — macro and PDF action checks (documents only)
7. **heuristic**     — co-occurrence of weak web-shell indicators

Every pass is wrapped in a named OpenTelemetry span and returns a
:class:`~uploadguard.core.models.PassResult`; passes never raise to signal a
finding.  The registry is snapshotted once per scan, so concurrent
``add_pattern``/``remove_pattern`` calls never affect a scan in flight.

**Fail-secure contract**: an unexpected exception inside a pass (a bug, not a
finding) aborts the scan with :class:`ScanPipelineError`; callers must treat it
as a rejection, never as "clean".

Usage::

    from uploadguard.config import ScanConfiguration
    from uploadguard.core.pipeline import ScanOrchestrator

    orchestrator = ScanOrchestrator()
    result = orchestrator.scan(raw_bytes, "report.pdf", "application/pdf", ScanConfiguration())
    if not result.ok:
        print(result.violation.category, result.violation.rule)
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter

from uploadguard.config import ScanConfiguration, Settings, get_settings
from uploadguard.core.deobfuscation import DeobfuscationScanner
from uploadguard.core.document_scanner import DocumentScanner
from uploadguard.core.heuristics import HeuristicAggregator
from uploadguard.core.literal_scanner import LiteralScanner
from uploadguard.core.models import (
    MediaKind,
    PassResult,
    ScanRequest,
    ScanResult,
    ScanState,
    ScanWarning,
    ThreatCategory,
    Violation,
)
from uploadguard.core.polyglot import PolyglotDetector
from uploadguard.core.registry import PatternRegistry
from uploadguard.core.structural import StructuralScanner

logger = logging.getLogger(__name__)

# OTel tracer, one per module, reused across all scans.
tracer = trace.get_tracer(
    "uploadguard.pipeline",
    schema_url="https://opentelemetry.io/schemas/1.11.0",
)

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

_SCANS = Counter(
    "uploadguard_scans_total",
    "Total scans by outcome",
    ["outcome"],  # clean | violated | skipped | error
)
_VIOLATIONS = Counter(
    "uploadguard_violations_total",
    "Total violations by category and pass",
    ["category", "pass_name"],
)
_WARNINGS = Counter(
    "uploadguard_warnings_total",
    "Total non-fatal findings by rule",
    ["rule"],
)

SKIP_OVERSIZED = "max_scan_size_exceeded"
SKIP_KIND_DISABLED = "scanning_disabled_for_kind"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ScanPipelineError(Exception):
    """Raised when a pass fails unrecoverably.

    Attributes:
        pass_name: Short name of the pass that raised (e.g. ``"structural"``).
        original: The exception that triggered the failure.
    """

    def __init__(self, pass_name: str, original: Exception) -> None:
        super().__init__(f"Scan pass '{pass_name}' failed: {original}")
        self.pass_name = pass_name
        self.original = original


# ---------------------------------------------------------------------------
# ScanOrchestrator
# ---------------------------------------------------------------------------


class ScanOrchestrator:
    """Sequences the scanning passes for each request.

    All passes are injected at construction time (defaults are the standard
    implementations) so that individual passes can be replaced in tests.

    Args:
        registry: Pattern registry owned by this orchestrator.  When ``None``
            a registry seeded with the built-in patterns is created.
        literal_scanner: Literal signature pass.
        deobfuscation_scanner: Decode-and-rescan pass.
        polyglot_detector: Embedded signature pass.
        structural_scanner: Image/SVG/archive pass.
        document_scanner: Macro/PDF action pass.
        heuristic_aggregator: Indicator co-occurrence pass.
    """

    def __init__(
        self,
        registry: PatternRegistry | None = None,
        *,
        literal_scanner: LiteralScanner | None = None,
        deobfuscation_scanner: DeobfuscationScanner | None = None,
        polyglot_detector: PolyglotDetector | None = None,
        structural_scanner: StructuralScanner | None = None,
        document_scanner: DocumentScanner | None = None,
        heuristic_aggregator: HeuristicAggregator | None = None,
    ) -> None:
        self.registry = registry if registry is not None else PatternRegistry.with_builtin_patterns()
        self._literal = literal_scanner or LiteralScanner()
        self._deobfuscation = deobfuscation_scanner or DeobfuscationScanner()
        self._polyglot = polyglot_detector or PolyglotDetector()
        self._structural = structural_scanner or StructuralScanner(self._literal)
        self._document = document_scanner or DocumentScanner()
        self._heuristic = heuristic_aggregator or HeuristicAggregator()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ScanOrchestrator:
        """Build an orchestrator whose registry includes ``custom_patterns_path``."""
        if settings is None:
            settings = get_settings()
        registry = PatternRegistry.with_builtin_patterns(settings.custom_patterns_path)
        logger.info(
            "Scan orchestrator initialised: patterns=%d custom_patterns_path=%s",
            len(registry),
            settings.custom_patterns_path,
        )
        return cls(registry)

    # ------------------------------------------------------------------
    # Registry management
    # ------------------------------------------------------------------

    def add_pattern(
        self,
        signature: str | bytes,
        category: ThreatCategory | str = ThreatCategory.CUSTOM,
        pattern_id: str | None = None,
    ) -> str:
        """Register an additional signature; see :meth:`PatternRegistry.add`."""
        return self.registry.add(signature, category, pattern_id)

    def remove_pattern(self, pattern_id_or_signature: str | bytes) -> bool:
        """Remove a signature by id or by signature text."""
        return self.registry.remove(pattern_id_or_signature)

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def scan(
        self,
        content: bytes,
        filename: str,
        declared_mime: str,
        config: ScanConfiguration | None = None,
    ) -> ScanResult:
        """Scan *content* and return the verdict.

        Args:
            content: Untrusted upload bytes.  Never modified.
            filename: Upload name, used in findings and logs.
            declared_mime: MIME type claimed by the uploader.
            config: Scan policy.  Defaults to :class:`ScanConfiguration()`.

        Returns:
            A :class:`ScanResult` that is ``clean``, ``skipped`` or
            ``violated`` (exactly one violation, the first cause).

        Raises:
            :class:`ScanPipelineError`: If a pass raises unexpectedly.
        """
        if config is None:
            config = ScanConfiguration()
        request = ScanRequest(content=bytes(content), filename=filename, declared_mime=declared_mime)
        scan_start_ms = int(time.monotonic() * 1000)

        logger.info(
            "Security scan started: filename=%s mime_type=%s size=%d",
            filename,
            request.mime,
            len(request.content),
        )

        with tracer.start_as_current_span("uploadguard.scan", kind=trace.SpanKind.INTERNAL) as root_span:
            root_span.set_attribute("scan.filename", filename)
            root_span.set_attribute("scan.mime_type", request.mime)
            root_span.set_attribute("scan.size_bytes", len(request.content))

            try:
                result = self._scan(request, config)
            except ScanPipelineError as exc:
                _SCANS.labels(outcome="error").inc()
                root_span.record_exception(exc.original)
                root_span.set_status(Status(StatusCode.ERROR, str(exc)))
                root_span.set_attribute("scan.failed_pass", exc.pass_name)
                logger.error(
                    "Security scan failed at pass '%s': filename=%s error=%r",
                    exc.pass_name,
                    filename,
                    exc.original,
                )
                raise

            elapsed_ms = int(time.monotonic() * 1000) - scan_start_ms
            root_span.set_attribute("scan.state", result.state.value)
            root_span.set_attribute("scan.warnings_count", len(result.warnings))
            root_span.set_attribute("scan.duration_ms", elapsed_ms)

        _SCANS.labels(outcome=result.state.value).inc()
        for warning in result.warnings:
            _WARNINGS.labels(rule=warning.rule).inc()

        if result.violation is not None:
            violation = result.violation
            logger.warning(
                "Security threat detected, upload must be blocked: filename=%s category=%s rule=%s",
                filename,
                violation.category.value,
                violation.rule,
                extra={"violation_context": dict(violation.context), "scan_filename": filename},
            )
        elif result.skipped:
            logger.info(
                "Security scan skipped: filename=%s reason=%s warnings=%d",
                filename,
                result.skip_reason,
                len(result.warnings),
            )
        else:
            logger.info(
                "Security scan completed successfully: filename=%s warnings=%d duration_ms=%d",
                filename,
                len(result.warnings),
                elapsed_ms,
            )
        return result

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _scan(self, request: ScanRequest, config: ScanConfiguration) -> ScanResult:
        size = len(request.content)
        if size > config.max_scan_size:
            return self._oversized(request, config)

        if not self._kind_enabled(request.kind, config):
            return ScanResult(
                state=ScanState.SKIPPED,
                filename=request.filename,
                skip_reason=SKIP_KIND_DISABLED,
            )

        patterns = self.registry.snapshot()
        steps: list[tuple[str, Callable[[], PassResult]]] = []
        if request.kind is MediaKind.IMAGE:
            steps.append(
                ("image_trailer", lambda: self._structural.scan_image_trailer(request, config, patterns))
            )
        steps.extend(
            [
                ("literal", lambda: self._literal.scan(request.content, request.filename, patterns)),
                (
                    "deobfuscation",
                    lambda: self._deobfuscation.scan(request.content, request.filename, config.base64_min_length),
                ),
                (
                    "polyglot",
                    lambda: self._polyglot.scan(request.content, request.filename, request.declared_mime),
                ),
                ("structural", lambda: self._structural.scan(request, config, patterns)),
            ]
        )
        if request.kind is MediaKind.DOCUMENT:
            steps.append(("document", lambda: self._document.scan(request)))
        steps.append(
            (
                "heuristic",
                lambda: self._heuristic.scan(request.content, request.filename, config.heuristic_threshold),
            )
        )

        warnings: list[ScanWarning] = []
        passes_run: list[str] = []
        for pass_name, step_fn in steps:
            outcome = self._run_step(request, pass_name, step_fn)
            passes_run.append(pass_name)
            warnings.extend(outcome.warnings)
            if outcome.violation is not None:
                _VIOLATIONS.labels(category=outcome.violation.category.value, pass_name=pass_name).inc()
                return ScanResult(
                    state=ScanState.VIOLATED,
                    filename=request.filename,
                    violation=outcome.violation,
                    warnings=tuple(warnings),
                    passes_run=tuple(passes_run),
                )

        return ScanResult(
            state=ScanState.CLEAN,
            filename=request.filename,
            warnings=tuple(warnings),
            passes_run=tuple(passes_run),
        )

    @staticmethod
    def _kind_enabled(kind: MediaKind, config: ScanConfiguration) -> bool:
        if kind is MediaKind.IMAGE:
            return config.scan_images
        if kind is MediaKind.DOCUMENT:
            return config.scan_documents
        if kind is MediaKind.VIDEO:
            return config.scan_videos
        return True

    @staticmethod
    def _oversized(request: ScanRequest, config: ScanConfiguration) -> ScanResult:
        context = {"size": str(len(request.content)), "max_scan_size": str(config.max_scan_size)}
        if config.fail_closed_on_oversize:
            logger.error(
                "Content too large for scanning, rejecting: filename=%s size=%d max_size=%d",
                request.filename,
                len(request.content),
                config.max_scan_size,
            )
            return ScanResult(
                state=ScanState.VIOLATED,
                filename=request.filename,
                violation=Violation(
                    filename=request.filename,
                    category=ThreatCategory.OVERSIZED,
                    rule=SKIP_OVERSIZED,
                    context=context,
                ),
            )

        logger.warning(
            "Content too large for scanning: filename=%s size=%d max_size=%d",
            request.filename,
            len(request.content),
            config.max_scan_size,
        )
        return ScanResult(
            state=ScanState.SKIPPED,
            filename=request.filename,
            skip_reason=SKIP_OVERSIZED,
        )

    # ------------------------------------------------------------------
    # Internal step runner
    # ------------------------------------------------------------------

    def _run_step(
        self,
        request: ScanRequest,
        pass_name: str,
        step_fn: Callable[[], PassResult],
    ) -> PassResult:
        """Execute one pass inside a named OTel child span.

        Raises:
            :class:`ScanPipelineError`: Wrapping any exception raised by *step_fn*.
        """
        with tracer.start_as_current_span(f"uploadguard.{pass_name}") as span:
            span.set_attribute("pass.name", pass_name)
            step_start_ms = int(time.monotonic() * 1000)

            try:
                outcome = step_fn()
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                span.set_attribute("pass.error", type(exc).__name__)
                raise ScanPipelineError(pass_name, exc) from exc

            elapsed_ms = int(time.monotonic() * 1000) - step_start_ms
            span.set_attribute("pass.duration_ms", elapsed_ms)
            span.set_attribute("pass.violated", outcome.violation is not None)
            logger.debug(
                "Scan pass '%s' complete: filename=%s violated=%s duration_ms=%d",
                pass_name,
                request.filename,
                outcome.violation is not None,
                elapsed_ms,
            )
            return outcome

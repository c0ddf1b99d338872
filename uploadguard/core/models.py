"""Data model shared by every uploadguard scanning pass.

The model:

* :class:`ThreatPattern` — one compiled signature held by the
  :class:`~uploadguard.core.registry.PatternRegistry`.
* :class:`ScanRequest` — the immutable input of a single scan.
* :class:`Violation` / :class:`ScanWarning` — fatal and non-fatal findings.
* :class:`PassResult` — what each pass returns to the orchestrator.
* :class:`ScanResult` — the final verdict handed back to the caller.

All of these are frozen dataclasses; no pass ever mutates its input or a
finding after construction.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class ThreatCategory(str, Enum):
    """Classification of a finding."""

    PHP_INJECTION = "php_injection"
    SCRIPT_INJECTION = "script_injection"
    CODE_EXECUTION = "code_execution"
    COMMAND_EXECUTION = "command_execution"
    FILESYSTEM_FUNCTION = "filesystem_function"
    NETWORK_FUNCTION = "network_function"
    WEBSHELL_INDICATOR = "webshell_indicator"
    POLYGLOT = "polyglot"
    OBFUSCATION = "obfuscation"
    POST_IMAGE_CONTENT = "post_image_content"
    EXIF_MALICIOUS = "exif_malicious"
    SVG_INJECTION = "svg_injection"
    MACRO = "macro"
    PDF_SCRIPT = "pdf_script"
    ARCHIVE_THREAT = "archive_threat"
    OVERSIZED = "oversized"
    CUSTOM = "custom"


class MediaKind(str, Enum):
    """Coarse media family derived from the declared MIME type."""

    IMAGE = "image"
    DOCUMENT = "document"
    VIDEO = "video"
    ARCHIVE = "archive"
    OTHER = "other"


class ScanState(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    SCANNING = "scanning"
    CLEAN = "clean"
    VIOLATED = "violated"


OOXML_MIME_TYPES: frozenset[str] = frozenset(
    {
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    }
)

DOCUMENT_MIME_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.ms-excel",
        "application/vnd.ms-powerpoint",
        "text/plain",
        "text/rtf",
    }
    | OOXML_MIME_TYPES
)

ARCHIVE_MIME_TYPES: frozenset[str] = frozenset(
    {
        "application/zip",
        "application/x-zip-compressed",
        "application/x-rar-compressed",
        "application/vnd.rar",
        "application/x-7z-compressed",
        "application/x-tar",
        "application/gzip",
    }
)


def normalize_mime(declared_mime: str) -> str:
    """Lower-case *declared_mime* and strip any ``;charset=...`` parameters."""
    return (declared_mime or "").split(";", 1)[0].strip().lower()


def classify_media_kind(declared_mime: str) -> MediaKind:
    """Map a declared MIME type onto a :class:`MediaKind`."""
    mime = normalize_mime(declared_mime)
    if mime in DOCUMENT_MIME_TYPES:
        return MediaKind.DOCUMENT
    if mime in ARCHIVE_MIME_TYPES:
        return MediaKind.ARCHIVE
    if mime.startswith("image/"):
        return MediaKind.IMAGE
    if mime.startswith("video/"):
        return MediaKind.VIDEO
    return MediaKind.OTHER


@dataclass(frozen=True)
class ThreatPattern:
    """An immutable, pre-compiled threat signature.

    Attributes:
        pattern_id: Opaque identifier reported in violations (e.g.
            ``"php_open_tag"``).  Unique within a registry.
        signature: The source the pattern was built from: regex text for
            ``str`` signatures, the literal bytes for ``bytes`` signatures.
        category: :class:`ThreatCategory` assigned to a match.
        regex: Case-insensitive bytes regex compiled once at construction.
    """

    pattern_id: str
    signature: str | bytes
    category: ThreatCategory
    regex: re.Pattern  # type: ignore[type-arg]

    @classmethod
    def compile(
        cls,
        pattern_id: str,
        signature: str | bytes,
        category: ThreatCategory | str = ThreatCategory.CUSTOM,
    ) -> ThreatPattern:
        """Compile *signature* into a :class:`ThreatPattern`.

        ``str`` signatures are treated as regular expressions; ``bytes``
        signatures are matched literally.

        Raises:
            re.error: If a ``str`` signature is not a valid regex.
            ValueError: If *category* is not a known category value.
        """
        if isinstance(signature, bytes):
            raw = re.escape(signature)
        else:
            raw = signature.encode("utf-8")
        return cls(
            pattern_id=pattern_id,
            signature=signature,
            category=ThreatCategory(category),
            regex=re.compile(raw, re.IGNORECASE | re.DOTALL),
        )

    @property
    def source(self) -> str:
        """Regex text of the pattern, for structured logging only."""
        return self.regex.pattern.decode("latin-1")


@dataclass(frozen=True)
class ScanRequest:
    content: bytes
    filename: str
    declared_mime: str

    @property
    def mime(self) -> str:
        return normalize_mime(self.declared_mime)

    @property
    def kind(self) -> MediaKind:
        return classify_media_kind(self.declared_mime)


def _freeze_context(finding: Violation | ScanWarning) -> None:
    # Frozen dataclass: assign through object.__setattr__.
    object.__setattr__(finding, "context", MappingProxyType(dict(finding.context)))


@dataclass(frozen=True)
class Violation:
    """A fatal finding that terminates a scan.

    Attributes:
        filename: Name of the scanned upload.
        category: Threat classification.
        rule: Identifier of the matched pattern or named rule (e.g.
            ``"php_open_tag"``, ``"base64_encoded_php"``).  Never the raw
            regex text.
        context: Technique-specific details such as ``detected_type``,
            ``image_type`` or ``indicator_count``.  Copied into a
            read-only mapping on construction.
    """

    filename: str
    category: ThreatCategory
    rule: str
    context: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _freeze_context(self)

    @property
    def message(self) -> str:
        return f"Potentially dangerous content detected in file: {self.filename}"


@dataclass(frozen=True)
class ScanWarning:
    """A non-fatal finding.  Same shape as :class:`Violation`."""

    filename: str
    category: ThreatCategory
    rule: str
    context: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _freeze_context(self)


@dataclass(frozen=True)
class PassResult:
    """Outcome of a single scanning pass."""

    violation: Violation | None = None
    warnings: tuple[ScanWarning, ...] = ()

    @property
    def failed(self) -> bool:
        return self.violation is not None


PASSED = PassResult()


class SecurityViolationError(Exception):
    """Raised by :meth:`ScanResult.raise_for_violation` for a violated scan.

    Attributes:
        violation: The :class:`Violation` that caused the rejection.
    """

    def __init__(self, violation: Violation) -> None:
        super().__init__(violation.message)
        self.violation = violation


@dataclass(frozen=True)
class ScanResult:
    """Final verdict of a scan.

    ``violated`` results carry exactly one :class:`Violation`; ``clean`` and
    ``skipped`` results carry zero or more warnings.  A skipped result is
    never conflated with a clean one: check :attr:`skipped` explicitly.
    """

    state: ScanState
    filename: str
    violation: Violation | None = None
    warnings: tuple[ScanWarning, ...] = ()
    skip_reason: str | None = None
    passes_run: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.state is not ScanState.VIOLATED

    @property
    def skipped(self) -> bool:
        return self.state is ScanState.SKIPPED

    @property
    def clean(self) -> bool:
        return self.state is ScanState.CLEAN

    def raise_for_violation(self) -> None:
        """Raise :class:`SecurityViolationError` if this result is violated."""
        if self.violation is not None:
            raise SecurityViolationError(self.violation)

"""StructuralScanner — format-aware checks for images, SVG and archives.

Sub-passes:

* **Image end-marker bypass** (:meth:`StructuralScanner.scan_image_trailer`)
  — anything after a JPEG ``FFD9``, PNG ``IEND`` chunk or GIF trailer is
  outside the image and is checked for code.  The orchestrator runs this
  sub-pass *before* the literal pass for images so that a payload hidden
  after the end marker is reported with its location (``post_image_content``)
  rather than as an anonymous literal hit.
* **EXIF inspection** — every string-valued tag, including the UTF-16
  ``XP*`` tags that hide their payload from byte-level matching, is checked
  against the registry snapshot.
* **SVG injection** — event-handler attributes and ``xlink:href``.
* **Archive members** — dangerous member extensions and path traversal in
  zip and tar uploads.

All sub-passes are gated by :class:`~uploadguard.config.ScanConfiguration`
flags and return a :class:`~uploadguard.core.models.PassResult`; none of them
mutate the buffer.
"""

from __future__ import annotations

import io
import logging
import re
import tarfile
import zipfile
import zlib
from dataclasses import dataclass, replace
from pathlib import PurePosixPath
from typing import Iterator, Sequence

from PIL import ExifTags, Image

from uploadguard.config import ScanConfiguration
from uploadguard.core.literal_scanner import LiteralScanner
from uploadguard.core.models import (
    PASSED,
    MediaKind,
    PassResult,
    ScanRequest,
    ScanWarning,
    ThreatCategory,
    ThreatPattern,
    Violation,
)

logger = logging.getLogger(__name__)

_FLAGS = re.IGNORECASE

# ---------------------------------------------------------------------------
# Image containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageContainer:
    """End-marker description of one image container format.

    Attributes:
        name: Reported as ``image_type`` in findings.
        magics: Possible leading signatures.
        end_marker: Bytes that terminate the container.  The *last*
            occurrence is used.
        threshold: Trailing bytes tolerated after the marker (padding written
            by some encoders).
        mime_types: Declared types used when the magic is missing.
    """

    name: str
    magics: tuple[bytes, ...]
    end_marker: bytes
    threshold: int
    mime_types: tuple[str, ...]


IMAGE_CONTAINERS: tuple[ImageContainer, ...] = (
    ImageContainer("JPEG", (b"\xff\xd8\xff",), b"\xff\xd9", 2, ("image/jpeg", "image/jpg", "image/pjpeg")),
    ImageContainer("PNG", (b"\x89PNG\r\n\x1a\n",), b"IEND\xaeB`\x82", 4, ("image/png",)),
    ImageContainer("GIF", (b"GIF87a", b"GIF89a"), b"\x00\x3b", 10, ("image/gif",)),
)

_TRAILER_ENCODED_PHP = re.compile(rb"3c3f706870|%3C%3Fphp|PD9waHA", _FLAGS)

_TRAILER_SCRIPT_KEYWORDS = re.compile(
    rb"<script|javascript:|vbscript:|<iframe|document\.cookie|\bon(?:load|error|click|mouseover)\s*=",
    _FLAGS,
)

# Interpretable code shapes: any of these after a terminated container is
# suspicious even without a specific signature.
_TRAILER_CODE_SHAPES = re.compile(
    rb"\becho\s|\bprint_r\s*\(|\bvar_dump\s*\("
    rb"|\$[A-Za-z_]\w*\s*=[^=]"
    rb"|\b(?:if|while|foreach|for|switch)\s*\("
    rb"|\bfunction\s+\w+\s*\(",
    _FLAGS,
)

# ---------------------------------------------------------------------------
# EXIF
# ---------------------------------------------------------------------------

_EXIF_SUB_IFD = 0x8769
_XP_TAGS = frozenset({0x9C9B, 0x9C9C, 0x9C9D, 0x9C9E, 0x9C9F})

# ---------------------------------------------------------------------------
# SVG
# ---------------------------------------------------------------------------

_SVG_ELEMENT = re.compile(rb"<svg[\s>/]", _FLAGS)
_SVG_CHECKS: list[tuple[str, re.Pattern]] = [  # type: ignore[type-arg]
    ("svg_event_handler", re.compile(rb"\son[a-z]+\s*=", _FLAGS)),
    ("svg_xlink_href", re.compile(rb"xlink:href\s*=", _FLAGS)),
]

# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------

DANGEROUS_MEMBER_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".php", ".php3", ".php4", ".php5", ".php7", ".phtml", ".phar",
        ".exe", ".dll", ".scr", ".com", ".msi", ".bat", ".cmd",
        ".vbs", ".vbe", ".js", ".jse", ".wsf", ".hta", ".ps1", ".sh",
        ".jar", ".lnk",
    }
)


def detect_image_container(content: bytes, declared_mime: str = "") -> ImageContainer | None:
    """Identify the image container by magic bytes, then by declared type."""
    for container in IMAGE_CONTAINERS:
        if content.startswith(container.magics):
            return container
    for container in IMAGE_CONTAINERS:
        if declared_mime in container.mime_types:
            return container
    return None


def _is_traversal(name: str) -> bool:
    path = PurePosixPath(name.replace("\\", "/"))
    return path.is_absolute() or ".." in path.parts or re.match(r"^[A-Za-z]:", name) is not None


class StructuralScanner:
    """Format-aware sub-passes.

    Args:
        literal_scanner: Scanner used to re-apply the registry snapshot to
            sub-regions (image trailers, EXIF strings).
    """

    def __init__(self, literal_scanner: LiteralScanner | None = None) -> None:
        self._literal = literal_scanner or LiteralScanner()

    # ------------------------------------------------------------------
    # Image end-marker bypass
    # ------------------------------------------------------------------

    def scan_image_trailer(
        self,
        request: ScanRequest,
        config: ScanConfiguration,
        patterns: Sequence[ThreatPattern],
    ) -> PassResult:
        """Inspect data following the image container's end marker.

        Returns a ``post_image_content`` violation when the trailer holds a
        registry signature, an encoded PHP tag, a script keyword or generic
        script-shaped code.  Large pattern-free trailers and missing end
        markers are warnings only.
        """
        if not request.content:
            return PASSED
        container = detect_image_container(request.content, request.mime)
        if container is None:
            return PASSED

        filename = request.filename
        marker_at = request.content.rfind(container.end_marker)
        if marker_at == -1:
            logger.warning(
                "Image end marker not found: filename=%s image_type=%s",
                filename,
                container.name,
            )
            return PassResult(
                warnings=(
                    ScanWarning(
                        filename=filename,
                        category=ThreatCategory.POST_IMAGE_CONTENT,
                        rule="missing_end_marker",
                        context={"image_type": container.name},
                    ),
                )
            )

        trailer_start = marker_at + len(container.end_marker)
        trailer = request.content[trailer_start:]
        if len(trailer) <= container.threshold:
            return PASSED

        context = {
            "image_type": container.name,
            "trailing_bytes": str(len(trailer)),
            "trailer_offset": str(trailer_start),
        }

        violation = self._inspect_trailer(trailer, filename, patterns, context)
        if violation is not None:
            logger.warning(
                "Content after image end marker: filename=%s image_type=%s rule=%s trailing_bytes=%d",
                filename,
                container.name,
                violation.rule,
                len(trailer),
            )
            return PassResult(violation=violation)

        if len(trailer) > config.trailing_warning_size:
            logger.warning(
                "Large trailing data after image end marker: filename=%s image_type=%s trailing_bytes=%d",
                filename,
                container.name,
                len(trailer),
            )
            return PassResult(
                warnings=(
                    ScanWarning(
                        filename=filename,
                        category=ThreatCategory.POST_IMAGE_CONTENT,
                        rule="large_trailing_data",
                        context=context,
                    ),
                )
            )
        return PASSED

    def _inspect_trailer(
        self,
        trailer: bytes,
        filename: str,
        patterns: Sequence[ThreatPattern],
        context: dict[str, str],
    ) -> Violation | None:
        violation = self._literal.scan_region(
            trailer, filename, patterns, ThreatCategory.POST_IMAGE_CONTENT, context
        )
        if violation is not None:
            if violation.context["pattern_category"] == ThreatCategory.PHP_INJECTION.value:
                return replace(violation, rule="php_after_image_end")
            return violation

        for rule, regex in (
            ("encoded_php_after_image_end", _TRAILER_ENCODED_PHP),
            ("script_after_image_end", _TRAILER_SCRIPT_KEYWORDS),
            ("code_after_image_end", _TRAILER_CODE_SHAPES),
        ):
            if regex.search(trailer):
                return Violation(
                    filename=filename,
                    category=ThreatCategory.POST_IMAGE_CONTENT,
                    rule=rule,
                    context=dict(context),
                )
        return None

    # ------------------------------------------------------------------
    # Combined structural pass
    # ------------------------------------------------------------------

    def scan(
        self,
        request: ScanRequest,
        config: ScanConfiguration,
        patterns: Sequence[ThreatPattern],
    ) -> PassResult:
        """Run the EXIF, SVG and archive sub-passes that apply to *request*."""
        if not request.content:
            return PASSED

        warnings: list[ScanWarning] = []
        sub_passes = []
        if self._is_svg(request):
            sub_passes.append(lambda: self.scan_svg(request, config))
        if request.kind is MediaKind.IMAGE and config.scan_images:
            sub_passes.append(lambda: self.scan_exif(request, patterns))
        if request.kind is MediaKind.ARCHIVE and config.scan_archives:
            sub_passes.append(lambda: self.scan_archive(request))

        for sub_pass in sub_passes:
            result = sub_pass()
            warnings.extend(result.warnings)
            if result.violation is not None:
                return PassResult(violation=result.violation, warnings=tuple(warnings))

        return PassResult(warnings=tuple(warnings))

    # ------------------------------------------------------------------
    # EXIF
    # ------------------------------------------------------------------

    def scan_exif(self, request: ScanRequest, patterns: Sequence[ThreatPattern]) -> PassResult:
        """Apply *patterns* to every string-valued EXIF tag."""
        for tag_name, value in self.iter_exif_strings(request.content, request.filename):
            pattern = self._literal.find(value.encode("utf-8", errors="ignore"), patterns)
            if pattern is None:
                continue
            logger.warning(
                "Malicious EXIF tag: filename=%s tag=%s pattern_id=%s",
                request.filename,
                tag_name,
                pattern.pattern_id,
            )
            return PassResult(
                violation=Violation(
                    filename=request.filename,
                    category=ThreatCategory.EXIF_MALICIOUS,
                    rule="exif_malicious",
                    context={"tag": tag_name, "pattern_id": pattern.pattern_id},
                )
            )
        return PASSED

    @staticmethod
    def iter_exif_strings(content: bytes, filename: str = "") -> Iterator[tuple[str, str]]:
        """Yield ``(tag_name, text)`` for every textual EXIF value.

        Images Pillow cannot open, or whose EXIF block is corrupt, yield
        nothing.  The raw bytes are still covered by the literal pass.
        """
        try:
            with Image.open(io.BytesIO(content)) as img:
                exif = img.getexif()
                items = list(exif.items())
                items.extend(exif.get_ifd(_EXIF_SUB_IFD).items())
        except Exception as exc:  # Pillow raises arbitrary errors on hostile input
            logger.debug("EXIF unavailable: filename=%s error=%r", filename, exc)
            return

        for tag, value in items:
            tag_name = ExifTags.TAGS.get(tag, str(tag))
            if isinstance(value, str):
                yield tag_name, value
            elif isinstance(value, bytes):
                if tag in _XP_TAGS:
                    yield tag_name, value.decode("utf-16-le", errors="ignore")
                else:
                    yield tag_name, value.decode("latin-1")
                    if b"\x00" in value:
                        yield tag_name, value.decode("utf-16-le", errors="ignore")

    # ------------------------------------------------------------------
    # SVG
    # ------------------------------------------------------------------

    @staticmethod
    def _is_svg(request: ScanRequest) -> bool:
        return request.mime == "image/svg+xml" or _SVG_ELEMENT.search(request.content) is not None

    def scan_svg(self, request: ScanRequest, config: ScanConfiguration) -> PassResult:
        """Check SVG markup for event handlers, external references and SVG itself.

        Handlers and ``xlink:href`` are fatal unless SVG is allowed and strict
        mode is off, in which case they are warnings.  The ``<svg`` element is
        fatal whenever SVG is not allowed.
        """
        fatal = (not config.allow_svg) or config.strict_mode
        warnings: list[ScanWarning] = []

        checks = list(_SVG_CHECKS)
        if not config.allow_svg:
            checks.append(("svg_element", _SVG_ELEMENT))

        for rule, regex in checks:
            hit = regex.search(request.content)
            if hit is None:
                continue
            context = {"offset": str(hit.start()), "allow_svg": str(config.allow_svg).lower()}
            if fatal:
                logger.warning("SVG injection detected: filename=%s rule=%s", request.filename, rule)
                return PassResult(
                    violation=Violation(
                        filename=request.filename,
                        category=ThreatCategory.SVG_INJECTION,
                        rule=rule,
                        context=context,
                    )
                )
            logger.warning("SVG active content allowed by policy: filename=%s rule=%s", request.filename, rule)
            warnings.append(
                ScanWarning(
                    filename=request.filename,
                    category=ThreatCategory.SVG_INJECTION,
                    rule=rule,
                    context=context,
                )
            )
        return PassResult(warnings=tuple(warnings))

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    def scan_archive(self, request: ScanRequest) -> PassResult:
        """List zip/tar members and flag executable members and path traversal."""
        try:
            names = self._archive_member_names(request.content)
        except (zipfile.BadZipFile, tarfile.TarError, zlib.error, EOFError, OSError) as exc:
            logger.warning("Unreadable archive: filename=%s error=%s", request.filename, exc)
            return PassResult(
                warnings=(
                    ScanWarning(
                        filename=request.filename,
                        category=ThreatCategory.ARCHIVE_THREAT,
                        rule="unreadable_archive",
                        context={"error": str(exc)},
                    ),
                )
            )

        for name in names:
            if _is_traversal(name):
                rule = "archive_path_traversal"
            elif PurePosixPath(name.replace("\\", "/")).suffix.lower() in DANGEROUS_MEMBER_EXTENSIONS:
                rule = "dangerous_archive_member"
            else:
                continue
            logger.warning("Archive member rejected: filename=%s member=%s rule=%s", request.filename, name, rule)
            return PassResult(
                violation=Violation(
                    filename=request.filename,
                    category=ThreatCategory.ARCHIVE_THREAT,
                    rule=rule,
                    context={"member": name},
                )
            )
        return PASSED

    @staticmethod
    def _archive_member_names(content: bytes) -> list[str]:
        """List member names of a zip or (optionally compressed) tar archive.

        Raises ``zipfile.BadZipFile`` or ``tarfile.TarError`` for anything
        else, including rar and 7z, which the stdlib cannot list.
        """
        if content.startswith((b"PK\x03\x04", b"PK\x05\x06")):
            with zipfile.ZipFile(io.BytesIO(content)) as archive:
                return archive.namelist()
        with tarfile.open(fileobj=io.BytesIO(content), mode="r:*") as archive:
            return archive.getnames()

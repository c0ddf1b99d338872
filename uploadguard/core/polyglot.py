"""PolyglotDetector — embedded format signatures anywhere in the buffer.

A polyglot file is valid under two format interpretations at once, typically
a benign prefix for the declared type followed by an executable or archive.
The detector therefore searches the whole buffer, not just offset 0, and runs
regardless of the declared MIME type: the threat *is* the mismatch between
declared and actual structure.

Signatures that are native to the declared type are exempt (a DOCX is a ZIP
container and contains one local-file header per part; a PDF starts with
``%PDF``), everything else is fatal.
"""

from __future__ import annotations

import logging
import struct

from uploadguard.core.models import PASSED, OOXML_MIME_TYPES, PassResult, ThreatCategory, Violation, normalize_mime

logger = logging.getLogger(__name__)

#: Ordered (type name, magic bytes) pairs.
SIGNATURES: list[tuple[str, bytes]] = [
    ("ZIP", b"PK\x03\x04"),
    ("PDF", b"%PDF-"),
    ("PE", b"MZ"),
    ("ELF", b"\x7fELF"),
    ("JAVA_CLASS", b"\xca\xfe\xba\xbe"),
]

_DOS_STUB = b"this program cannot be run in dos mode"

_ZIP_FAMILY = frozenset(
    {
        "application/zip",
        "application/x-zip-compressed",
        "application/epub+zip",
        "application/vnd.oasis.opendocument.text",
        "application/vnd.oasis.opendocument.spreadsheet",
        "application/vnd.oasis.opendocument.presentation",
    }
    | OOXML_MIME_TYPES
)

_NATIVE_TYPES: dict[str, frozenset[str]] = {
    **{mime: frozenset({"ZIP"}) for mime in _ZIP_FAMILY},
    "application/java-archive": frozenset({"ZIP", "JAVA_CLASS"}),
    "application/pdf": frozenset({"PDF"}),
    "application/x-msdownload": frozenset({"PE"}),
    "application/x-dosexec": frozenset({"PE"}),
    "application/vnd.microsoft.portable-executable": frozenset({"PE"}),
    "application/x-executable": frozenset({"ELF"}),
    "application/x-elf": frozenset({"ELF"}),
    "application/x-sharedlib": frozenset({"ELF"}),
    "application/java-vm": frozenset({"JAVA_CLASS"}),
    "application/x-java-class": frozenset({"JAVA_CLASS"}),
}


def _is_pe_header(content: bytes, offset: int) -> bool:
    """Return ``True`` if the ``MZ`` at *offset* starts a plausible PE image.

    Two bytes alone occur by chance in nearly every compressed file, so the
    DOS header must point at a ``PE\\0\\0`` signature or carry the DOS stub.
    """
    header = content[offset : offset + 0x40]
    if len(header) == 0x40:
        (e_lfanew,) = struct.unpack_from("<I", header, 0x3C)
        pe_offset = offset + e_lfanew
        if e_lfanew and content[pe_offset : pe_offset + 4] == b"PE\x00\x00":
            return True
    return _DOS_STUB in content[offset : offset + 0x200].lower()


class PolyglotDetector:
    """Stateless embedded-signature detector."""

    def detect(self, content: bytes, declared_mime: str = "") -> tuple[str, int] | None:
        """Return ``(detected_type, offset)`` of the first foreign signature."""
        exempt = _NATIVE_TYPES.get(normalize_mime(declared_mime), frozenset())
        for type_name, magic in SIGNATURES:
            if type_name in exempt:
                continue
            offset = content.find(magic)
            while offset != -1:
                if type_name != "PE" or _is_pe_header(content, offset):
                    return type_name, offset
                offset = content.find(magic, offset + 1)
        return None

    def scan(self, content: bytes, filename: str, declared_mime: str) -> PassResult:
        if not content:
            return PASSED
        found = self.detect(content, declared_mime)
        if found is None:
            return PASSED

        detected_type, offset = found
        logger.warning(
            "Embedded format signature detected: filename=%s detected_type=%s offset=%d declared_mime=%s",
            filename,
            detected_type,
            offset,
            declared_mime,
        )
        return PassResult(
            violation=Violation(
                filename=filename,
                category=ThreatCategory.POLYGLOT,
                rule=f"embedded_{detected_type.lower()}",
                context={
                    "detected_type": detected_type,
                    "offset": str(offset),
                    "declared_mime": declared_mime,
                },
            )
        )

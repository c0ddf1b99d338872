"""DocumentScanner — macro and embedded-script checks for office and PDF files.

Sibling of :class:`~uploadguard.core.structural.StructuralScanner` that shares
its violation model.  Checks, in order:

1. generic macro/automation signatures for every document type (VBA entry
   points, ``CreateObject``, ``WScript.``, ``Shell(``, LOLBin names);
2. PDF action dictionaries (``/JavaScript``, ``/JS``, ``/OpenAction``,
   ``/Launch``, ``/EmbeddedFile``, ``/AcroForm`` + ``/JavaScript``) for PDFs;
3. ``vbaProject.bin`` for OOXML packages, either as raw bytes or as a zip
   member name.

External hyperlinks, and package members too large to read within
:data:`MAX_PACKAGE_MEMBER_SIZE`, are reported as warnings only.  Corrupt,
encrypted or unsupported zip members are treated as unreadable and skipped.
"""

from __future__ import annotations

import io
import logging
import re
import zipfile
import zlib

from uploadguard.core.models import (
    OOXML_MIME_TYPES,
    PASSED,
    PassResult,
    ScanRequest,
    ScanWarning,
    ThreatCategory,
    Violation,
)

logger = logging.getLogger(__name__)

_FLAGS = re.IGNORECASE

#: (rule, raw_pattern, category), applied to every document type.
_MACRO_DEFINITIONS: list[tuple[str, bytes, ThreatCategory]] = [
    ("vba_sub",             rb"Sub\s+\w+\s*\(",       ThreatCategory.MACRO),
    ("vba_function",        rb"Function\s+\w+\s*\(",  ThreatCategory.MACRO),
    ("vba_private_sub",     rb"Private\s+Sub",        ThreatCategory.MACRO),
    ("vba_public_sub",      rb"Public\s+Sub",         ThreatCategory.MACRO),
    ("vba_auto_open",       rb"Auto_Open",            ThreatCategory.MACRO),
    ("vba_auto_close",      rb"Auto_Close",           ThreatCategory.MACRO),
    ("vba_workbook_open",   rb"Workbook_Open",        ThreatCategory.MACRO),
    ("vba_document_open",   rb"Document_Open",        ThreatCategory.MACRO),
    ("create_object",       rb"CreateObject\s*\(",    ThreatCategory.MACRO),
    ("get_object",          rb"GetObject\s*\(",       ThreatCategory.MACRO),
    ("shell_call",          rb"Shell\s*\(",           ThreatCategory.COMMAND_EXECUTION),
    ("wscript_object",      rb"WScript\.",            ThreatCategory.MACRO),
    ("scripting_object",    rb"Scripting\.",          ThreatCategory.MACRO),
    ("cmd_exe",             rb"cmd\.exe",             ThreatCategory.COMMAND_EXECUTION),
    ("powershell",          rb"powershell",           ThreatCategory.COMMAND_EXECUTION),
    ("mshta",               rb"mshta",                ThreatCategory.COMMAND_EXECUTION),
    ("regsvr32",            rb"regsvr32",             ThreatCategory.COMMAND_EXECUTION),
    ("rundll32",            rb"rundll32",             ThreatCategory.COMMAND_EXECUTION),
]

#: PDF dictionary keys.  ``/EmbeddedFile`` also covers ``/EmbeddedFiles``.
_PDF_DEFINITIONS: list[tuple[str, bytes]] = [
    ("pdf_acroform_javascript", rb"/AcroForm.*?/JavaScript"),
    ("pdf_javascript",          rb"/JavaScript\b"),
    ("pdf_js",                  rb"/JS\b"),
    ("pdf_open_action",         rb"/OpenAction"),
    ("pdf_launch",              rb"/Launch"),
    ("pdf_embedded_file",       rb"/EmbeddedFile"),
]

_MACRO_PATTERNS = [(rule, re.compile(raw, _FLAGS), cat) for rule, raw, cat in _MACRO_DEFINITIONS]
_PDF_PATTERNS = [(rule, re.compile(raw, _FLAGS | re.DOTALL)) for rule, raw in _PDF_DEFINITIONS]

_VBA_PROJECT = re.compile(rb"vbaProject\.bin", _FLAGS)
_EXTERNAL_LINK = re.compile(rb"""https?://[^\s<>"{}|\\^`\[\]]+""", _FLAGS)
_EXTERNAL_RELATIONSHIP = re.compile(rb"""TargetMode\s*=\s*["']External["']""", _FLAGS)

_OFFICE_MIME_TYPES: frozenset[str] = OOXML_MIME_TYPES | frozenset(
    {"application/msword", "application/vnd.ms-excel", "application/vnd.ms-powerpoint"}
)

#: Upper bound on decompressed bytes read from a single package member.
MAX_PACKAGE_MEMBER_SIZE = 2 * 1024 * 1024

# Errors raised by zipfile for corrupt, encrypted or unsupported members.
_PACKAGE_READ_ERRORS = (
    zipfile.BadZipFile,
    zlib.error,
    EOFError,
    OSError,
    RuntimeError,
    NotImplementedError,
    ValueError,
)


def _is_pdf(request: ScanRequest) -> bool:
    return request.mime == "application/pdf" or request.content.startswith(b"%PDF-")


class DocumentScanner:
    """Stateless document macro/script scanner."""

    def scan(self, request: ScanRequest) -> PassResult:
        content = request.content
        if not content:
            return PASSED

        for rule, regex, category in _MACRO_PATTERNS:
            if regex.search(content):
                return self._violation(request, category, rule)

        if _is_pdf(request):
            for rule, regex in _PDF_PATTERNS:
                if regex.search(content):
                    return self._violation(request, ThreatCategory.PDF_SCRIPT, rule)

        warnings: list[ScanWarning] = []
        if request.mime in OOXML_MIME_TYPES:
            result = self._scan_ooxml(request)
            if result.failed:
                return result
            warnings.extend(result.warnings)

        if request.mime in _OFFICE_MIME_TYPES and not warnings and _EXTERNAL_LINK.search(content):
            warnings.append(self._external_links_warning(request, "raw"))

        return PassResult(warnings=tuple(warnings))

    def _scan_ooxml(self, request: ScanRequest) -> PassResult:
        if _VBA_PROJECT.search(request.content):
            return self._violation(request, ThreatCategory.MACRO, "vba_project")

        try:
            with zipfile.ZipFile(io.BytesIO(request.content)) as package:
                members = package.infolist()
                for member in members:
                    if member.filename.lower().endswith("vbaproject.bin"):
                        return self._violation(request, ThreatCategory.MACRO, "vba_project")
                for member in members:
                    if not member.filename.endswith(".rels"):
                        continue
                    data = self._read_member(package, member)
                    if data is None:
                        return PassResult(warnings=(self._oversized_member_warning(request, member),))
                    if _EXTERNAL_RELATIONSHIP.search(data):
                        return PassResult(warnings=(self._external_links_warning(request, member.filename),))
        except _PACKAGE_READ_ERRORS as exc:
            logger.debug("OOXML package not readable as zip: filename=%s error=%r", request.filename, exc)
        return PASSED

    @staticmethod
    def _read_member(package: zipfile.ZipFile, member: zipfile.ZipInfo) -> bytes | None:
        """Read at most ``MAX_PACKAGE_MEMBER_SIZE`` decompressed bytes.

        Returns ``None`` when the member is larger.  Both the declared size
        and the number of bytes actually decompressed are checked.
        """
        if member.file_size > MAX_PACKAGE_MEMBER_SIZE:
            return None
        with package.open(member) as stream:
            data = stream.read(MAX_PACKAGE_MEMBER_SIZE + 1)
        if len(data) > MAX_PACKAGE_MEMBER_SIZE:
            return None
        return data

    @staticmethod
    def _violation(request: ScanRequest, category: ThreatCategory, rule: str) -> PassResult:
        logger.warning(
            "Suspicious content detected in document: filename=%s rule=%s mime_type=%s",
            request.filename,
            rule,
            request.mime,
        )
        return PassResult(
            violation=Violation(
                filename=request.filename,
                category=category,
                rule=rule,
                context={"mime_type": request.mime},
            )
        )

    @staticmethod
    def _oversized_member_warning(request: ScanRequest, member: zipfile.ZipInfo) -> ScanWarning:
        logger.warning(
            "Package member too large to inspect: filename=%s member=%s declared_size=%d",
            request.filename,
            member.filename,
            member.file_size,
        )
        return ScanWarning(
            filename=request.filename,
            category=ThreatCategory.MACRO,
            rule="oversized_package_member",
            context={"member": member.filename, "max_member_size": str(MAX_PACKAGE_MEMBER_SIZE)},
        )

    @staticmethod
    def _external_links_warning(request: ScanRequest, source: str) -> ScanWarning:
        logger.warning(
            "Document contains external links: filename=%s source=%s",
            request.filename,
            source,
        )
        return ScanWarning(
            filename=request.filename,
            category=ThreatCategory.NETWORK_FUNCTION,
            rule="external_links",
            context={"source": source, "mime_type": request.mime},
        )

"""Lookup tables shared by the conversion pipeline and the HTTP layer.

Everything here is pure: lookups return ``None`` (or a documented default)
instead of raising, so callers decide how to surface an unsupported format.
"""

import os

from .interfaces import FormatInfo

# Stable codes understood by the x2t converter.
FORMAT_DOCX = 65
FORMAT_PPTX = 129
FORMAT_XLSX = 257
FORMAT_CSV = 260
FORMAT_PDF = 513
FORMAT_EDITOR_BIN = 8192

# Fixed CSV descriptor parameters: UTF-8 encoding and comma delimiter.
CSV_ENCODING_UTF8 = 46
CSV_DELIMITER_COMMA = 4

_XLSX = FormatInfo(code=FORMAT_XLSX, name="XLSX")
_CSV = FormatInfo(code=FORMAT_CSV, name="CSV")
_DOCX = FormatInfo(code=FORMAT_DOCX, name="DOCX")
_PPTX = FormatInfo(code=FORMAT_PPTX, name="PPTX")

OUTPUT_FORMATS: dict[str, FormatInfo] = {
    "xlsx": _XLSX,
    "xls": _XLSX,
    "ods": _XLSX,
    "csv": _CSV,
    "docx": _DOCX,
    "doc": _DOCX,
    "odt": _DOCX,
    "txt": _DOCX,
    "rtf": _DOCX,
    "html": _DOCX,
    "pptx": _PPTX,
    "ppt": _PPTX,
    "odp": _PPTX,
}

# Document Server output types additionally allow PDF export.
FORMAT_CODES: dict[str, int] = {ext: info.code for ext, info in OUTPUT_FORMATS.items()}
FORMAT_CODES["pdf"] = FORMAT_PDF

CATEGORY_SPREADSHEET = "cell"
CATEGORY_DOCUMENT = "word"
CATEGORY_PRESENTATION = "slide"

_CATEGORIES: dict[str, str] = {
    "xlsx": CATEGORY_SPREADSHEET,
    "xls": CATEGORY_SPREADSHEET,
    "ods": CATEGORY_SPREADSHEET,
    "csv": CATEGORY_SPREADSHEET,
    "docx": CATEGORY_DOCUMENT,
    "doc": CATEGORY_DOCUMENT,
    "odt": CATEGORY_DOCUMENT,
    "txt": CATEGORY_DOCUMENT,
    "rtf": CATEGORY_DOCUMENT,
    "html": CATEGORY_DOCUMENT,
    "pptx": CATEGORY_PRESENTATION,
    "ppt": CATEGORY_PRESENTATION,
    "odp": CATEGORY_PRESENTATION,
}

CONTENT_TYPES: dict[str, str] = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".bmp": "image/bmp",
    ".webp": "image/webp",
    ".emf": "image/x-emf",
    ".wmf": "image/x-wmf",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".ttc": "font/collection",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".html": "text/html",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}

ZIP_SIGNATURE = b"PK"


def normalize_extension(ext: str | None) -> str:
    """Lower-case an extension and strip any leading dots."""
    if not ext:
        return ""
    return ext.strip().lower().lstrip(".")


def output_format_for(ext: str | None) -> FormatInfo | None:
    """Canonical save target for an extension, e.g. ``.xls`` -> XLSX (257)."""
    return OUTPUT_FORMATS.get(normalize_extension(ext))


def format_code_for(ext: str | None) -> int | None:
    return FORMAT_CODES.get(normalize_extension(ext))


def document_category(filename: str) -> str:
    """Editor mode for a file name or path.

    Unrecognised extensions fall back to the presentation editor.
    """
    _, ext = os.path.splitext(filename or "")
    return _CATEGORIES.get(normalize_extension(ext), CATEGORY_PRESENTATION)


def content_type_for(ext: str | None) -> str:
    key = "." + normalize_extension(ext)
    return CONTENT_TYPES.get(key, "application/octet-stream")


def is_csv(filename: str | None) -> bool:
    _, ext = os.path.splitext(filename or "")
    return normalize_extension(ext) == "csv"


def is_zip_signature(data: bytes | bytearray | memoryview | None) -> bool:
    """True when ``data`` already looks like an OOXML/ODF (ZIP) container."""
    if data is None or len(data) < 4:
        return False
    return bytes(data[:2]) == ZIP_SIGNATURE
